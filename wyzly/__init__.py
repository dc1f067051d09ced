"""Wyzly Box: food box marketplace API.

``wyzly.main`` serves the HTTP API. ``wyzly.local_store`` is the client-side
half: the signed-out wishlist and favorites cache and the reconciler that
syncs it to ``POST /api/wishlist/sync`` on sign-in.
"""

from .local_store import LocalFavoritesStorage, LocalWishlistStorage, WishlistReconciler

__version__ = "1.0.0"

__all__ = ["LocalFavoritesStorage", "LocalWishlistStorage", "WishlistReconciler"]
