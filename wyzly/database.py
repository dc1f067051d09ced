"""
Relational store for users, restaurants, boxes, orders, payments,
cancellations and the inventory audit log.

PostgreSQL (psycopg2 connection pool) is the production backend; a
``sqlite://`` URL selects an embedded SQLite database for local runs and
tests. Queries are written once with ``%s`` placeholders and adapted to the
backend's parameter style.
"""

import sqlite3
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterator, List, Optional

import psycopg2
import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool

from . import config

logger = logging.getLogger(__name__)

POSTGRES = "postgresql"
SQLITE = "sqlite"

# Errors raised by either backend on unique/foreign key violations
IntegrityErrors = (psycopg2.IntegrityError, sqlite3.IntegrityError)

sqlite3.register_adapter(Decimal, str)

# ============================================
# SCHEMA
# ============================================
TABLES = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id {pk},
        email VARCHAR(255) UNIQUE NOT NULL,
        username VARCHAR(100) UNIQUE NOT NULL,
        password_hash VARCHAR(255) NOT NULL,
        role VARCHAR(20) NOT NULL DEFAULT 'customer'
            CHECK (role IN ('customer', 'restaurant', 'admin')),
        phone_number VARCHAR(20),
        age INTEGER,
        gender VARCHAR(10),
        address TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS restaurants (
        id {pk},
        name VARCHAR(255) NOT NULL,
        phone_number VARCHAR(20),
        description TEXT,
        owner_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS boxes (
        id {pk},
        title VARCHAR(255) NOT NULL,
        price DECIMAL(10,2) NOT NULL CHECK (price >= 0),
        quantity INTEGER NOT NULL DEFAULT 0 CHECK (quantity >= 0),
        image VARCHAR(500),
        restaurant_id INTEGER REFERENCES restaurants(id) ON DELETE CASCADE,
        is_available BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory_commands (
        id {pk},
        type VARCHAR(20) NOT NULL CHECK (type IN ('increase', 'decrease')),
        box_id INTEGER REFERENCES boxes(id) ON DELETE CASCADE,
        quantity INTEGER NOT NULL,
        previous_quantity INTEGER NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id {pk},
        user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
        box_id INTEGER REFERENCES boxes(id) ON DELETE SET NULL,
        quantity INTEGER NOT NULL CHECK (quantity > 0),
        total_price DECIMAL(10,2) NOT NULL CHECK (total_price >= 0),
        status VARCHAR(20) NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'confirmed', 'preparing', 'ready', 'completed', 'cancelled')),
        is_cancelled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cancel_orders (
        id {pk},
        order_id INTEGER REFERENCES orders(id) ON DELETE CASCADE,
        user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
        is_approved BOOLEAN NOT NULL DEFAULT FALSE,
        admin_id INTEGER REFERENCES users(id),
        reason TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        approved_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        id {pk},
        order_id INTEGER REFERENCES orders(id) ON DELETE CASCADE,
        amount DECIMAL(10,2) NOT NULL CHECK (amount >= 0),
        status VARCHAR(20) NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'completed', 'failed', 'refunded')),
        method VARCHAR(20) NOT NULL DEFAULT 'mock'
            CHECK (method IN ('credit_card', 'debit_card', 'paypal', 'cash', 'mock')),
        transaction_id VARCHAR(255),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_users_email ON users(email)",
    "CREATE INDEX IF NOT EXISTS idx_users_role ON users(role)",
    "CREATE INDEX IF NOT EXISTS idx_restaurants_owner_id ON restaurants(owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_boxes_restaurant_id ON boxes(restaurant_id)",
    "CREATE INDEX IF NOT EXISTS idx_boxes_is_available ON boxes(is_available)",
    "CREATE INDEX IF NOT EXISTS idx_orders_user_id ON orders(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
    "CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_inventory_commands_box_id ON inventory_commands(box_id)",
    "CREATE INDEX IF NOT EXISTS idx_cancel_orders_order_id ON cancel_orders(order_id)",
    "CREATE INDEX IF NOT EXISTS idx_payments_order_id ON payments(order_id)",
]

PRIMARY_KEYS = {
    POSTGRES: "SERIAL PRIMARY KEY",
    SQLITE: "INTEGER PRIMARY KEY AUTOINCREMENT",
}


# ============================================
# VALUE HELPERS
# ============================================
def to_money(value) -> Decimal:
    """Normalise a price read from either backend to a 2dp Decimal"""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def to_bool(value) -> bool:
    return bool(value) if value is not None else False


def to_timestamp(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value).replace(" ", "T", 1)


# ============================================
# CURSOR
# ============================================
class Cursor:
    """Thin wrapper giving both backends the same query interface"""

    def __init__(self, raw, dialect: str):
        self._raw = raw
        self.dialect = dialect

    def lock_clause(self, of: str = None) -> str:
        """Row-lock suffix for SELECTs that precede an update"""
        if self.dialect != POSTGRES:
            return ""
        return f" FOR UPDATE OF {of}" if of else " FOR UPDATE"

    def _sql(self, query: str) -> str:
        if self.dialect == SQLITE:
            return query.replace("%s", "?")
        return query

    def execute(self, query: str, params=None) -> int:
        self._raw.execute(self._sql(query), tuple(params or ()))
        return self._raw.rowcount

    def fetch_one(self, query: str, params=None) -> Optional[Dict[str, Any]]:
        self._raw.execute(self._sql(query), tuple(params or ()))
        row = self._raw.fetchone()
        return dict(row) if row else None

    def fetch_all(self, query: str, params=None) -> List[Dict[str, Any]]:
        self._raw.execute(self._sql(query), tuple(params or ()))
        return [dict(row) for row in self._raw.fetchall()]

    def insert(self, table: str, values: Dict[str, Any]) -> int:
        """Insert one row and return its id"""
        columns = ", ".join(values)
        placeholders = ", ".join(["%s"] * len(values))
        query = f"INSERT INTO {table} ({columns}) VALUES ({placeholders})"
        if self.dialect == POSTGRES:
            self._raw.execute(query + " RETURNING id", tuple(values.values()))
            return self._raw.fetchone()["id"]
        self._raw.execute(self._sql(query), tuple(values.values()))
        return self._raw.lastrowid


# ============================================
# DATABASE
# ============================================
class Database:
    def __init__(self, url: str = None, minconn: int = 1, maxconn: int = 10):
        self.url = url or config.DATABASE_URL
        self._pool = None
        self._conn = None
        self._lock = threading.RLock()

        if self.url.startswith("sqlite"):
            self.dialect = SQLITE
            path = self.url[len("sqlite://"):]
            if path.startswith("/"):
                path = path[1:]
            self._conn = sqlite3.connect(path or ":memory:", check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        else:
            self.dialect = POSTGRES
            # Shared by the event loop and the threadpool routes
            self._pool = ThreadedConnectionPool(minconn=minconn, maxconn=maxconn, dsn=self.url)

        logger.info("Connected to %s database", self.dialect)

    @contextmanager
    def transaction(self) -> Iterator[Cursor]:
        """Run a block of statements atomically, rolling back on any error"""
        if self.dialect == SQLITE:
            with self._lock:
                raw = self._conn.cursor()
                try:
                    yield Cursor(raw, SQLITE)
                    self._conn.commit()
                except Exception:
                    self._conn.rollback()
                    raise
                finally:
                    raw.close()
            return

        conn = self._pool.getconn()
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as raw:
                yield Cursor(raw, POSTGRES)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    def execute_query(self, query, params=None, fetch_one=False, fetch_all=False):
        """Execute a single query in its own transaction"""
        with self.transaction() as cur:
            if fetch_one:
                return cur.fetch_one(query, params)
            elif fetch_all:
                return cur.fetch_all(query, params)
            return cur.execute(query, params)

    def create_tables(self):
        """Create all tables and indexes if they do not exist"""
        pk = PRIMARY_KEYS[self.dialect]
        with self.transaction() as cur:
            for statement in TABLES:
                cur.execute(statement.format(pk=pk))
            for statement in INDEXES:
                cur.execute(statement)
        logger.info("Database schema ready")

    def close(self):
        if self._pool is not None:
            self._pool.closeall()
        if self._conn is not None:
            self._conn.close()


# ============================================
# SAMPLE DATA
# ============================================
SAMPLE_RESTAURANTS = [
    ("pasta_palace@example.com", "pasta_palace_owner", "Pasta Palace", "+1-555-1001",
     "Authentic Italian cuisine with handmade pasta and traditional recipes."),
    ("sushi_zen@example.com", "sushi_zen_owner", "Sushi Zen", "+1-555-1002",
     "Fresh sushi and Japanese delicacies prepared by master chefs."),
    ("burger_barn@example.com", "burger_barn_owner", "Burger Barn", "+1-555-1003",
     "Gourmet burgers made with locally sourced beef and artisanal buns."),
    ("taco_fiesta@example.com", "taco_fiesta_owner", "Taco Fiesta", "+1-555-1004",
     "Vibrant Mexican street food with bold flavors and homemade salsas."),
]

SAMPLE_BOXES = {
    "Pasta Palace": [
        ("Classic Spaghetti Carbonara Box", "15.99", 25),
        ("Chicken Parmigiana Box", "18.50", 20),
        ("Vegetarian Lasagna Box", "16.75", 15),
    ],
    "Sushi Zen": [
        ("California Roll Combo Box", "22.00", 30),
        ("Salmon Teriyaki Bento Box", "24.50", 18),
        ("Vegetarian Sushi Box", "19.99", 12),
    ],
    "Burger Barn": [
        ("Classic Cheeseburger Box", "12.99", 35),
        ("BBQ Bacon Burger Box", "15.50", 28),
        ("Veggie Deluxe Burger Box", "13.75", 22),
    ],
    "Taco Fiesta": [
        ("Street Taco Trio Box", "11.99", 40),
        ("Chicken Quesadilla Box", "13.50", 25),
        ("Carnitas Burrito Bowl Box", "14.25", 30),
    ],
}

SAMPLE_CUSTOMERS = [
    ("john.doe@example.com", "john_doe"),
    ("jane.smith@example.com", "jane_smith"),
]


def seed_sample_data(db: Database, password: str = "password123"):
    """Seed an admin, restaurant owners, their boxes and customers"""
    from .auth import hash_password

    with db.transaction() as cur:
        existing = cur.fetch_one("SELECT COUNT(*) AS count FROM users")
        if existing and existing["count"] > 0:
            return

        logger.info("Seeding sample data...")
        password_hash = hash_password(password)

        cur.insert("users", {
            "email": "admin@wyzly.com",
            "username": "admin",
            "password_hash": hash_password("admin123"),
            "role": "admin",
        })

        for email, username, name, phone, description in SAMPLE_RESTAURANTS:
            owner_id = cur.insert("users", {
                "email": email,
                "username": username,
                "password_hash": password_hash,
                "role": "restaurant",
            })
            restaurant_id = cur.insert("restaurants", {
                "name": name,
                "phone_number": phone,
                "description": description,
                "owner_id": owner_id,
            })
            for title, price, quantity in SAMPLE_BOXES[name]:
                box_id = cur.insert("boxes", {
                    "title": title,
                    "price": Decimal(price),
                    "quantity": quantity,
                    "restaurant_id": restaurant_id,
                    "is_available": True,
                })
                cur.insert("inventory_commands", {
                    "type": "increase",
                    "box_id": box_id,
                    "quantity": quantity,
                    "previous_quantity": 0,
                })

        for email, username in SAMPLE_CUSTOMERS:
            cur.insert("users", {
                "email": email,
                "username": username,
                "password_hash": password_hash,
                "role": "customer",
            })

    logger.info("Sample data seeded")


if __name__ == "__main__":
    config.configure_logging()
    database = Database()
    database.create_tables()
    seed_sample_data(database)
    database.close()
