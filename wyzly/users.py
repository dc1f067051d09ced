"""
Account registration and login.
"""

import logging
from typing import Any, Dict

from .auth import Principal, create_jwt_token, hash_password, redirect_url_for, verify_password
from .database import Database, IntegrityErrors, to_timestamp
from .errors import ConflictError, AuthenticationError, ValidationError
from .schemas import LoginRequest, RegisterRequest, Role

logger = logging.getLogger(__name__)


def serialize_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "email": user["email"],
        "username": user["username"],
        "role": user["role"],
        "phoneNumber": user.get("phone_number"),
        "createdAt": to_timestamp(user.get("created_at")),
    }


def principal_for(user: Dict[str, Any]) -> Principal:
    return Principal(id=user["id"], email=user["email"], username=user["username"], role=Role(user["role"]))


def register(db: Database, data: RegisterRequest) -> Dict[str, Any]:
    """Create an account (and a restaurant for owners) and return user + token"""
    if data.password != data.confirm_password:
        raise ValidationError("Passwords do not match")
    if data.role is Role.ADMIN:
        raise ValidationError("Invalid role. Must be customer or restaurant")

    email = data.email.lower().strip()
    username = data.username.lower().strip()

    try:
        with db.transaction() as cur:
            existing = cur.fetch_one(
                "SELECT email, username FROM users WHERE email = %s OR username = %s",
                (email, username),
            )
            if existing:
                if existing["email"] == email:
                    raise ConflictError("Email already registered")
                raise ConflictError("Username already taken")

            user_id = cur.insert("users", {
                "email": email,
                "username": username,
                "password_hash": hash_password(data.password),
                "role": data.role.value,
                "phone_number": data.phone_number,
                "age": data.age,
                "gender": data.gender,
                "address": data.address,
            })

            if data.role is Role.RESTAURANT:
                cur.insert("restaurants", {
                    "name": data.restaurant_name or f"{data.username}'s Kitchen",
                    "phone_number": data.phone_number,
                    "description": data.restaurant_description,
                    "owner_id": user_id,
                })

            user = cur.fetch_one("SELECT * FROM users WHERE id = %s", (user_id,))
    except IntegrityErrors:
        # Lost a race with a concurrent registration for the same email/username
        raise ConflictError("Email or username already registered")

    logger.info("Registered %s user %s", user["role"], user["id"])
    token = create_jwt_token(principal_for(user))
    return {"user": serialize_user(user), "token": token}


def login(db: Database, data: LoginRequest) -> Dict[str, Any]:
    """Check credentials for the requested role and issue a token"""
    user = db.execute_query(
        "SELECT * FROM users WHERE email = %s AND role = %s",
        (data.email.lower().strip(), data.role.value),
        fetch_one=True,
    )

    if not user or not verify_password(data.password, user["password_hash"]):
        raise AuthenticationError("Invalid credentials or role")

    principal = principal_for(user)
    return {
        "user": serialize_user(user),
        "token": create_jwt_token(principal),
        "redirectUrl": redirect_url_for(principal.role),
    }
