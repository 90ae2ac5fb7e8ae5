"""
Caller identity, the authorization policy and password/session helpers.

Sessions are opaque bearer tokens stored in the "session" collection; they
expire SESSION_TTL_HOURS after login.
"""

import hashlib
import hmac
import logging
import os
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from database import utcnow
from errors import ForbiddenError
from repository import Store
from schemas import Role

logger = logging.getLogger(__name__)

SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS", 24))
MIN_PASSWORD_LENGTH = 6
PBKDF2_ITERATIONS = 100_000


@dataclass(frozen=True)
class Identity:
    customer_id: str
    role: Role = Role.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def authorize(caller: Identity, owner_id: Optional[str] = None, admin_only: bool = False) -> None:
    """Raise ForbiddenError unless the caller may act on a record owned by owner_id.

    Admins may do anything. With admin_only set, nobody else may.
    """
    if caller.is_admin:
        return
    if admin_only:
        raise ForbiddenError("Administrator role required")
    if owner_id is not None and str(owner_id) != caller.customer_id:
        raise ForbiddenError()


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), bytes.fromhex(salt), PBKDF2_ITERATIONS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    try:
        salt, expected = stored.split("$", 1)
        digest = hashlib.pbkdf2_hmac("sha256", password.encode(), bytes.fromhex(salt), PBKDF2_ITERATIONS)
    except (ValueError, AttributeError):
        return False
    return hmac.compare_digest(digest.hex(), expected)


def open_session(store: Store, customer_id: str) -> str:
    token = secrets.token_urlsafe(32)
    store.sessions.open(token, customer_id)
    return token


def resolve_identity(store: Store, token: str) -> Optional[Identity]:
    """Map a bearer token to the caller, or None when it is unknown or expired."""
    session = store.sessions.resolve(token)
    if session is None:
        return None
    if utcnow() - session["created_at"] > timedelta(hours=SESSION_TTL_HOURS):
        logger.info("Session for customer %s expired", session["customer_id"])
        store.sessions.close(token)
        return None
    customer = store.customers.find(session["customer_id"])
    if customer is None:
        return None
    return Identity(customer_id=customer["id"], role=Role(customer.get("role", Role.CUSTOMER.value)))


def public_customer(customer: dict) -> dict:
    return {k: v for k, v in customer.items() if k != "password_hash"}
