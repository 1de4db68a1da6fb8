"""
Admin authentication for operational endpoints.

A single shared secret (ADMIN_KEY) presented in the X-Admin-Key header.
Actors are identified by a short hash of the key, never the key itself.
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from billsync.core.config import settings


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "key:<hash>"
    auth_mechanism: str = "x_admin_key"


def get_admin_key() -> Optional[str]:
    return settings.ADMIN_KEY


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """Return an AdminActor for a valid X-Admin-Key header, else None."""
    expected_key = get_admin_key()
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"key:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require admin authentication.

    503 when no admin key is configured, 401 when the header is missing or wrong.
    """
    actor = verify_admin_key(request)
    if actor:
        return actor

    if not get_admin_key():
        raise HTTPException(
            status_code=503,
            detail={
                "error": "Admin authentication not configured",
                "code": "admin_auth_unconfigured",
                "hint": "Set ADMIN_KEY",
            },
        )
    raise HTTPException(
        status_code=401,
        detail={
            "error": "Unauthorized: invalid or missing admin credentials",
            "code": "admin_unauthorized",
            "hint": "Use the X-Admin-Key header.",
        },
    )
