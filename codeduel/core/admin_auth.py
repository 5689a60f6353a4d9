"""
Admin authentication for the evaluation control endpoints.

A shared secret in the X-Admin-Key header, compared against ADMIN_KEY.
Actor identity is a short hash of the key so audit logs never carry the secret.
"""
import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from codeduel.core.config import settings


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "key:<hash>"
    auth_mechanism: str = "x_admin_key"


def get_admin_api_key() -> Optional[str]:
    """Prefer the ADMIN_KEY env var (tests set it late); fall back to settings."""
    return os.getenv("ADMIN_KEY") or settings.ADMIN_KEY


def get_admin_actor(request: Request) -> Optional[AdminActor]:
    expected_key = get_admin_api_key()
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

    Usage:
        @router.post("/admin/evaluations/run")
        def run(actor: AdminActor = Depends(require_admin)): ...
    """
    actor = get_admin_actor(request)
    if actor:
        return actor

    if not get_admin_api_key():
        raise HTTPException(
            status_code=503,
            detail="Admin authentication not configured (set ADMIN_KEY)",
        )
    raise HTTPException(status_code=401, detail="Unauthorized: invalid or missing X-Admin-Key")
