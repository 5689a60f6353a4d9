from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from codeduel.core.admin_auth import AdminActor, require_admin
from codeduel.core.errors import ValidationError
from codeduel.features.evaluation.engine import load_user
from codeduel.features.sessions.service import invalidate_user_session, link_session
from codeduel.models.session import LeetCodeCredentials
from codeduel.services.leetcode_client import get_leetcode_client

logger = logging.getLogger("codeduel")

router = APIRouter(prefix="/v1/users", tags=["sessions"])


class LinkSessionRequest(BaseModel):
    cookie: str
    csrf_token: Optional[str] = None
    username: Optional[str] = None
    expires_at: Optional[datetime] = None


@router.put("/{user_id}/leetcode-session")
def put_leetcode_session(user_id: str, body: LinkSessionRequest, actor: AdminActor = Depends(require_admin)):
    """Store a LeetCode session for the user; validation failures are reported, not fatal."""
    user = load_user(user_id)
    username = body.username or user.leetcode_username
    if not username:
        raise ValidationError("No LeetCode username configured for this user")

    logger.info("admin.session_link", extra={"event_type": "admin.session_link", "actor": actor.actor_id})
    result = link_session(
        user_id,
        username,
        LeetCodeCredentials(cookie=body.cookie, csrf_token=body.csrf_token),
        client=get_leetcode_client(),
        expires_at=body.expires_at,
    )
    return asdict(result)


@router.delete("/{user_id}/leetcode-session")
def delete_leetcode_session(user_id: str, actor: AdminActor = Depends(require_admin)):
    load_user(user_id)
    logger.info("admin.session_invalidate", extra={"event_type": "admin.session_invalidate", "actor": actor.actor_id})
    return {"user_id": user_id, "invalidated": invalidate_user_session(user_id)}
