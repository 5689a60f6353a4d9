from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass
class LeetCodeCredentials:
    """Decrypted LeetCode session cookie plus CSRF token."""

    cookie: str
    csrf_token: Optional[str] = None

    def to_payload(self) -> dict:
        return {"cookie": self.cookie, "csrfToken": self.csrf_token}

    @classmethod
    def from_payload(cls, payload: dict) -> "LeetCodeCredentials":
        return cls(cookie=payload.get("cookie") or "", csrf_token=payload.get("csrfToken"))


@dataclass
class LinkResult:
    user_id: str
    username: str
    validated: bool
    error: Optional[str] = None
