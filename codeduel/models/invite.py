"""
codeduel/models/invite.py
Invite code models: limited-use, expiring codes that grant challenge membership.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class InviteCode(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str = Field(description="Shareable code (uppercase hex)")
    challenge_id: str
    created_by: str
    max_uses: int = Field(ge=1, le=100)
    used_count: int = Field(default=0, ge=0)
    expires_at: datetime

    @property
    def remaining_uses(self) -> int:
        return max(0, self.max_uses - self.used_count)


class RedemptionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    challenge_id: str
    membership_id: str
    used_count: int
    max_uses: int
