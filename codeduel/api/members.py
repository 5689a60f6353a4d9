from fastapi import APIRouter, Query

from codeduel.features.analytics.service import get_member_results
from codeduel.features.evaluation.jobs import load_membership
from codeduel.features.penalties.ledger import list_penalties

router = APIRouter(prefix="/v1/members", tags=["members"])


@router.get("/{member_id}/results")
def member_results(member_id: str, limit: int = Query(default=30, ge=1, le=365)):
    """Recent daily results for a membership, newest first."""
    member = load_membership(member_id)
    return {
        "member_id": member.id,
        "challenge_id": member.challenge_id,
        "current_streak": member.current_streak,
        "longest_streak": member.longest_streak,
        "total_penalties": member.total_penalties,
        "results": get_member_results(member_id, limit=limit),
    }


@router.get("/{member_id}/penalties")
def member_penalties(member_id: str):
    member = load_membership(member_id)
    return {"member_id": member.id, "total_penalties": member.total_penalties, "entries": list_penalties(member_id)}
