from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from codeduel.core.admin_auth import AdminActor, require_admin
from codeduel.core.errors import ValidationError
from codeduel.features.analytics.service import get_submission_analytics
from codeduel.features.evaluation.jobs import enqueue_pending_retries, run_daily_evaluation
from codeduel.features.penalties.ledger import reconcile_penalty_totals

logger = logging.getLogger("codeduel")

router = APIRouter(prefix="/v1/admin", tags=["admin"])


class RunEvaluationRequest(BaseModel):
    on_date: Optional[date] = None
    force: bool = False


class PendingRetryRequest(BaseModel):
    since: date
    until: Optional[date] = None


@router.post("/evaluations/run")
def trigger_evaluation(body: Optional[RunEvaluationRequest] = None, actor: AdminActor = Depends(require_admin)):
    """Manual trigger for the daily fan-out (operational recovery)."""
    body = body or RunEvaluationRequest()
    logger.info("admin.evaluation_run", extra={"event_type": "admin.evaluation_run", "actor": actor.actor_id})
    return run_daily_evaluation(on_date=body.on_date, trigger="manual", force=body.force)


@router.post("/evaluations/pending/retry")
def retry_pending(body: PendingRetryRequest, actor: AdminActor = Depends(require_admin)):
    """Re-enqueue member jobs for days still pending since the given date."""
    if body.until is not None and body.until < body.since:
        raise ValidationError("until must not be before since")
    logger.info("admin.pending_retry", extra={"event_type": "admin.pending_retry", "actor": actor.actor_id})
    return enqueue_pending_retries(body.since, body.until)


@router.get("/analytics/submissions")
def submission_analytics(
    since: Optional[date] = Query(default=None),
    until: Optional[date] = Query(default=None),
    actor: AdminActor = Depends(require_admin),
):
    return get_submission_analytics(since=since, until=until)


@router.post("/penalties/reconcile")
def reconcile_penalties(fix: bool = Query(default=False), actor: AdminActor = Depends(require_admin)):
    logger.info("admin.penalties_reconcile", extra={"event_type": "admin.penalties_reconcile", "actor": actor.actor_id})
    return reconcile_penalty_totals(fix=fix)
