"""Maintenance endpoints.

Implements:
- POST /api/v1/maintenance/idempotency/prune - Drop processed-event records past retention
"""

from fastapi import APIRouter, Depends

from iap_entitlements.api.dependencies import get_engine
from iap_entitlements.logging_config import get_logger
from iap_entitlements.models import PruneResponse
from iap_entitlements.services.entitlement_state_machine import EntitlementStateMachine

logger = get_logger(__name__)
router = APIRouter(tags=["Maintenance"], prefix="/api/v1/maintenance")


@router.post("/idempotency/prune", response_model=PruneResponse, summary="Prune idempotency records")
def prune_idempotency_records(engine: EntitlementStateMachine = Depends(get_engine)) -> PruneResponse:
    pruned = engine.guard.prune_expired()
    logger.info("idempotency_prune_requested", pruned=pruned)
    return PruneResponse(pruned=pruned, retentionDays=engine.guard.retention_days)
