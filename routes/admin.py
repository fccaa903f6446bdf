from fastapi import APIRouter, Depends

from app.database import appeal_helper, batch_helper, verification_helper
from app.models.schemas import AppealResolve, BatchReject, DecisionRequest, RecordKey, ResetRequest
from app.services import appeals, batch_lifecycle, stage_tracker, verification
from utils.jwt import ADMIN, Actor, require_role

# Base path for all Admin routes in this file
router = APIRouter(prefix="/admin", tags=["Admin"])

admin_only = require_role(ADMIN)


# 1. Batch list for the verification dashboard
@router.get("/batches")
async def admin_batches(status: str | None = None, actor: Actor = Depends(admin_only)):
    return [batch_helper(b) for b in await batch_lifecycle.list_batches(status=status)]


# 2. Verify a batch (and issue the certificate when every stage is ready)
@router.post("/batches/{batch_id}/verify")
async def verify_batch(batch_id: str, actor: Actor = Depends(admin_only)):
    batch = await batch_lifecycle.verify_batch(actor, batch_id)
    return batch_helper(batch)


# 3. Reject a batch
@router.post("/batches/{batch_id}/reject")
async def reject_batch(batch_id: str, data: BatchReject | None = None, actor: Actor = Depends(admin_only)):
    batch = await batch_lifecycle.reject_batch(actor, batch_id, data.reason if data else None)
    return batch_helper(batch)


# =====================================================
# IMAGE MODERATION
# =====================================================

@router.get("/verifications/queue")
async def review_queue(
    ai_action: str | None = None,
    batch_id: str | None = None,
    limit: int = 100,
    actor: Actor = Depends(admin_only),
):
    records = await verification.review_queue(ai_action=ai_action, batch_id=batch_id, limit=limit)
    return [verification_helper(r) for r in records]


@router.get("/verifications/stats")
async def validation_stats(actor: Actor = Depends(admin_only)):
    return await verification.validation_stats()


@router.post("/verifications/decision")
async def set_decision(data: DecisionRequest, actor: Actor = Depends(admin_only)):
    record = await verification.set_decision(
        actor,
        data.imageUrl,
        data.batchId,
        data.stageName,
        data.verificationStatus,
        rejection_reason=data.rejectionReason,
        expected_version=data.expectedVersion,
    )
    return verification_helper(record)


@router.post("/verifications/reset")
async def reset_decision(data: ResetRequest, actor: Actor = Depends(admin_only)):
    record = await verification.reset_decision(
        actor, data.imageUrl, data.batchId, data.stageName, expected_version=data.expectedVersion
    )
    return verification_helper(record)


@router.post("/verifications/rescore")
async def rescore(data: RecordKey, actor: Actor = Depends(admin_only)):
    record = await stage_tracker.rescore_image(actor, data.batchId, data.stageName, data.imageUrl)
    return verification_helper(record)


# =====================================================
# APPEALS
# =====================================================

@router.get("/appeals")
async def list_appeals(status: str | None = "OPEN", actor: Actor = Depends(admin_only)):
    return [appeal_helper(a) for a in await appeals.list_appeals(status=status)]


@router.post("/appeals/{appeal_id}/resolve")
async def resolve_appeal(appeal_id: str, data: AppealResolve, actor: Actor = Depends(admin_only)):
    appeal = await appeals.resolve_appeal(actor, appeal_id, data.resolution, data.note)
    return appeal_helper(appeal)
