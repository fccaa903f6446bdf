# backend/routes/batches.py
from fastapi import APIRouter, Depends

from app.database import batch_helper
from app.models.schemas import BatchCreate
from app.services import batch_lifecycle, stage_tracker
from utils.jwt import ADMIN, FARMER, Actor, require_role

router = APIRouter(prefix="/api", tags=["batches"])


# 1. Farmer creates a batch
@router.post("/farmer/batches", status_code=201)
async def create_batch_endpoint(data: BatchCreate, actor: Actor = Depends(require_role(FARMER))):
    batch = await batch_lifecycle.create_batch(actor, data.to_document())
    return batch_helper(batch)


# 2. Farmer's own batches
@router.get("/farmer/batches")
async def farmer_batches(status: str | None = None, actor: Actor = Depends(require_role(FARMER))):
    batches = await batch_lifecycle.list_batches(farmer_id=actor.id, status=status)
    return [batch_helper(b) for b in batches]


# 3. Batch details (owner or admin)
@router.get("/batches/{batch_id}")
async def get_batch_endpoint(batch_id: str, actor: Actor = Depends(require_role(FARMER, ADMIN))):
    return batch_helper(await batch_lifecycle.get_batch(batch_id, actor))


# 4. All seven stages with per-image verification state
@router.get("/batches/{batch_id}/stages")
async def batch_stages(batch_id: str, actor: Actor = Depends(require_role(FARMER, ADMIN))):
    batch = await batch_lifecycle.get_batch(batch_id, actor)
    return await stage_tracker.list_stages(batch["batch_id"])


# 5. Verification progress summary
@router.get("/batches/{batch_id}/verification-status")
async def batch_verification_status(batch_id: str, actor: Actor = Depends(require_role(FARMER, ADMIN))):
    return await batch_lifecycle.verification_summary(batch_id, actor)
