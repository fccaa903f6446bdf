# backend/routes/appeals.py
from fastapi import APIRouter, Depends

from app.database import appeal_helper
from app.models.schemas import AppealCreate
from app.services import appeals
from utils.jwt import FARMER, Actor, require_role

router = APIRouter(prefix="/api/farmer", tags=["appeals"])


@router.post("/appeals", status_code=201)
async def file_appeal(data: AppealCreate, actor: Actor = Depends(require_role(FARMER))):
    appeal_id = await appeals.file_appeal(
        actor, data.imageUrl, data.batchId, data.stageName, data.appealReason
    )
    return {"appealId": appeal_id, "status": "OPEN"}


@router.get("/appeals")
async def my_appeals(status: str | None = None, actor: Actor = Depends(require_role(FARMER))):
    return [appeal_helper(a) for a in await appeals.list_appeals(status=status, farmer_id=actor.id)]
