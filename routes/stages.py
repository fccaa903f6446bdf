# backend/routes/stages.py
from typing import List

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse

from app.database import stage_helper, verification_helper
from app.models.schemas import StageUpdate
from app.services import stage_tracker
from app.services.stage_tracker import ImageUpload
from utils.jwt import FARMER, Actor, require_role

router = APIRouter(prefix="/api/farmer", tags=["stages"])


@router.post("/batches/{batch_id}/stages")
async def submit_stage(
    batch_id: str,
    stage_name: str = Form(...),
    notes: str | None = Form(None),
    status: str | None = Form(None),
    images: List[UploadFile] = File(...),
    actor: Actor = Depends(require_role(FARMER)),
):
    uploads = [
        ImageUpload(
            filename=image.filename or f"image_{i}.jpg",
            content=await image.read(),
            content_type=image.content_type,
        )
        for i, image in enumerate(images)
    ]

    result = await stage_tracker.submit_stage(actor, batch_id, stage_name, uploads, notes, status)

    body = {
        "stage": stage_helper(result.stage) if result.stage else None,
        "submitted": result.submitted,
        "images": [
            {
                "filename": o.filename,
                "imageUrl": o.image_url,
                "verification": verification_helper(o.record) if o.record else None,
            }
            for o in result.uploaded
        ],
        "failedUploads": [
            {"filename": o.filename, "error": o.error} for o in result.failed_uploads
        ],
    }

    if result.stage is None or not result.uploaded:
        # nothing durable for this stage
        body["detail"] = "Not enough images could be stored to submit this stage"
        body["code"] = "storage_error"
        return JSONResponse(status_code=502, content=body)
    return JSONResponse(status_code=201, content=body)


@router.patch("/batches/{batch_id}/stages/{stage_name}")
async def update_stage(
    batch_id: str,
    stage_name: str,
    data: StageUpdate,
    actor: Actor = Depends(require_role(FARMER)),
):
    stage = await stage_tracker.update_stage_details(actor, batch_id, stage_name, data.notes, data.status)
    return stage_helper(stage)
