"""
Farmer stage submissions.

Images of one submission are uploaded and scored concurrently (bounded by
SUBMISSION_CONCURRENCY). A failed upload drops only that image; an
unavailable AI service sends the image to human review instead of failing
the submission. Input order is preserved in the stage's image list.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app import ai_client, config, database, ipfs_handler
from app.ai_client import AIScore
from app.errors import (
    AIServiceError, NotFoundError, PermissionDeniedError, StorageError, ValidationError,
)
from app.services import certificate_gate, verification
from app.services.triage import AUTO_REJECT, triage
from app.stages import MIN_IMAGES_PER_STAGE, STAGE_NAMES, normalize_stage_name
from ml.inference import ImageInspection, inspect_image
from utils.jwt import Actor
from utils.notify import notify

logger = logging.getLogger(__name__)

STAGE_STATUSES = ("PENDING", "IN_PROGRESS", "COMPLETED")


@dataclass
class ImageUpload:
    filename: str
    content: bytes
    content_type: str | None = None


@dataclass
class ImageOutcome:
    filename: str
    image_url: str | None = None
    record: dict | None = None
    error: str | None = None


@dataclass
class StageResult:
    stage: dict | None
    images: list[ImageOutcome] = field(default_factory=list)

    @property
    def uploaded(self) -> list[ImageOutcome]:
        return [i for i in self.images if i.image_url]

    @property
    def failed_uploads(self) -> list[ImageOutcome]:
        return [i for i in self.images if not i.image_url]

    @property
    def submitted(self) -> bool:
        return bool(self.stage) and len(self.stage.get("image_urls", [])) >= MIN_IMAGES_PER_STAGE


def _validate_status(status: str | None) -> None:
    if status is not None and status not in STAGE_STATUSES:
        raise ValidationError(f"Invalid stage status: {status}", allowed=list(STAGE_STATUSES))


async def _owned_batch(actor: Actor, batch_id: str) -> dict:
    batch = await database.batches_col.find_one({"batch_id": batch_id})
    if not batch:
        raise NotFoundError("Batch not found", batchId=batch_id)
    if batch["farmer_id"] != actor.id:
        raise PermissionDeniedError("Not your batch", batchId=batch_id)
    return batch


async def _score(url: str, context: dict, inspection: ImageInspection) -> AIScore | None:
    if not inspection.format_valid:
        return AIScore(
            deepfake_score=None,
            visual_quality_score=None,
            reason="; ".join(inspection.issues),
            image_hash=inspection.image_hash,
            format_valid=False,
            issues=list(inspection.issues),
        )

    try:
        score = await ai_client.score_image(url, context)
    except AIServiceError as e:
        logger.warning("AI scoring unavailable for %s: %s", url, e.message)
        return None

    if score.visual_quality_score is None:
        score.visual_quality_score = inspection.visual_quality_score
    score.image_hash = inspection.image_hash
    return score


async def submit_stage(
    actor: Actor,
    batch_id: str,
    stage_name: str,
    images: list[ImageUpload],
    notes: str | None = None,
    status: str | None = None,
) -> StageResult:
    stage_name = normalize_stage_name(stage_name)
    _validate_status(status)
    if len(images) < MIN_IMAGES_PER_STAGE:
        raise ValidationError(
            f"Minimum {MIN_IMAGES_PER_STAGE} images required per stage",
            received=len(images),
        )

    batch = await _owned_batch(actor, batch_id)
    existing = await database.stages_col.find_one({"batch_id": batch_id, "stage_name": stage_name})
    stage_id = existing["stage_id"] if existing else f"STG-{uuid.uuid4().hex[:10].upper()}"

    context = {"farmerId": batch["farmer_id"], "batchId": batch_id, "stageName": stage_name}
    limit = asyncio.Semaphore(config.SUBMISSION_CONCURRENCY)

    async def process(image: ImageUpload) -> ImageOutcome:
        outcome = ImageOutcome(filename=image.filename)
        inspection = await asyncio.to_thread(inspect_image, image.content, image.content_type)

        async with limit:
            try:
                outcome.image_url = await ipfs_handler.upload_image(image.content, image.filename, context)
            except StorageError as e:
                logger.warning("Dropping %s from %s/%s: %s", image.filename, batch_id, stage_name, e.message)
                outcome.error = e.message
                return outcome

            score = await _score(outcome.image_url, context, inspection)

        decision = triage(score)
        outcome.record = await verification.save_triage_result(
            outcome.image_url, batch_id, stage_name, batch["farmer_id"], stage_id, score, decision,
        )
        return outcome

    outcomes = await asyncio.gather(*(process(image) for image in images))
    # identical photos resolve to the same content address
    urls = list(dict.fromkeys(o.image_url for o in outcomes if o.image_url))

    stage = existing
    if urls and (existing or len(urls) >= MIN_IMAGES_PER_STAGE):
        stage = await _append_images(stage_id, batch_id, stage_name, batch["farmer_id"], urls, notes, status)
    elif urls:
        logger.warning(
            "Only %d distinct of %d images stored for %s/%s; stage not created",
            len(urls), len(images), batch_id, stage_name,
        )

    flagged = [o for o in outcomes if o.record and o.record.get("triage_action") == AUTO_REJECT]
    if flagged:
        await notify(
            batch["farmer_id"], "Farmer",
            "Images Under Review",
            f"{len(flagged)} {stage_name} photo(s) for batch {batch.get('batch_code') or batch_id} "
            "look suspicious and are waiting for an admin review.",
            batch_id=batch_id, category="IMAGE_REVIEW",
            metadata={"stageName": stage_name, "imageUrls": [o.image_url for o in flagged]},
        )

    if stage:
        logger.info(
            "Stage %s of %s now has %d images (%d failed uploads)",
            stage_name, batch_id, len(stage["image_urls"]), sum(1 for o in outcomes if not o.image_url),
        )
        await certificate_gate.reevaluate(batch_id)

    return StageResult(stage=stage, images=list(outcomes))


async def _append_images(
    stage_id: str,
    batch_id: str,
    stage_name: str,
    farmer_id: str,
    urls: list[str],
    notes: str | None,
    status: str | None,
) -> dict:
    now = database.utcnow()
    set_fields = {"updated_at": now}
    on_insert = {
        "stage_id": stage_id,
        "farmer_id": farmer_id,
        "created_at": now,
        "submitted_at": now,
    }
    if notes is not None:
        set_fields["notes"] = notes
    else:
        on_insert["notes"] = ""
    if status is not None:
        set_fields["status"] = status
    else:
        on_insert["status"] = "PENDING"

    update = {
        "$addToSet": {"image_urls": {"$each": urls}},
        "$set": set_fields,
        "$setOnInsert": on_insert,
    }
    query = {"batch_id": batch_id, "stage_name": stage_name}
    try:
        return await database.stages_col.find_one_and_update(
            query, update, upsert=True, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        # concurrent first submission created the stage
        return await database.stages_col.find_one_and_update(
            query, update, return_document=ReturnDocument.AFTER
        )


async def update_stage_details(
    actor: Actor,
    batch_id: str,
    stage_name: str,
    notes: str | None = None,
    status: str | None = None,
) -> dict:
    stage_name = normalize_stage_name(stage_name)
    _validate_status(status)
    await _owned_batch(actor, batch_id)

    update = {"updated_at": database.utcnow()}
    if notes is not None:
        update["notes"] = notes
    if status is not None:
        update["status"] = status

    stage = await database.stages_col.find_one_and_update(
        {"batch_id": batch_id, "stage_name": stage_name},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if not stage:
        raise NotFoundError("Stage not submitted yet", batchId=batch_id, stageName=stage_name)
    return stage


async def list_stages(batch_id: str) -> list[dict]:
    """All seven stages in order, with each image's current verification state."""
    stages = {
        s["stage_name"]: s
        async for s in database.stages_col.find({"batch_id": batch_id})
    }
    records = {
        (r["stage_name"], r["image_url"]): r
        for r in await verification.records_for_batch(batch_id)
    }

    result = []
    for number, name in enumerate(STAGE_NAMES, start=1):
        stage = stages.get(name)
        view = database.stage_helper(stage) if stage else {
            "stageId": None,
            "batchId": batch_id,
            "name": name,
            "status": "PENDING",
            "notes": "",
            "imageUrls": [],
            "submitted": False,
            "submittedAt": None,
            "createdAt": None,
            "updatedAt": None,
        }
        view["stageNumber"] = number
        view["images"] = [
            database.verification_helper(records[(name, url)]) if (name, url) in records
            else {"imageUrl": url, "verificationStatus": None}
            for url in view["imageUrls"]
        ]
        result.append(view)
    return result


async def rescore_image(actor: Actor, batch_id: str, stage_name: str, image_url: str) -> dict:
    """
    Ask the AI service again for an already stored image.

    Human decisions are kept; only the AI payload and triage action change.
    Raises AIServiceError when the service is still unavailable.
    """
    stage_name = normalize_stage_name(stage_name)
    record = await verification.get_record(image_url, batch_id, stage_name)
    context = {"farmerId": record["farmer_id"], "batchId": batch_id, "stageName": stage_name}

    score = await ai_client.score_image(image_url, context)
    previous = record.get("ai_validation") or {}
    if score.visual_quality_score is None:
        score.visual_quality_score = previous.get("visual_quality_score")
    score.image_hash = previous.get("image_hash")

    decision = triage(score)
    logger.info("Rescored %s in %s/%s by %s: %s", image_url, batch_id, stage_name, actor.id, decision.action)

    updated = await verification.save_triage_result(
        image_url, batch_id, stage_name, record["farmer_id"], record["stage_id"], score, decision,
    )
    await certificate_gate.reevaluate(batch_id)
    return updated
