"""
Farmer disputes of FAKE decisions.

An appeal can only be filed against a record currently marked FAKE and
only one can be open per record. The record itself holds the pointer to
its open appeal, so filing is a single conditional update.
"""

import logging
import uuid

from pymongo import ReturnDocument

from app import database
from app.errors import (
    DuplicateAppeal, InvalidAppealState, NotFoundError, PermissionDeniedError, ValidationError,
)
from app.services import verification
from app.services.triage import FAKE, REAL
from app.stages import normalize_stage_name
from utils.jwt import Actor
from utils.notify import ALL_ADMINS, notify

logger = logging.getLogger(__name__)

RESET = verification.APPEAL_RESET
APPROVED = verification.APPEAL_APPROVED
UPHELD = "UPHELD"
RESOLUTIONS = (RESET, APPROVED, UPHELD)

DEFAULT_APPEAL_REASON = "Farmer disputes the decision"


async def file_appeal(
    actor: Actor,
    image_url: str,
    batch_id: str,
    stage_name: str,
    reason: str | None = None,
) -> str:
    stage_name = normalize_stage_name(stage_name)
    batch = await database.batches_col.find_one({"batch_id": batch_id})
    if not batch:
        raise NotFoundError("Batch not found", batchId=batch_id)
    if batch["farmer_id"] != actor.id:
        raise PermissionDeniedError("Not your batch", batchId=batch_id)

    key = {"image_url": image_url, "batch_id": batch_id, "stage_name": stage_name}
    appeal_id = f"APL-{uuid.uuid4().hex[:12].upper()}"
    now = database.utcnow()

    record = await database.verifications_col.find_one_and_update(
        {**key, "verification_status": FAKE, "open_appeal_id": None},
        {
            "$set": {"open_appeal_id": appeal_id, "updated_at": now},
            "$inc": {"version": 1},
        },
        return_document=ReturnDocument.AFTER,
    )
    if not record:
        current = await verification.get_record(image_url, batch_id, stage_name)
        if current.get("open_appeal_id"):
            raise DuplicateAppeal(
                "An appeal is already open for this image",
                appealId=current["open_appeal_id"],
            )
        raise InvalidAppealState(
            "Only images marked FAKE can be appealed",
            verificationStatus=current.get("verification_status"),
        )

    appeal = {
        "appeal_id": appeal_id,
        **key,
        "stage_id": record.get("stage_id"),
        "farmer_id": actor.id,
        "appeal_reason": (reason or "").strip() or DEFAULT_APPEAL_REASON,
        "rejection_reason": record.get("rejection_reason"),
        "status": "OPEN",
        "resolution": None,
        "resolution_note": None,
        "resolved_by": None,
        "resolved_at": None,
        "created_at": now,
        "updated_at": now,
    }
    await database.appeals_col.insert_one(appeal)
    logger.info("Appeal %s filed by %s for %s in %s/%s", appeal_id, actor.id, image_url, batch_id, stage_name)

    await notify(
        ALL_ADMINS, "Admin",
        "Farmer Appeal Submitted",
        f"Farmer {actor.name or actor.id} disputes a rejected {stage_name} photo "
        f"in batch {batch.get('batch_code') or batch_id}: {appeal['appeal_reason']}",
        batch_id=batch_id, category="appeal",
        metadata={"appealId": appeal_id, "imageUrl": image_url, "stageName": stage_name},
    )
    return appeal_id


async def resolve_appeal(actor: Actor, appeal_id: str, resolution: str, note: str | None = None) -> dict:
    """
    RESET returns the record to pending, APPROVED marks it REAL and
    UPHELD keeps the FAKE decision. Either way the appeal closes.
    """
    if resolution not in RESOLUTIONS:
        raise ValidationError(f"Invalid resolution: {resolution}", allowed=list(RESOLUTIONS))

    if resolution == UPHELD:
        pending = await database.appeals_col.find_one({"appeal_id": appeal_id, "status": "OPEN"})
        if pending:
            record = await verification.get_record(
                pending["image_url"], pending["batch_id"], pending["stage_name"]
            )
            if record.get("verification_status") != FAKE:
                raise InvalidAppealState(
                    "Only a FAKE decision can be upheld",
                    verificationStatus=record.get("verification_status"),
                )

    now = database.utcnow()
    appeal = await database.appeals_col.find_one_and_update(
        {"appeal_id": appeal_id, "status": "OPEN"},
        {
            "$set": {
                "status": "RESOLVED",
                "resolution": resolution,
                "resolution_note": note,
                "resolved_by": actor.id,
                "resolved_at": now,
                "updated_at": now,
            }
        },
        return_document=ReturnDocument.AFTER,
    )
    if not appeal:
        existing = await database.appeals_col.find_one({"appeal_id": appeal_id})
        if not existing:
            raise NotFoundError("Appeal not found", appealId=appeal_id)
        raise InvalidAppealState("Appeal already resolved", resolution=existing.get("resolution"))

    key = {"image_url": appeal["image_url"], "batch_id": appeal["batch_id"], "stage_name": appeal["stage_name"]}
    await database.verifications_col.update_one(
        {**key, "open_appeal_id": appeal_id},
        {"$set": {"open_appeal_id": None, "updated_at": now}, "$inc": {"version": 1}},
    )

    if resolution == RESET:
        await verification.reset_decision(actor, appeal["image_url"], appeal["batch_id"], appeal["stage_name"])
    elif resolution == APPROVED:
        await verification.set_decision(actor, appeal["image_url"], appeal["batch_id"], appeal["stage_name"], REAL)

    logger.info("Appeal %s resolved as %s by %s", appeal_id, resolution, actor.id)

    outcome = {
        RESET: "the photo goes back to review",
        APPROVED: "the photo is now verified",
        UPHELD: "the rejection stands",
    }[resolution]
    await notify(
        appeal["farmer_id"], "Farmer",
        "Appeal Resolved",
        f"Your appeal for the {appeal['stage_name']} photo was reviewed: {outcome}."
        + (f" Note: {note}" if note else ""),
        batch_id=appeal["batch_id"], category="appeal",
        metadata={"appealId": appeal_id, "resolution": resolution},
    )
    return appeal


async def list_appeals(status: str | None = None, farmer_id: str | None = None) -> list[dict]:
    query = {}
    if status:
        query["status"] = status
    if farmer_id:
        query["farmer_id"] = farmer_id
    return await database.appeals_col.find(query).sort("created_at", -1).to_list(length=None)
