"""
Batch creation and the PENDING / VERIFIED / REJECTED machine.

Only an admin moves a batch between states, and every move is one
conditional update on the batch document. Verifying a batch is the only
way into VERIFIED; the certificate gate is evaluated right after.
"""

import logging
import uuid

from pymongo import ReturnDocument

from app import database
from app.errors import (
    CertificateAlreadyIssued, InvalidTransition, IssuerError, NotFoundError,
    PermissionDeniedError, ValidationError,
)
from app.services import certificate_gate, verification
from app.stages import MIN_IMAGES_PER_STAGE, STAGE_NAMES
from utils.jwt import Actor
from utils.notify import notify

logger = logging.getLogger(__name__)

BATCH_STATUSES = ("PENDING", "VERIFIED", "REJECTED")


# =========================
# CREATE / READ
# =========================

async def create_batch(actor: Actor, data: dict) -> dict:
    if not (data.get("crop_name") or "").strip():
        raise ValidationError("cropName is required")

    batch_id = f"BATCH-{uuid.uuid4().hex[:10].upper()}"
    batch_code = await database.next_batch_code()

    batch = database.new_batch_document(batch_id, batch_code, actor.id, data)
    await database.batches_col.insert_one(batch)
    logger.info("Batch %s (%s) created by %s", batch_id, batch_code, actor.id)

    await notify(
        actor.id, "Farmer",
        "New Batch Created",
        f"Your batch {batch_code} ({batch['crop_name']}) has been created. "
        f"Submit photos for all {len(STAGE_NAMES)} stages to request verification.",
        batch_id=batch_id, category="batch",
    )
    return batch


async def get_batch(batch_id: str, actor: Actor | None = None) -> dict:
    """Look a batch up by id or batch code. Farmers only see their own."""
    batch = await database.batches_col.find_one(
        {"$or": [{"batch_id": batch_id}, {"batch_code": batch_id}]}
    )
    if not batch:
        raise NotFoundError("Batch not found", batchId=batch_id)
    if actor and not actor.is_admin and batch["farmer_id"] != actor.id:
        raise PermissionDeniedError("Not your batch", batchId=batch_id)
    return batch


async def list_batches(farmer_id: str | None = None, status: str | None = None) -> list[dict]:
    query = {}
    if farmer_id:
        query["farmer_id"] = farmer_id
    if status:
        if status not in BATCH_STATUSES:
            raise ValidationError(f"Invalid batch status: {status}", allowed=list(BATCH_STATUSES))
        query["status"] = status
    return await database.batches_col.find(query).sort("created_at", -1).to_list(length=None)


# =========================
# TRANSITIONS
# =========================

async def verify_batch(actor: Actor, batch_id: str) -> dict:
    """
    PENDING/REJECTED -> VERIFIED, then evaluate the certificate gate.

    Verifying an already VERIFIED batch only re-runs the gate. Issuer
    failures surface as IssuerError while the batch stays VERIFIED.
    """
    batch_id = (await get_batch(batch_id))["batch_id"]
    now = database.utcnow()
    batch = await database.batches_col.find_one_and_update(
        {"batch_id": batch_id, "status": {"$in": ["PENDING", "REJECTED"]}},
        {
            "$set": {
                "status": "VERIFIED",
                "verified_at": now,
                "verified_by": actor.id,
                "rejection_reason": None,
                "updated_at": now,
            }
        },
        return_document=ReturnDocument.AFTER,
    )

    if batch:
        logger.info("Batch %s verified by %s", batch_id, actor.id)
        await notify(
            batch["farmer_id"], "Farmer",
            "Batch Verified",
            f"Batch {batch.get('batch_code') or batch_id} was verified by an admin.",
            batch_id=batch_id, category="batch",
        )
    else:
        batch = await get_batch(batch_id)
        if batch["status"] != "VERIFIED":
            raise InvalidTransition(
                f"Cannot verify a batch in status {batch['status']}", status=batch["status"]
            )

    try:
        certified = await certificate_gate.maybe_issue_certificate(batch_id)
    except IssuerError as e:
        raise IssuerError(
            f"Batch verified but certificate issuance failed: {e.message}",
            batchId=batch_id, batchStatus="VERIFIED",
        ) from e

    return certified or await database.batches_col.find_one({"batch_id": batch_id})


async def reject_batch(actor: Actor, batch_id: str, reason: str | None = None) -> dict:
    """PENDING/VERIFIED -> REJECTED. A certified batch cannot be rejected."""
    current = await get_batch(batch_id)
    batch_id = current["batch_id"]
    if current.get("certificate_id"):
        raise CertificateAlreadyIssued(
            "Batch already has a certificate and cannot be rejected",
            certificateId=current["certificate_id"],
        )

    now = database.utcnow()
    reason = (reason or "").strip() or "Rejected by admin"
    batch = await database.batches_col.find_one_and_update(
        {
            "batch_id": batch_id,
            "certificate_id": None,
            "$or": certificate_gate.claim_released(now),
        },
        {
            "$set": {
                "status": "REJECTED",
                "rejection_reason": reason,
                "rejected_at": now,
                "rejected_by": actor.id,
                "certificate_eligible": False,
                "certificate_claim": None,
                "updated_at": now,
            }
        },
        return_document=ReturnDocument.AFTER,
    )
    if not batch:
        latest = await database.batches_col.find_one({"batch_id": batch_id})
        if latest and latest.get("certificate_id"):
            raise CertificateAlreadyIssued(
                "Batch already has a certificate and cannot be rejected",
                certificateId=latest["certificate_id"],
            )
        raise InvalidTransition("Certificate issuance in progress for this batch", batchId=batch_id)

    logger.info("Batch %s rejected by %s: %s", batch_id, actor.id, reason)
    await notify(
        batch["farmer_id"], "Farmer",
        "Batch Rejected",
        f"Batch {batch.get('batch_code') or batch_id} was rejected: {reason}",
        batch_id=batch_id, category="batch",
    )
    return batch


# =========================
# SUMMARY
# =========================

async def verification_summary(batch_id: str, actor: Actor | None = None) -> dict:
    batch = await get_batch(batch_id, actor)
    batch_id = batch["batch_id"]

    stages = {s["stage_name"]: s async for s in database.stages_col.find({"batch_id": batch_id})}
    records = await verification.records_for_batch(batch_id)
    readiness = await certificate_gate.stage_readiness(batch_id)

    counts = {"total": 0, "real": 0, "fake": 0, "pending": 0}
    per_stage = {name: {"real": 0, "fake": 0, "pending": 0} for name in STAGE_NAMES}
    for record in records:
        urls = stages.get(record["stage_name"], {}).get("image_urls", [])
        if record["image_url"] not in urls:
            continue
        bucket = {"REAL": "real", "FAKE": "fake"}.get(record.get("verification_status"), "pending")
        counts["total"] += 1
        counts[bucket] += 1
        per_stage[record["stage_name"]][bucket] += 1

    stage_views = []
    for number, name in enumerate(STAGE_NAMES, start=1):
        images = len(stages.get(name, {}).get("image_urls", []))
        stage_views.append({
            "stageNumber": number,
            "name": name,
            "images": images,
            "submitted": images >= MIN_IMAGES_PER_STAGE,
            **per_stage[name],
        })

    submitted = sum(1 for s in stage_views if s["submitted"])
    ready = batch["status"] == "VERIFIED" and readiness.complete

    if batch.get("certificate_id"):
        message = f"Certified. Certificate ID: {batch['certificate_id']}"
    elif readiness.blocked_stages:
        message = f"Rejected photos in: {', '.join(readiness.blocked_stages)}"
    elif readiness.missing_stages:
        message = f"{len(readiness.missing_stages)} stage(s) still need at least {MIN_IMAGES_PER_STAGE} photos"
    elif batch["status"] != "VERIFIED":
        message = "All stages submitted, awaiting admin verification"
    else:
        message = "Ready for certificate"

    return {
        "batchId": batch_id,
        "batchCode": batch.get("batch_code"),
        "status": batch["status"],
        "certificateId": batch.get("certificate_id"),
        "certificateEligible": batch.get("certificate_eligible", False),
        "stagesSubmitted": submitted,
        "totalStages": len(STAGE_NAMES),
        "progressPercent": round(submitted / len(STAGE_NAMES) * 100),
        "totalImages": counts["total"],
        "verifiedImages": counts["real"],
        "rejectedImages": counts["fake"],
        "pendingImages": counts["pending"],
        "missingStages": readiness.missing_stages,
        "blockedStages": readiness.blocked_stages,
        "readyForCertificate": ready,
        "message": message,
        "stages": stage_views,
    }
