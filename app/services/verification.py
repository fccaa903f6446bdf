"""
Per-image verification records and admin moderation.

A record is keyed by (image_url, batch_id, stage_name). The same photo
reused in another stage or batch gets its own record, so a decision in
one place never leaks into another.

Every write is a single conditional document update that bumps
``version``; callers holding an older version can ask for a
compare-and-swap through ``expected_version``.
"""

import logging
from dataclasses import dataclass

from pymongo import ReturnDocument

from app import config, database
from app.ai_client import AIScore
from app.errors import NotFoundError, StaleRecordError, ValidationError
from app.services import certificate_gate
from app.services.triage import (
    AUTO_APPROVE, AUTO_REJECT, FAKE, FLAG_FOR_HUMAN, REAL, TriageDecision,
)
from app.stages import normalize_stage_name
from utils.jwt import Actor
from utils.notify import notify

logger = logging.getLogger(__name__)

DECISION_STATUSES = (REAL, FAKE)

# review queue ordering: confirmed-looking fakes first
QUEUE_PRIORITY = {AUTO_REJECT: 0, FLAG_FOR_HUMAN: 1, AUTO_APPROVE: 2}

# appeal resolutions recorded when an admin decision replaces the disputed one
APPEAL_APPROVED = "APPROVED"
APPEAL_RESET = "RESET"


# =========================
# REVIEW STATE
# =========================

@dataclass(frozen=True)
class Unreviewed:
    ai_action: str | None


@dataclass(frozen=True)
class Decided:
    status: str
    reason: str | None
    by: str


def review_state(record: dict) -> Unreviewed | Decided:
    status = record.get("verification_status")
    if status is None:
        return Unreviewed(ai_action=record.get("triage_action"))
    return Decided(
        status=status,
        reason=record.get("rejection_reason"),
        by=record.get("verified_by"),
    )


def _key(image_url: str, batch_id: str, stage_name: str) -> dict:
    if not image_url:
        raise ValidationError("imageUrl is required")
    if not batch_id:
        raise ValidationError("batchId is required")
    return {
        "image_url": image_url,
        "batch_id": batch_id,
        "stage_name": normalize_stage_name(stage_name),
    }


# =========================
# STORE
# =========================

async def get_record(image_url: str, batch_id: str, stage_name: str) -> dict:
    record = await database.verifications_col.find_one(_key(image_url, batch_id, stage_name))
    if not record:
        raise NotFoundError(
            "Verification record not found",
            imageUrl=image_url, batchId=batch_id, stageName=stage_name,
        )
    return record


async def records_for_batch(batch_id: str) -> list[dict]:
    return await database.verifications_col.find({"batch_id": batch_id}).to_list(length=None)


def _ai_validation(score: AIScore | None, decision: TriageDecision, scored_at) -> dict | None:
    if score is None:
        return None
    return {
        "deepfake_score": score.deepfake_score,
        "visual_quality_score": score.visual_quality_score,
        "ai_action": decision.action,
        "ai_reason": decision.reason,
        "model": score.model,
        "image_hash": score.image_hash,
        "issues": list(score.issues),
        "scored_at": scored_at,
    }


async def save_triage_result(
    image_url: str,
    batch_id: str,
    stage_name: str,
    farmer_id: str,
    stage_id: str,
    score: AIScore | None,
    decision: TriageDecision,
) -> dict:
    """
    Store the AI payload and triage outcome for one image.

    A fresh record starts pending. Automatic approval is then applied only
    to a record nobody has decided on, so rescoring never overrides an
    admin.
    """
    key = {"image_url": image_url, "batch_id": batch_id, "stage_name": stage_name}
    now = database.utcnow()

    record = await database.verifications_col.find_one_and_update(
        key,
        {
            "$set": {
                "ai_validation": _ai_validation(score, decision, now),
                "triage_action": decision.action,
                "updated_at": now,
            },
            "$setOnInsert": {
                "farmer_id": farmer_id,
                "stage_id": stage_id,
                "verification_status": None,
                "rejection_reason": None,
                "verified_by": None,
                "verified_at": None,
                "open_appeal_id": None,
                "created_at": now,
            },
            "$inc": {"version": 1},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )

    if decision.verification_status == REAL:
        approved = await database.verifications_col.find_one_and_update(
            {**key, "verification_status": None},
            {
                "$set": {
                    "verification_status": REAL,
                    "rejection_reason": None,
                    "verified_by": config.SYSTEM_ACTOR_ID,
                    "verified_at": now,
                    "updated_at": now,
                },
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if approved:
            record = approved

    return record


async def _conditional_update(key: dict, update: dict, expected_version: int | None) -> dict:
    query = dict(key)
    if expected_version is not None:
        query["version"] = expected_version

    record = await database.verifications_col.find_one_and_update(
        query, update, return_document=ReturnDocument.AFTER
    )
    if record:
        return record

    current = await database.verifications_col.find_one(key)
    if not current:
        raise NotFoundError(
            "Verification record not found",
            imageUrl=key["image_url"], batchId=key["batch_id"], stageName=key["stage_name"],
        )
    raise StaleRecordError(
        "Verification record was changed by someone else",
        expectedVersion=expected_version,
        currentVersion=current.get("version", 0),
    )


async def _close_open_appeals(record: dict, actor: Actor, resolution: str, now) -> None:
    """Resolve appeals still open against a decision that was just replaced."""
    key = {"image_url": record["image_url"], "batch_id": record["batch_id"], "stage_name": record["stage_name"]}
    result = await database.appeals_col.update_many(
        {**key, "status": "OPEN"},
        {
            "$set": {
                "status": "RESOLVED",
                "resolution": resolution,
                "resolution_note": "Superseded by a new admin decision",
                "resolved_by": actor.id,
                "resolved_at": now,
                "updated_at": now,
            }
        },
    )
    if not result.modified_count:
        return

    logger.info(
        "Closed %d open appeal(s) on %s in %s/%s as %s",
        result.modified_count, key["image_url"], key["batch_id"], key["stage_name"], resolution,
    )
    outcome = "the photo is now verified" if resolution == APPEAL_APPROVED else "the photo goes back to review"
    await notify(
        record["farmer_id"], "Farmer",
        "Appeal Resolved",
        f"Your appeal for the {key['stage_name']} photo was reviewed: {outcome}.",
        batch_id=key["batch_id"], category="appeal",
        metadata={"imageUrl": key["image_url"], "resolution": resolution},
    )


# =========================
# MODERATION
# =========================

async def set_decision(
    actor: Actor,
    image_url: str,
    batch_id: str,
    stage_name: str,
    status: str,
    rejection_reason: str | None = None,
    expected_version: int | None = None,
) -> dict:
    if status not in DECISION_STATUSES:
        raise ValidationError(
            "verificationStatus must be REAL or FAKE", allowed=list(DECISION_STATUSES)
        )

    reason = (rejection_reason or "").strip()
    if status == FAKE and not reason:
        raise ValidationError("A rejection reason is required when marking an image FAKE")

    key = _key(image_url, batch_id, stage_name)
    now = database.utcnow()

    changes = {
        "verification_status": status,
        "rejection_reason": reason if status == FAKE else None,
        "verified_by": actor.id,
        "verified_at": now,
        "updated_at": now,
    }
    if status == REAL:
        changes["open_appeal_id"] = None

    record = await _conditional_update(
        key, {"$set": changes, "$inc": {"version": 1}}, expected_version,
    )
    if status == REAL:
        await _close_open_appeals(record, actor, APPEAL_APPROVED, now)

    logger.info(
        "Image %s in %s/%s marked %s by %s",
        image_url, batch_id, key["stage_name"], status, actor.id,
    )

    if status == REAL:
        await notify(
            record["farmer_id"], "Farmer",
            "Image Verified",
            f"Your {key['stage_name']} photo for batch {batch_id} was verified as authentic.",
            batch_id=batch_id, category="IMAGE_VERIFIED",
            metadata={"imageUrl": image_url, "stageName": key["stage_name"]},
        )
    else:
        await notify(
            record["farmer_id"], "Farmer",
            "Image Flagged",
            f"Your {key['stage_name']} photo for batch {batch_id} was rejected: {reason}. "
            "You can appeal this decision.",
            batch_id=batch_id, category="IMAGE_FLAGGED",
            metadata={"imageUrl": image_url, "stageName": key["stage_name"], "reason": reason},
        )

    await certificate_gate.reevaluate(batch_id)
    return record


async def reset_decision(
    actor: Actor,
    image_url: str,
    batch_id: str,
    stage_name: str,
    expected_version: int | None = None,
) -> dict:
    """
    Return a record to pending. The AI payload is kept for the next
    reviewer; an appeal still open against the old decision is closed.
    """
    key = _key(image_url, batch_id, stage_name)
    now = database.utcnow()

    record = await _conditional_update(
        key,
        {
            "$set": {
                "verification_status": None,
                "rejection_reason": None,
                "verified_by": None,
                "verified_at": None,
                "reset_by": actor.id,
                "reset_at": now,
                "open_appeal_id": None,
                "updated_at": now,
            },
            "$inc": {"version": 1},
        },
        expected_version,
    )
    await _close_open_appeals(record, actor, APPEAL_RESET, now)
    logger.info("Verification of %s in %s/%s reset by %s", image_url, batch_id, key["stage_name"], actor.id)

    await certificate_gate.reevaluate(batch_id)
    return record


async def review_queue(
    ai_action: str | None = None,
    batch_id: str | None = None,
    limit: int = 100,
) -> list[dict]:
    query = {"verification_status": None}
    if ai_action:
        query["triage_action"] = ai_action
    if batch_id:
        query["batch_id"] = batch_id

    records = await database.verifications_col.find(query).to_list(length=None)
    records.sort(key=lambda r: (QUEUE_PRIORITY.get(r.get("triage_action"), 1), r.get("created_at")))
    return records[:limit]


async def validation_stats() -> dict:
    """Dashboard counters over every verification record."""
    stats = {
        "totalValidations": 0,
        "pending": 0,
        "real": 0,
        "fake": 0,
        "autoApproved": 0,
        "autoRejected": 0,
        "flaggedForReview": 0,
        "aiUnavailable": 0,
        "deepfakesDetected": 0,
        "humanOverrides": 0,
    }
    fake_scores = []

    async for record in database.verifications_col.find({}):
        stats["totalValidations"] += 1
        status = record.get("verification_status")
        if status is None:
            stats["pending"] += 1
        elif status == REAL:
            stats["real"] += 1
        else:
            stats["fake"] += 1

        action = record.get("triage_action")
        if action == AUTO_APPROVE:
            stats["autoApproved"] += 1
        elif action == AUTO_REJECT:
            stats["autoRejected"] += 1
        else:
            stats["flaggedForReview"] += 1

        ai = record.get("ai_validation")
        if not ai:
            stats["aiUnavailable"] += 1
        elif ai.get("deepfake_score") is not None:
            fake_scores.append(ai["deepfake_score"])
            if ai["deepfake_score"] > config.DEEPFAKE_DETECTED_ABOVE:
                stats["deepfakesDetected"] += 1

        verified_by = record.get("verified_by")
        if status is not None and verified_by and verified_by != config.SYSTEM_ACTOR_ID:
            expected = REAL if action == AUTO_APPROVE else FAKE if action == AUTO_REJECT else None
            if expected and expected != status:
                stats["humanOverrides"] += 1

    total = stats["totalValidations"]
    stats["autoApprovalRate"] = round(stats["autoApproved"] / total * 100, 1) if total else 0.0
    stats["averageDeepfakeScore"] = (
        round(sum(fake_scores) / len(fake_scores), 3) if fake_scores else None
    )
    return stats
