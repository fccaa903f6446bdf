import logging
from datetime import datetime, timezone

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from app.config import MONGO_URI, MONGO_DB_NAME
from app.errors import FatalPersistenceError
from app.stages import MIN_IMAGES_PER_STAGE

logger = logging.getLogger(__name__)

# ==============================
# MongoDB Connection
# ==============================

client = AsyncIOMotorClient(MONGO_URI)
database = client[MONGO_DB_NAME]

users_col = database["users"]
batches_col = database["batches"]
stages_col = database["stages"]
verifications_col = database["verifications"]
appeals_col = database["appeals"]
notification_collection = database["notifications"]
counters_col = database["counters"]


def bind(db) -> None:
    """Point every collection handle at another database (tests, scripts)."""
    global database, users_col, batches_col, stages_col, verifications_col
    global appeals_col, notification_collection, counters_col
    database = db
    users_col = db["users"]
    batches_col = db["batches"]
    stages_col = db["stages"]
    verifications_col = db["verifications"]
    appeals_col = db["appeals"]
    notification_collection = db["notifications"]
    counters_col = db["counters"]


async def ensure_indexes() -> None:
    await batches_col.create_index("batch_id", unique=True)
    await batches_col.create_index("certificate_id")
    await batches_col.create_index("farmer_id")
    await stages_col.create_index(
        [("batch_id", ASCENDING), ("stage_name", ASCENDING)], unique=True
    )
    await verifications_col.create_index(
        [("image_url", ASCENDING), ("batch_id", ASCENDING), ("stage_name", ASCENDING)],
        unique=True,
    )
    await verifications_col.create_index("verification_status")
    await appeals_col.create_index("appeal_id", unique=True)
    await notification_collection.create_index("user_id")


async def ping() -> None:
    try:
        await database.command("ping")
    except PyMongoError as e:
        logger.error("MongoDB unreachable: %s", e)
        raise FatalPersistenceError("Storage layer unreachable") from e


# ==============================
# Helpers
# ==============================

def utcnow() -> datetime:
    # naive UTC, the same shape Mongo hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else value


async def next_sequence(name: str) -> int:
    counter = await counters_col.find_one_and_update(
        {"_id": name},
        {"$inc": {"value": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return counter["value"]


async def next_batch_code() -> str:
    return "FB" + str(await next_sequence("batch_code")).zfill(3)


# ==============================
# BATCH SCHEMA (CORE DOCUMENT)
# ==============================

def new_batch_document(batch_id: str, batch_code: str, farmer_id: str, data: dict) -> dict:
    now = utcnow()
    return {
        "batch_id": batch_id,
        "batch_code": batch_code,
        "farmer_id": farmer_id,

        # =========================
        # DESCRIPTIVE
        # =========================
        "crop_name": data.get("crop_name"),
        "category": data.get("category"),
        "area": data.get("area"),
        "quantity": data.get("quantity"),
        "unit": data.get("unit"),
        "location": data.get("location"),
        "sowing_date": data.get("sowing_date"),
        "planting_date": data.get("planting_date"),
        "harvest_date": data.get("harvest_date"),
        "description": data.get("description") or "",
        "fertilizer_notes": data.get("fertilizer_notes") or "",
        "pesticide_notes": data.get("pesticide_notes") or "",

        # =========================
        # LIFECYCLE
        # =========================
        "status": "PENDING",
        "verified_at": None,
        "verified_by": None,
        "rejection_reason": None,
        "rejected_at": None,
        "rejected_by": None,

        # =========================
        # CERTIFICATE
        # =========================
        "certificate_id": None,
        "qr_payload": None,
        "certificate_tx": None,
        "certified_at": None,
        "certificate_eligible": False,
        "certificate_claim": None,

        "created_at": now,
        "updated_at": now,
    }


def batch_helper(batch: dict) -> dict:
    return {
        "batchId": batch.get("batch_id"),
        "batchCode": batch.get("batch_code"),
        "farmerId": batch.get("farmer_id"),
        "cropName": batch.get("crop_name"),
        "category": batch.get("category"),
        "area": batch.get("area"),
        "quantity": batch.get("quantity"),
        "unit": batch.get("unit"),
        "location": batch.get("location"),
        "sowingDate": batch.get("sowing_date"),
        "plantingDate": batch.get("planting_date"),
        "harvestDate": batch.get("harvest_date"),
        "description": batch.get("description"),
        "fertilizerNotes": batch.get("fertilizer_notes"),
        "pesticideNotes": batch.get("pesticide_notes"),
        "status": batch.get("status"),
        "verifiedAt": _iso(batch.get("verified_at")),
        "verifiedBy": batch.get("verified_by"),
        "rejectionReason": batch.get("rejection_reason"),
        "certificateId": batch.get("certificate_id"),
        "qrPayload": batch.get("qr_payload"),
        "certifiedAt": _iso(batch.get("certified_at")),
        "certificateEligible": batch.get("certificate_eligible", False),
        "createdAt": _iso(batch.get("created_at")),
        "updatedAt": _iso(batch.get("updated_at")),
    }


# ==============================
# STAGES
# ==============================

def stage_helper(stage: dict) -> dict:
    return {
        "stageId": stage.get("stage_id"),
        "batchId": stage.get("batch_id"),
        "name": stage.get("stage_name"),
        "status": stage.get("status"),
        "notes": stage.get("notes", ""),
        "imageUrls": list(stage.get("image_urls", [])),
        "submitted": len(stage.get("image_urls", [])) >= MIN_IMAGES_PER_STAGE,
        "submittedAt": _iso(stage.get("submitted_at")),
        "createdAt": _iso(stage.get("created_at")),
        "updatedAt": _iso(stage.get("updated_at")),
    }


# ==============================
# VERIFICATION RECORDS
# ==============================

def verification_helper(record: dict) -> dict:
    ai = record.get("ai_validation")
    return {
        "imageUrl": record.get("image_url"),
        "batchId": record.get("batch_id"),
        "stageName": record.get("stage_name"),
        "stageId": record.get("stage_id"),
        "farmerId": record.get("farmer_id"),
        "verificationStatus": record.get("verification_status"),
        "rejectionReason": record.get("rejection_reason"),
        "verifiedBy": record.get("verified_by"),
        "verifiedAt": _iso(record.get("verified_at")),
        "triageAction": record.get("triage_action"),
        "openAppealId": record.get("open_appeal_id"),
        "aiValidation": {
            "deepfakeScore": ai.get("deepfake_score"),
            "visualQualityScore": ai.get("visual_quality_score"),
            "aiAction": ai.get("ai_action"),
            "aiReason": ai.get("ai_reason"),
            "model": ai.get("model"),
            "imageHash": ai.get("image_hash"),
            "issues": ai.get("issues", []),
            "scoredAt": _iso(ai.get("scored_at")),
        } if ai else None,
        "version": record.get("version", 0),
        "createdAt": _iso(record.get("created_at")),
        "updatedAt": _iso(record.get("updated_at")),
    }


# ==============================
# APPEALS
# ==============================

def appeal_helper(appeal: dict) -> dict:
    return {
        "appealId": appeal.get("appeal_id"),
        "imageUrl": appeal.get("image_url"),
        "batchId": appeal.get("batch_id"),
        "stageName": appeal.get("stage_name"),
        "stageId": appeal.get("stage_id"),
        "farmerId": appeal.get("farmer_id"),
        "appealReason": appeal.get("appeal_reason"),
        "status": appeal.get("status"),
        "resolution": appeal.get("resolution"),
        "resolutionNote": appeal.get("resolution_note"),
        "resolvedBy": appeal.get("resolved_by"),
        "resolvedAt": _iso(appeal.get("resolved_at")),
        "createdAt": _iso(appeal.get("created_at")),
        "updatedAt": _iso(appeal.get("updated_at")),
    }


# ==============================
# NOTIFICATIONS (ALL ROLES)
# ==============================

def notification_helper(notification: dict) -> dict:
    created_at = notification.get("created_at")
    return {
        "id": str(notification["_id"]),
        "user_id": notification.get("user_id"),
        "role": notification.get("role"),
        "category": notification.get("category"),
        "title": notification.get("title"),
        "message": notification.get("message"),
        "batch_id": notification.get("batch_id"),
        "metadata": notification.get("metadata", {}),
        "read": notification.get("read", False),
        "createdAt": created_at.isoformat() if created_at else None,
    }
