"""
Issues the provenance certificate exactly once.

A batch gets a certificate when an admin has verified it and every
farming stage carries enough evidence with no confirmed-fake photo. The
issuer is not idempotent, so the gate claims the batch with a conditional
update first and only the claim holder talks to the issuer.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta

from pymongo import ReturnDocument

from app import blockchain_client, config, database
from app.errors import IssuerError
from app.stages import MIN_IMAGES_PER_STAGE, STAGE_NAMES
from utils.notify import notify

logger = logging.getLogger(__name__)


@dataclass
class Readiness:
    missing_stages: list[str] = field(default_factory=list)
    blocked_stages: list[str] = field(default_factory=list)
    verified_images: int = 0

    @property
    def complete(self) -> bool:
        return not self.missing_stages and not self.blocked_stages


async def stage_readiness(batch_id: str) -> Readiness:
    stages = {
        s["stage_name"]: s
        async for s in database.stages_col.find({"batch_id": batch_id})
    }
    fake = set()
    real = 0
    async for record in database.verifications_col.find({"batch_id": batch_id}):
        if record.get("verification_status") == "FAKE":
            fake.add((record["stage_name"], record["image_url"]))
        elif record.get("verification_status") == "REAL":
            real += 1

    readiness = Readiness(verified_images=real)
    for name in STAGE_NAMES:
        urls = stages.get(name, {}).get("image_urls", [])
        if len(urls) < MIN_IMAGES_PER_STAGE:
            readiness.missing_stages.append(name)
        elif any((name, url) in fake for url in urls):
            readiness.blocked_stages.append(name)
    return readiness


def claim_released(now) -> list[dict]:
    """``$or`` clauses matching a batch nobody holds a live certificate claim on."""
    stale_before = now - timedelta(seconds=config.CERTIFICATE_CLAIM_TTL_SECONDS)
    return [
        {"certificate_claim": None},
        {"certificate_claim.claimed_at": {"$lt": stale_before}},
    ]


async def _release_claim(batch_id: str, token: str) -> None:
    await database.batches_col.update_one(
        {"batch_id": batch_id, "certificate_claim.token": token},
        {"$set": {"certificate_claim": None}},
    )


def _certificate_payload(batch: dict, readiness: Readiness) -> dict:
    return {
        "batchId": batch["batch_id"],
        "batchCode": batch.get("batch_code"),
        "farmerId": batch.get("farmer_id"),
        "cropName": batch.get("crop_name"),
        "category": batch.get("category"),
        "quantity": batch.get("quantity"),
        "unit": batch.get("unit"),
        "location": batch.get("location"),
        "harvestDate": batch.get("harvest_date"),
        "stagesCompleted": len(STAGE_NAMES),
        "totalVerifiedImages": readiness.verified_images,
        "verifiedBy": batch.get("verified_by"),
        "verifiedAt": batch["verified_at"].isoformat() if batch.get("verified_at") else None,
    }


async def maybe_issue_certificate(batch_id: str) -> dict | None:
    """
    Evaluate the gate for one batch and issue the certificate if it is
    open. Returns the updated batch when this call issued it, else None.

    Raises IssuerError when the issuer fails; the claim is released and
    the batch stays VERIFIED without a certificate.
    """
    batch = await database.batches_col.find_one({"batch_id": batch_id})
    if not batch or batch.get("status") != "VERIFIED" or batch.get("certificate_id"):
        return None

    readiness = await stage_readiness(batch_id)
    await database.batches_col.update_one(
        {"batch_id": batch_id, "status": "VERIFIED", "certificate_id": None},
        {"$set": {"certificate_eligible": readiness.complete}},
    )
    if not readiness.complete:
        logger.info(
            "Batch %s not eligible yet (missing=%s, blocked=%s)",
            batch_id, readiness.missing_stages, readiness.blocked_stages,
        )
        return None

    token = uuid.uuid4().hex
    now = database.utcnow()

    claimed = await database.batches_col.find_one_and_update(
        {
            "batch_id": batch_id,
            "status": "VERIFIED",
            "certificate_id": None,
            "$or": claim_released(now),
        },
        {"$set": {"certificate_claim": {"token": token, "claimed_at": now}}},
        return_document=ReturnDocument.AFTER,
    )
    if not claimed:
        logger.info("Batch %s already being certified elsewhere", batch_id)
        return None

    # decisions may have landed between the first check and the claim
    readiness = await stage_readiness(batch_id)
    if not readiness.complete:
        await database.batches_col.update_one(
            {"batch_id": batch_id, "certificate_claim.token": token},
            {"$set": {"certificate_claim": None, "certificate_eligible": False}},
        )
        logger.info(
            "Batch %s lost eligibility while claimed (missing=%s, blocked=%s)",
            batch_id, readiness.missing_stages, readiness.blocked_stages,
        )
        return None

    try:
        issued = await blockchain_client.issue_certificate(_certificate_payload(claimed, readiness))
    except IssuerError as e:
        await _release_claim(batch_id, token)
        logger.error("Certificate issuance failed for batch %s: %s", batch_id, e.message)
        raise

    certified_at = database.utcnow()
    updated = await database.batches_col.find_one_and_update(
        {"batch_id": batch_id, "certificate_claim.token": token, "certificate_id": None},
        {
            "$set": {
                "certificate_id": issued["certificateId"],
                "qr_payload": issued["qrPayload"],
                "certificate_tx": issued.get("txHash"),
                "certified_at": certified_at,
                "certificate_eligible": True,
                "certificate_claim": None,
                "updated_at": certified_at,
            }
        },
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        # claim expired while the issuer was answering
        logger.error(
            "Certificate %s issued for batch %s but the claim was lost; not recorded",
            issued["certificateId"], batch_id,
        )
        return None

    logger.info("Certificate %s issued for batch %s", updated["certificate_id"], batch_id)

    await notify(
        updated["farmer_id"], "Farmer",
        "Certificate Generated",
        f"Batch {updated.get('batch_code') or batch_id} is certified. "
        f"Certificate ID: {updated['certificate_id']}",
        batch_id=batch_id, category="CERTIFICATE_GENERATED",
        metadata={"certificateId": updated["certificate_id"], "qrPayload": updated["qr_payload"]},
    )
    return updated


async def reevaluate(batch_id: str) -> dict | None:
    """Gate check after a farmer or moderation change. Issuer failures are logged, not raised."""
    try:
        return await maybe_issue_certificate(batch_id)
    except IssuerError as e:
        logger.warning("Certificate for %s deferred: %s", batch_id, e.message)
        return None
