# backend/routes/public.py

from datetime import datetime
from typing import List

from fastapi import APIRouter, HTTPException

from app import blockchain_client, database
from app.models.public import MediaItem, PublicCertificate, Stage
from app.stages import STAGE_NAMES

router = APIRouter()


def _format_date(dt: object) -> str:
    """Safely formats a datetime object or returns N/A."""
    return dt.strftime('%Y-%m-%d %H:%M') if isinstance(dt, datetime) else "N/A"


@router.get("/api/public/certificate/{certificate_id}", response_model=PublicCertificate, tags=["public"])
async def public_certificate_scan(certificate_id: str):
    """
    Public, unauthenticated endpoint behind the certificate QR code.
    It searches by certificate ID, with a fallback to batch ID / batch code.
    Only photos confirmed REAL are shown to consumers.
    """

    batch_doc = await database.batches_col.find_one({"certificate_id": certificate_id})
    if not batch_doc:
        batch_doc = await database.batches_col.find_one(
            {"$or": [{"batch_id": certificate_id}, {"batch_code": certificate_id}]}
        )

    if not batch_doc or not batch_doc.get("certificate_id"):
        raise HTTPException(status_code=404, detail=f"No certificate found for {certificate_id}.")

    batch_id = batch_doc["batch_id"]

    # Live chain lookup
    on_chain = await blockchain_client.get_certificate(batch_doc["certificate_id"])

    stages = {s["stage_name"]: s async for s in database.stages_col.find({"batch_id": batch_id})}
    real_images = set()
    async for record in database.verifications_col.find({"batch_id": batch_id, "verification_status": "REAL"}):
        real_images.add((record["stage_name"], record["image_url"]))

    stages_list: List[Stage] = []
    for number, name in enumerate(STAGE_NAMES, start=1):
        stage = stages.get(name)
        if not stage:
            continue

        photos = [
            MediaItem(
                id=i,
                title=f"{name} Photo {i}",
                url=url,
                description=stage.get("notes") or None,
            )
            for i, url in enumerate(
                (u for u in stage.get("image_urls", []) if (name, u) in real_images), start=1
            )
        ]

        stages_list.append(Stage(
            id=number,
            name=name,
            date=_format_date(stage.get("submitted_at")),
            description=stage.get("notes") or f"Stage {number} evidence submitted by the farmer.",
            status=stage.get("status", "PENDING"),
            photos=photos,
        ))

    farmer = await database.users_col.find_one({"id": batch_doc.get("farmer_id")}) or {}

    anchored = on_chain.get("verified", True) and not on_chain.get("error")
    status = "CERTIFIED" if anchored else "WARNING_CHAIN_ANCHOR_MISSING"

    return PublicCertificate(
        productName=batch_doc.get("crop_name") or "Farm Produce",
        batchId=batch_id,
        batchCode=batch_doc.get("batch_code"),
        status=status,
        farmerName=farmer.get("name", "N/A"),
        farmLocation=batch_doc.get("location") or "N/A",
        certificateId=batch_doc.get("certificate_id"),
        qrPayload=batch_doc.get("qr_payload"),
        certifiedAt=_format_date(batch_doc.get("certified_at")),
        # Prefer the hash the chain reports, fall back to the one recorded at issuance
        blockchainTxHash=on_chain.get("txHash") or batch_doc.get("certificate_tx"),
        onChainVerified=anchored,
        processingStages=stages_list,
    )
