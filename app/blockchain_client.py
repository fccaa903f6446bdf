# backend/app/blockchain_client.py
import logging

import httpx

from app import config
from app.errors import IssuerError

logger = logging.getLogger(__name__)


async def issue_certificate(payload: dict) -> dict:
    """
    Anchors a certified batch on the Fabric bridge and returns
    {certificateId, qrPayload, txHash}.

    Not idempotent on the bridge side: the caller guarantees a single call
    per batch.
    """
    try:
        async with httpx.AsyncClient(timeout=config.ISSUER_TIMEOUT_SECONDS) as client:
            resp = await client.post(f"{config.FABRIC_BRIDGE_URL}/certificates", json=payload)
        resp.raise_for_status()
        result = resp.json()
    except httpx.HTTPStatusError as e:
        raise IssuerError(
            f"Certificate issuer returned {e.response.status_code}: {e.response.text}"
        ) from e
    except (httpx.HTTPError, ValueError) as e:
        raise IssuerError(f"Certificate issuer unreachable: {e}") from e

    certificate_id = result.get("certificateId")
    if not certificate_id:
        raise IssuerError("Certificate issuer did not return a certificate id")

    return {
        "certificateId": certificate_id,
        "qrPayload": result.get("qrPayload") or f"{config.PUBLIC_VERIFY_URL}{certificate_id}",
        "txHash": result.get("txHash"),
    }


async def get_certificate(certificate_id: str) -> dict:
    """Reads the anchored certificate back from the Fabric bridge."""
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.get(f"{config.FABRIC_BRIDGE_URL}/certificates/{certificate_id}")
        resp.raise_for_status()
        return resp.json()
    except httpx.HTTPStatusError as e:
        logger.warning(
            "Certificate lookup failed (HTTP status %s): %s",
            e.response.status_code, e.response.text,
        )
        return {"verified": False, "error": f"Lookup failed: {e.response.text}"}
    except httpx.HTTPError as e:
        logger.warning("Fabric bridge network error: %s", e)
        return {"verified": False, "error": "Fabric bridge unreachable"}
