# backend/app/ipfs_handler.py

import logging

import httpx

from app import config
from app.errors import StorageError

logger = logging.getLogger(__name__)


def get_public_url(cid: str) -> str:
    """Resolves an IPFS hash (CID) to a gateway URL."""
    if not cid:
        return ""
    # Ensure the base URL ends with a slash before appending the CID
    gateway = config.IPFS_GATEWAY_PUBLIC.rstrip("/") + "/"
    return f"{gateway}{cid}"


async def upload_to_ipfs(file_data: bytes, filename: str, context: dict | None = None) -> str:
    """Uploads file data to the configured IPFS upload service and returns the CID."""
    if not config.IPFS_UPLOAD_URL:
        logger.critical("IPFS_UPLOAD_URL is not set in environment variables.")
        raise StorageError("Image store is not configured")

    try:
        async with httpx.AsyncClient(timeout=config.UPLOAD_TIMEOUT_SECONDS) as client:
            files = {"file": (filename, file_data, "application/octet-stream")}
            response = await client.post(
                config.IPFS_UPLOAD_URL,
                files=files,
                data={k: str(v) for k, v in (context or {}).items() if v is not None},
            )
            response.raise_for_status()
            # The response body should contain the CID (e.g., {"Hash": "..."})
            cid = response.json().get("Hash")
    except httpx.HTTPStatusError as e:
        raise StorageError(
            f"IPFS upload failed with status {e.response.status_code}",
            filename=filename,
        ) from e
    except (httpx.HTTPError, ValueError) as e:
        raise StorageError(f"IPFS upload failed: {e}", filename=filename) from e

    if not cid:
        raise StorageError("IPFS upload returned no CID", filename=filename)
    return cid


async def upload_image(file_data: bytes, filename: str, context: dict) -> str:
    """
    Store one stage image and return its durable URL.

    context carries farmerId / batchId / stageName. Transport failures are
    retried UPLOAD_RETRIES times before StorageError reaches the caller.
    """
    attempts = config.UPLOAD_RETRIES + 1
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            cid = await upload_to_ipfs(file_data, filename, context)
            return get_public_url(cid)
        except StorageError as e:
            last_error = e
            logger.warning(
                "Upload of %s failed (attempt %d/%d): %s",
                filename, attempt, attempts, e.message,
            )
    raise last_error
