import asyncio

import pytest

from app import ai_client, config, ipfs_handler
from app.ai_client import score_image
from app.errors import AIServiceError, AIServiceTimeout, StorageError, ValidationError
from app.ipfs_handler import get_public_url, upload_image
from app.stages import normalize_stage_name, stage_number

CONTEXT = {"farmerId": "farmer-1", "batchId": "BATCH-1", "stageName": "Sowing"}


# ---------- stages ----------

@pytest.mark.parametrize("raw", ["sowing", "  SOWING ", "Sowing"])
def test_stage_names_normalised(raw):
    assert normalize_stage_name(raw) == "Sowing"


def test_stage_name_whitespace_inside():
    assert normalize_stage_name("post-harvest  processing") == "Post-Harvest Processing"
    assert stage_number("Post-Harvest Processing") == 7


def test_unknown_stage():
    with pytest.raises(ValidationError):
        normalize_stage_name("Irrigation")


# ---------- AI client ----------

async def test_score_parsed(monkeypatch):
    async def post(url, context):
        return {"deepfakeScore": 0.12, "visualQualityScore": 0.8, "reason": "ok", "model": "m1"}

    monkeypatch.setattr(ai_client, "_post_score", post)
    score = await score_image("https://ipfs.test/a.jpg", CONTEXT)

    assert score.deepfake_score == 0.12
    assert score.visual_quality_score == 0.8
    assert score.model == "m1"


async def test_quality_optional(monkeypatch):
    async def post(url, context):
        return {"deepfakeScore": 0.4}

    monkeypatch.setattr(ai_client, "_post_score", post)
    assert (await score_image("u", CONTEXT)).visual_quality_score is None


@pytest.mark.parametrize("payload", [{}, {"deepfakeScore": 1.5}, {"deepfakeScore": "high"}, ["x"]])
async def test_malformed_payload(monkeypatch, payload):
    async def post(url, context):
        return payload

    monkeypatch.setattr(ai_client, "_post_score", post)
    with pytest.raises(AIServiceError):
        await score_image("u", CONTEXT)


async def test_timeout(monkeypatch):
    async def post(url, context):
        await asyncio.sleep(1)

    monkeypatch.setattr(ai_client, "_post_score", post)
    monkeypatch.setattr(config, "AI_TIMEOUT_SECONDS", 0.01)
    with pytest.raises(AIServiceTimeout):
        await score_image("u", CONTEXT)


# ---------- image store ----------

def test_public_url(monkeypatch):
    monkeypatch.setattr(config, "IPFS_GATEWAY_PUBLIC", "https://gw.test/ipfs")
    assert get_public_url("Qm123") == "https://gw.test/ipfs/Qm123"
    assert get_public_url("") == ""


async def test_upload_retries_then_succeeds(monkeypatch):
    attempts = []

    async def flaky(file_data, filename, context=None):
        attempts.append(filename)
        if len(attempts) < 2:
            raise StorageError("IPFS upload failed with status 503", filename=filename)
        return "QmGood"

    monkeypatch.setattr(ipfs_handler, "upload_to_ipfs", flaky)
    monkeypatch.setattr(config, "IPFS_GATEWAY_PUBLIC", "https://gw.test/ipfs/")

    assert await upload_image(b"data", "a.jpg", CONTEXT) == "https://gw.test/ipfs/QmGood"
    assert len(attempts) == 2


async def test_upload_gives_up(monkeypatch):
    async def broken(file_data, filename, context=None):
        raise StorageError("IPFS upload failed", filename=filename)

    monkeypatch.setattr(ipfs_handler, "upload_to_ipfs", broken)
    monkeypatch.setattr(config, "UPLOAD_RETRIES", 1)

    with pytest.raises(StorageError):
        await upload_image(b"data", "a.jpg", CONTEXT)
