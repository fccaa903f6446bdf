import asyncio
import io

import numpy as np
import pytest
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient
from PIL import Image

from app import ai_client, blockchain_client, database, ipfs_handler
from app.ai_client import AIScore
from app.errors import AIServiceTimeout, IssuerError, StorageError
from app.main import app
from app.services import batch_lifecycle, stage_tracker
from app.services.stage_tracker import ImageUpload
from app.stages import STAGE_NAMES
from utils.jwt import ADMIN, FARMER, Actor, create_token

FARMER_ACTOR = Actor(id="farmer-1", role=FARMER, name="Ravi")
OTHER_FARMER = Actor(id="farmer-2", role=FARMER, name="Meena")
ADMIN_ACTOR = Actor(id="admin-1", role=ADMIN, name="Asha")


def make_jpeg(seed: int = 0, size=(320, 240)) -> bytes:
    """Noisy JPEG, well above the minimum file size."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(size[1], size[0], 3), dtype=np.uint8)
    buf = io.BytesIO()
    Image.fromarray(pixels, "RGB").save(buf, format="JPEG", quality=90)
    return buf.getvalue()


class FakeImageStore:
    def __init__(self):
        self.uploaded = []
        self.failing = set()
        self.delays = {}

    async def __call__(self, file_data, filename, context):
        await asyncio.sleep(self.delays.get(filename, 0))
        if filename in self.failing:
            raise StorageError("IPFS upload failed", filename=filename)
        url = f"https://ipfs.test/ipfs/{context['batchId']}/{filename}"
        self.uploaded.append(url)
        return url


class FakeScorer:
    """Scores keyed by filename; (deepfake, quality) tuples."""

    def __init__(self):
        self.scores = {}
        self.default = (0.1, 0.9)
        self.unavailable = False
        self.calls = []

    async def __call__(self, url, context):
        self.calls.append(url)
        if self.unavailable:
            raise AIServiceTimeout(f"AI scoring timed out for {url}")
        deepfake, quality = self.scores.get(url.rsplit("/", 1)[-1], self.default)
        return AIScore(deepfake_score=deepfake, visual_quality_score=quality, reason="scored")


class FakeIssuer:
    def __init__(self):
        self.calls = []
        self.failing = False

    async def __call__(self, payload):
        self.calls.append(payload)
        if self.failing:
            raise IssuerError("Certificate issuer returned 500: bridge down")
        certificate_id = f"CERT-{payload['batchCode']}-{len(self.calls)}"
        return {
            "certificateId": certificate_id,
            "qrPayload": f"https://verify.test/{certificate_id}",
            "txHash": "0xabc123",
        }


@pytest.fixture(autouse=True)
async def db():
    original = database.database
    mock_db = AsyncMongoMockClient()["krishibarosa_test"]
    database.bind(mock_db)
    await database.ensure_indexes()
    yield mock_db
    database.bind(original)


@pytest.fixture(autouse=True)
def image_store(monkeypatch):
    store = FakeImageStore()
    monkeypatch.setattr(ipfs_handler, "upload_image", store)
    return store


@pytest.fixture(autouse=True)
def scorer(monkeypatch):
    fake = FakeScorer()
    monkeypatch.setattr(ai_client, "score_image", fake)
    return fake


@pytest.fixture(autouse=True)
def issuer(monkeypatch):
    fake = FakeIssuer()
    monkeypatch.setattr(blockchain_client, "issue_certificate", fake)
    monkeypatch.setattr(
        blockchain_client, "get_certificate",
        _async_return({"verified": True, "txHash": "0xabc123"}),
    )
    return fake


def _async_return(value):
    async def _inner(*args, **kwargs):
        return value
    return _inner


@pytest.fixture
def farmer():
    return FARMER_ACTOR


@pytest.fixture
def other_farmer():
    return OTHER_FARMER


@pytest.fixture
def admin():
    return ADMIN_ACTOR


@pytest.fixture
def images():
    """images(prefix, n) -> list of distinct uploads"""
    counter = {"seed": 0}

    def build(prefix: str = "photo", n: int = 2) -> list[ImageUpload]:
        uploads = []
        for i in range(n):
            counter["seed"] += 1
            uploads.append(ImageUpload(
                filename=f"{prefix}_{i}.jpg",
                content=make_jpeg(counter["seed"]),
                content_type="image/jpeg",
            ))
        return uploads

    return build


@pytest.fixture
async def batch(farmer):
    return await batch_lifecycle.create_batch(farmer, {"crop_name": "Basmati Rice", "location": "Karnal"})


@pytest.fixture
def submit_all_stages(farmer, images):
    """Submit two clean photos for every stage of a batch."""

    async def run(batch_id: str):
        for number, name in enumerate(STAGE_NAMES, start=1):
            await stage_tracker.submit_stage(farmer, batch_id, name, images(f"s{number}"))

    return run


@pytest.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


def auth_headers(actor: Actor) -> dict:
    token = create_token({"id": actor.id, "role": actor.role, "name": actor.name})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth():
    return auth_headers


@pytest.fixture
def jpeg():
    return make_jpeg
