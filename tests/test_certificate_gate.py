import asyncio
from datetime import timedelta

import pytest

from app import database
from app.errors import IssuerError
from app.services import batch_lifecycle, certificate_gate, stage_tracker, verification
from app.stages import STAGE_NAMES


async def test_pending_batch_is_never_certified(batch, submit_all_stages, issuer):
    await submit_all_stages(batch["batch_id"])

    assert await certificate_gate.maybe_issue_certificate(batch["batch_id"]) is None
    assert issuer.calls == []
    stored = await database.batches_col.find_one({"batch_id": batch["batch_id"]})
    assert stored["certificate_id"] is None
    assert stored["certificate_eligible"] is False


async def test_verified_and_complete_issues_once(admin, batch, submit_all_stages, issuer, db):
    await submit_all_stages(batch["batch_id"])

    verified = await batch_lifecycle.verify_batch(admin, batch["batch_id"])

    assert verified["certificate_id"] == f"CERT-{batch['batch_code']}-1"
    assert verified["qr_payload"].endswith(verified["certificate_id"])
    assert verified["certificate_eligible"] is True
    assert verified["certificate_claim"] is None
    assert len(issuer.calls) == 1
    assert issuer.calls[0]["stagesCompleted"] == len(STAGE_NAMES)
    assert issuer.calls[0]["totalVerifiedImages"] == 14

    # gate is idempotent afterwards
    assert await certificate_gate.maybe_issue_certificate(batch["batch_id"]) is None
    await batch_lifecycle.verify_batch(admin, batch["batch_id"])
    assert len(issuer.calls) == 1

    note = await db["notifications"].find_one({"category": "CERTIFICATE_GENERATED"})
    assert note["user_id"] == batch["farmer_id"]


async def test_missing_stage_keeps_gate_closed(admin, farmer, batch, images, issuer):
    for name in STAGE_NAMES[:-1]:
        await stage_tracker.submit_stage(farmer, batch["batch_id"], name, images(name[:4]))

    verified = await batch_lifecycle.verify_batch(admin, batch["batch_id"])

    assert verified["status"] == "VERIFIED"
    assert verified["certificate_id"] is None
    assert verified["certificate_eligible"] is False
    assert issuer.calls == []

    readiness = await certificate_gate.stage_readiness(batch["batch_id"])
    assert readiness.missing_stages == [STAGE_NAMES[-1]]

    # the last stage arriving later opens the gate
    await stage_tracker.submit_stage(farmer, batch["batch_id"], STAGE_NAMES[-1], images("last"))
    stored = await database.batches_col.find_one({"batch_id": batch["batch_id"]})
    assert stored["certificate_id"] is not None
    assert len(issuer.calls) == 1


async def test_fake_image_blocks_until_overturned(admin, batch, submit_all_stages, issuer):
    await submit_all_stages(batch["batch_id"])
    stage = await database.stages_col.find_one({"batch_id": batch["batch_id"], "stage_name": "Harvesting"})
    url = stage["image_urls"][0]
    await verification.set_decision(admin, url, batch["batch_id"], "Harvesting", "FAKE", "Downloaded image")

    verified = await batch_lifecycle.verify_batch(admin, batch["batch_id"])
    assert verified["certificate_id"] is None
    readiness = await certificate_gate.stage_readiness(batch["batch_id"])
    assert readiness.blocked_stages == ["Harvesting"]

    await verification.set_decision(admin, url, batch["batch_id"], "Harvesting", "REAL")

    stored = await database.batches_col.find_one({"batch_id": batch["batch_id"]})
    assert stored["certificate_id"] is not None
    assert len(issuer.calls) == 1


async def test_issuer_failure_releases_claim(admin, batch, submit_all_stages, issuer):
    await submit_all_stages(batch["batch_id"])
    issuer.failing = True

    with pytest.raises(IssuerError) as exc:
        await batch_lifecycle.verify_batch(admin, batch["batch_id"])
    assert exc.value.extra["batchStatus"] == "VERIFIED"

    stored = await database.batches_col.find_one({"batch_id": batch["batch_id"]})
    assert stored["status"] == "VERIFIED"
    assert stored["certificate_id"] is None
    assert stored["certificate_claim"] is None

    # retry succeeds once the issuer is back
    issuer.failing = False
    retried = await batch_lifecycle.verify_batch(admin, batch["batch_id"])
    assert retried["certificate_id"] is not None
    assert len(issuer.calls) == 2


async def test_reevaluate_swallows_issuer_errors(admin, batch, submit_all_stages, issuer):
    await submit_all_stages(batch["batch_id"])
    await database.batches_col.update_one(
        {"batch_id": batch["batch_id"]}, {"$set": {"status": "VERIFIED"}}
    )
    issuer.failing = True

    assert await certificate_gate.reevaluate(batch["batch_id"]) is None


async def test_live_claim_blocks_second_issuer(admin, batch, submit_all_stages, issuer):
    await submit_all_stages(batch["batch_id"])
    await database.batches_col.update_one(
        {"batch_id": batch["batch_id"]},
        {"$set": {
            "status": "VERIFIED",
            "certificate_claim": {"token": "other-worker", "claimed_at": database.utcnow()},
        }},
    )

    assert await certificate_gate.maybe_issue_certificate(batch["batch_id"]) is None
    assert issuer.calls == []


async def test_stale_claim_is_taken_over(admin, batch, submit_all_stages, issuer):
    await submit_all_stages(batch["batch_id"])
    await database.batches_col.update_one(
        {"batch_id": batch["batch_id"]},
        {"$set": {
            "status": "VERIFIED",
            "certificate_claim": {
                "token": "crashed-worker",
                "claimed_at": database.utcnow() - timedelta(hours=1),
            },
        }},
    )

    issued = await certificate_gate.maybe_issue_certificate(batch["batch_id"])
    assert issued["certificate_id"] is not None
    assert len(issuer.calls) == 1


async def test_fake_decision_during_claim_stops_issuance(admin, batch, submit_all_stages, issuer, monkeypatch):
    await submit_all_stages(batch["batch_id"])
    await database.batches_col.update_one(
        {"batch_id": batch["batch_id"]}, {"$set": {"status": "VERIFIED"}}
    )
    stage = await database.stages_col.find_one({"batch_id": batch["batch_id"], "stage_name": "Sowing"})
    checks = []
    original = certificate_gate.stage_readiness

    async def moderated_between_checks(batch_id):
        if checks:
            # an admin rejection lands after the first readiness check
            await database.verifications_col.update_one(
                {"batch_id": batch_id, "stage_name": "Sowing", "image_url": stage["image_urls"][0]},
                {"$set": {"verification_status": "FAKE", "rejection_reason": "Stock photo"}},
            )
        checks.append(batch_id)
        return await original(batch_id)

    monkeypatch.setattr(certificate_gate, "stage_readiness", moderated_between_checks)

    assert await certificate_gate.maybe_issue_certificate(batch["batch_id"]) is None
    assert len(checks) == 2
    assert issuer.calls == []
    stored = await database.batches_col.find_one({"batch_id": batch["batch_id"]})
    assert stored["certificate_id"] is None
    assert stored["certificate_claim"] is None
    assert stored["certificate_eligible"] is False


async def test_concurrent_gate_runs_issue_once(admin, batch, submit_all_stages, issuer, monkeypatch):
    await submit_all_stages(batch["batch_id"])
    await database.batches_col.update_one(
        {"batch_id": batch["batch_id"]}, {"$set": {"status": "VERIFIED"}}
    )

    async def slow_issuer(payload):
        await asyncio.sleep(0.02)
        return await issuer(payload)

    from app import blockchain_client
    monkeypatch.setattr(blockchain_client, "issue_certificate", slow_issuer)

    results = await asyncio.gather(*(certificate_gate.maybe_issue_certificate(batch["batch_id"]) for _ in range(5)))

    assert sum(r is not None for r in results) == 1
    assert len(issuer.calls) == 1
