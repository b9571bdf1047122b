import asyncio

import pytest
from fastapi.testclient import TestClient

from ugc_pipeline.api.main import app, get_orchestrator
from ugc_pipeline.generation import GenerationState, GenerationStatus


@pytest.fixture
def launched(orchestrator, monkeypatch) -> list[str]:
    started: list[str] = []
    monkeypatch.setattr(orchestrator, "launch", started.append)
    return started


@pytest.fixture
def client(orchestrator, launched):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


def _confirm(c: TestClient, user_id: str = "creator-1", **kw) -> dict:
    payload = {"user_id": user_id, "script": "Three reasons this lamp changed my desk.", "style": "LIFESTYLE", **kw}
    return c.post('/v1/videos', json=payload).json()


def test_confirm_debits_and_launches(client, ledger, launched) -> None:
    ledger.grant("creator-1", 2)

    r = client.post(
        '/v1/videos',
        json={
            "user_id": "creator-1",
            "script": "Three reasons this lamp changed my desk.",
            "style": "PRODUCT_SHOWCASE",
            "visual_summary": "brass desk lamp",
            "reference_image_url": "https://shop.example/lamp.jpg",
        },
    )

    assert r.status_code == 200
    job = r.json()['data']
    assert job['status'] == 'QUEUED'
    assert job['credits_used'] == 1
    assert job['reference_image_url'] == "https://shop.example/lamp.jpg"
    assert "brass desk lamp" in job['prompt']
    assert launched == [job['id']]
    assert ledger.balance("creator-1") == 1


def test_confirm_without_credits_is_402(client, store, launched) -> None:
    r = client.post('/v1/videos', json={"user_id": "broke", "script": "hello", "style": "LIFESTYLE"})

    assert r.status_code == 402
    assert r.json()['detail'] == "Insufficient credits. You have 0 credits, but need 1."
    assert store.count() == 0
    assert launched == []


def test_confirm_rejects_unknown_style(client, ledger) -> None:
    ledger.grant("creator-1", 1)
    r = client.post('/v1/videos', json={"user_id": "creator-1", "script": "hello", "style": "UNBOXING"})
    assert r.status_code == 422
    assert ledger.balance("creator-1") == 1


def test_confirm_rejects_blank_script(client, ledger) -> None:
    ledger.grant("creator-1", 1)
    r = client.post('/v1/videos', json={"user_id": "creator-1", "script": "   ", "style": "LIFESTYLE"})
    assert r.status_code == 400
    assert ledger.balance("creator-1") == 1


def test_get_and_list_are_owner_scoped(client, ledger) -> None:
    ledger.grant("creator-1", 2)
    first = _confirm(client)['data']
    _confirm(client)

    r = client.get(f"/v1/videos/{first['id']}", params={"user_id": "creator-1"})
    assert r.status_code == 200
    assert r.json()['data']['id'] == first['id']

    assert client.get(f"/v1/videos/{first['id']}", params={"user_id": "someone-else"}).status_code == 403
    assert client.get("/v1/videos/missing", params={"user_id": "creator-1"}).status_code == 404

    listing = client.get('/v1/videos', params={"user_id": "creator-1", "limit": 1}).json()['data']
    assert listing['total'] == 2
    assert len(listing['videos']) == 1
    assert listing['limit'] == 1


def test_download_after_completion(client, ledger, orchestrator) -> None:
    ledger.grant("creator-1", 1)
    job = _confirm(client)['data']

    pending = client.get(f"/v1/videos/{job['id']}/download", params={"user_id": "creator-1"})
    assert pending.status_code == 409

    asyncio.run(orchestrator.run(job['id']))

    r = client.get(f"/v1/videos/{job['id']}/download", params={"user_id": "creator-1"})
    assert r.status_code == 200
    assert r.json()['data']['download_url'].startswith("https://assets.example/ugc-videos/")

    status = client.get(f"/v1/videos/{job['id']}", params={"user_id": "creator-1"}).json()['data']
    assert status['status'] == 'COMPLETED'
    assert status['asset']['public_id'] == f"ugc-videos/video_{job['id']}.mp4"


def test_cancel_queued_video_refunds(client, ledger) -> None:
    ledger.grant("creator-1", 1)
    job = _confirm(client)['data']

    r = client.delete(f"/v1/videos/{job['id']}", params={"user_id": "creator-1"})
    assert r.status_code == 200
    assert r.json()['data']['status'] == 'CANCELLED'
    assert ledger.balance("creator-1") == 1

    again = client.delete(f"/v1/videos/{job['id']}", params={"user_id": "creator-1"})
    assert again.status_code == 409
    assert ledger.balance("creator-1") == 1


def test_retry_failed_video(client, ledger, orchestrator, generation, launched) -> None:
    ledger.grant("creator-1", 2)
    generation.polls = [GenerationStatus(state=GenerationState.ERROR, error="render crashed")]
    job = _confirm(client)['data']
    asyncio.run(orchestrator.run(job['id']))

    failed = client.get(f"/v1/videos/{job['id']}", params={"user_id": "creator-1"}).json()['data']
    assert failed['status'] == 'FAILED'
    assert failed['error']['code'] == 'GENERATION_INCOMPLETE'
    assert ledger.balance("creator-1") == 2

    r = client.post(f"/v1/videos/{job['id']}/retry", params={"user_id": "creator-1"})
    assert r.status_code == 200
    retried = r.json()['data']
    assert retried['retry_of'] == job['id']
    assert retried['status'] == 'QUEUED'
    assert launched[-1] == retried['id']
    assert ledger.balance("creator-1") == 1

    not_failed = client.post(f"/v1/videos/{retried['id']}/retry", params={"user_id": "creator-1"})
    assert not_failed.status_code == 409
