from fastapi.testclient import TestClient

from ugc_pipeline.api.main import app


def test_admin_grant_and_balance() -> None:
    c = TestClient(app)

    payload = {"user_id": "creator-1", "credits": 10, "type": "SUBSCRIPTION_CREDIT", "note": "monthly plan"}
    r = c.post('/v1/admin/credits/grant', json=payload, headers={"x-admin-token": "test-admin-token"})
    assert r.status_code == 200
    assert r.json()['data']['credit_balance'] == 10

    rb = c.get('/v1/credits/creator-1')
    assert rb.status_code == 200
    data = rb.json()['data']
    assert data['balance'] == {"user_id": "creator-1", "credit_balance": 10}
    assert data['total_transactions'] == 1
    assert data['recent_ledger'][0]['type'] == 'SUBSCRIPTION_CREDIT'
    assert data['recent_ledger'][0]['description'] == 'monthly plan'


def test_unknown_user_reads_zero() -> None:
    c = TestClient(app)
    rb = c.get('/v1/credits/nobody')
    assert rb.status_code == 200
    assert rb.json()['data']['balance']['credit_balance'] == 0


def test_admin_auth_required() -> None:
    c = TestClient(app)
    r = c.post('/v1/admin/credits/grant', json={"user_id": "u1", "credits": 10})
    assert r.status_code == 401


def test_grant_cannot_forge_debits() -> None:
    c = TestClient(app)
    r = c.post(
        '/v1/admin/credits/grant',
        json={"user_id": "u1", "credits": 1, "type": "REFUND"},
        headers={"x-admin-token": "test-admin-token"},
    )
    assert r.status_code == 400
