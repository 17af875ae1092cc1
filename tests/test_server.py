import asyncio

import httpx
import orjson
import pytest
from httpx import ASGITransport

from ticketgate.config import Settings
from ticketgate.server import create_app
from ticketgate.settlement import SIGNATURE_HEADER, sign

from tests.helpers import CHECKSUM_SECRET, KEY

WEBHOOK_SECRET = "whsec-test"
INTERNAL = {"Authorization": "Bearer internal-token"}
ADMIN = {"Authorization": "Bearer admin-token"}
CRON = {"Authorization": "Bearer cron-secret"}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'unused.db'}",
        token_encryption_key=KEY,
        token_checksum_secret=CHECKSUM_SECRET,
        settlement_secret=WEBHOOK_SECRET,
        cron_secret="cron-secret",
        admin_token="admin-token",
        internal_token="internal-token",
        log_level="WARNING",
    )


@pytest.fixture
def app(settings, db):
    return create_app(settings, db=db)


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c


async def post_settlement(client, event, secret=WEBHOOK_SECRET):
    body = orjson.dumps(event)
    return await client.post(
        "/payments/settlement", content=body,
        headers={SIGNATURE_HEADER: sign(secret, body),
                 "Content-Type": "application/json"},
    )


async def scan(client, code, scope="org_1", check_in=True):
    return await client.post("/api/verify", json={
        "encryptedCode": code, "scopeId": scope, "checkIn": check_in,
    })


# ---
# scanning
# ---

async def test_ticket_check_in(client, seed, codec):
    evt = await seed.event("org_1")
    tt = await seed.ticket_type(evt)
    tx = await seed.transaction(evt, status="SUCCESS")
    ticket, code = await seed.active_ticket(codec, tx, tt)

    r = await scan(client, code, check_in=False)
    assert r.status_code == 200
    assert r.json()["success"] is True

    r = await scan(client, code)
    body = r.json()
    assert body["success"] is True
    assert body["type"] == "ticket"
    assert body["snapshot"]["id"] == ticket.id
    assert body["snapshot"]["status"] == "USED"

    r = await scan(client, code)
    body = r.json()
    assert body["success"] is False
    assert body["errorCode"] == "ALREADY_USED"
    assert body["message"]


async def test_concurrent_scans_over_http(client, seed, codec):
    evt = await seed.event("org_1")
    tt = await seed.ticket_type(evt)
    tx = await seed.transaction(evt, status="SUCCESS")
    _, code = await seed.active_ticket(codec, tx, tt)

    responses = await asyncio.gather(*[scan(client, code) for _ in range(8)])
    bodies = [r.json() for r in responses]
    assert sum(b["success"] for b in bodies) == 1
    assert {b["errorCode"] for b in bodies if not b["success"]} == \
        {"ALREADY_USED"}


@pytest.mark.parametrize("code, error", [
    ("garbage", "DECRYPTION_FAILED"),
    (None, "INVALID_INPUT"),
])
async def test_unreadable_codes(client, code, error):
    r = await scan(client, code)
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is False
    assert body["type"] == "unknown"
    assert body["errorCode"] == error


async def test_wristband_over_http(client, seed):
    evt = await seed.event("org_1")
    wb = await seed.wristband(evt, max_scans=1)

    r = await client.post(f"/api/wristbands/{wb.id}/issue",
                          json={"scopeId": "org_1"}, headers=INTERNAL)
    assert r.status_code == 200
    code = r.json()["code"]

    first = (await scan(client, code)).json()
    assert first["success"] is True
    assert first["type"] == "wristband"
    assert first["snapshot"]["remaining"] == 0
    second = (await scan(client, code)).json()
    assert second["errorCode"] == "SCAN_LIMIT_REACHED"

    r = await client.get(f"/api/wristbands/{wb.id}/scans",
                         params={"scopeId": "org_1"}, headers=INTERNAL)
    assert [i["result"] for i in r.json()["items"]] == [
        "SCAN_LIMIT_REACHED", "SUCCESS",
    ]
    r = await client.get(f"/api/wristbands/{wb.id}/scans",
                         params={"scopeId": "org_2"}, headers=INTERNAL)
    assert r.status_code == 404


# ---
# settlement webhook
# ---

async def test_settlement_activates_and_is_idempotent(client, seed, codec):
    evt = await seed.event("org_1")
    tt = await seed.ticket_type(evt)
    tx = await seed.transaction(evt)
    t1 = await seed.ticket(tx, tt)
    t2 = await seed.ticket(tx, tt)
    event = {"type": "payment.succeeded", "transaction_id": tx.id,
             "idempotency_key": "evt_1"}

    r = await post_settlement(client, event)
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["status"] == "SUCCESS"
    assert {t["id"] for t in body["tickets"]} == {t1.id, t2.id}

    replay = await post_settlement(client, event)
    assert replay.json() == {"ok": True, "idempotent": True}

    # the issued code works at the gate
    code = await seed.scalar(
        "SELECT qr_code_data FROM tickets WHERE id = :id", {"id": t1.id}
    )
    assert (await scan(client, code)).json()["success"] is True


async def test_failed_payment_leaves_tickets_pending(client, seed):
    evt = await seed.event()
    tt = await seed.ticket_type(evt)
    tx = await seed.transaction(evt)
    t = await seed.ticket(tx, tt)

    r = await post_settlement(client, {"type": "payment.failed",
                                       "transaction_id": tx.id})
    assert r.json()["status"] == "FAILED"
    assert await seed.ticket_status(t.id) == "PENDING"


async def test_refund_webhook(client, seed):
    evt = await seed.event()
    tt = await seed.ticket_type(evt)
    tx = await seed.transaction(evt)
    t = await seed.ticket(tx, tt)
    await post_settlement(client, {"type": "payment.succeeded",
                                   "transaction_id": tx.id})

    r = await post_settlement(client, {"type": "payment.refunded",
                                       "transaction_id": tx.id})
    assert r.json()["status"] == "REFUNDED"
    assert await seed.ticket_status(t.id) == "REFUNDED"


async def test_settlement_rejects_bad_requests(client, seed):
    evt = await seed.event()
    tx = await seed.transaction(evt)

    r = await post_settlement(client, {"type": "payment.succeeded",
                                       "transaction_id": tx.id},
                              secret="wrong")
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid signature"

    r = await post_settlement(client, {"type": "payment.disputed",
                                       "transaction_id": tx.id})
    assert r.status_code == 400

    r = await post_settlement(client, {"type": "payment.succeeded"})
    assert r.status_code == 400

    r = await post_settlement(client, {"type": "payment.succeeded",
                                       "transaction_id": "tx_missing"})
    assert r.status_code == 404


# ---
# lifecycle and admin
# ---

@pytest.mark.parametrize("headers", [
    {}, {"Authorization": "Bearer nope"}, {"Authorization": "internal-token"},
])
async def test_internal_endpoints_need_the_token(client, headers):
    r = await client.post("/api/tickets/tkt_1/activate", headers=headers)
    assert r.status_code == 401


async def test_unset_secret_locks_the_endpoint(settings, db):
    from dataclasses import replace
    app = create_app(replace(settings, cron_secret=None), db=db)
    async with httpx.AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as c:
        r = await c.post("/api/cron/expire-tickets",
                         headers={"Authorization": "Bearer "})
    assert r.status_code == 401


async def test_activate_cancel_over_http(client, seed):
    evt = await seed.event("org_1")
    tt = await seed.ticket_type(evt)
    tx = await seed.transaction(evt)
    t = await seed.ticket(tx, tt)

    r = await client.post("/api/tickets/tkt_missing/activate",
                          headers=INTERNAL)
    assert r.json()["errorCode"] == "TICKET_NOT_FOUND"

    r = await client.post(f"/api/tickets/{t.id}/activate",
                          json={"eventDate": 1_900_000_000},
                          headers=INTERNAL)
    body = r.json()
    assert body["success"] is True
    assert body["ticket"]["status"] == "ACTIVE"
    assert body["code"]

    r = await client.post(f"/api/tickets/{t.id}/activate",
                          json={"eventDate": "tomorrow"}, headers=INTERNAL)
    assert r.status_code == 400

    r = await client.post(f"/api/tickets/{t.id}/cancel",
                          json={"reason": "fraud"}, headers=INTERNAL)
    assert r.json()["ticket"]["status"] == "CANCELLED"

    r = await client.post(f"/api/tickets/{t.id}/refund", headers=INTERNAL)
    assert r.json()["errorCode"] == "STATUS_INVALID"


async def test_admin_undo_and_supersede(client, seed, codec):
    evt = await seed.event("org_1")
    tt = await seed.ticket_type(evt)
    tx = await seed.transaction(evt, status="SUCCESS")
    ticket, code = await seed.active_ticket(codec, tx, tt)
    await scan(client, code)

    r = await client.post(f"/api/admin/tickets/{ticket.id}/undo-check-in",
                          json={"scopeId": "org_1"}, headers=INTERNAL)
    assert r.status_code == 401
    r = await client.post(f"/api/admin/tickets/{ticket.id}/undo-check-in",
                          json={}, headers=ADMIN)
    assert r.status_code == 400
    r = await client.post(f"/api/admin/tickets/{ticket.id}/undo-check-in",
                          json={"scopeId": "org_1", "actor": "lead"},
                          headers=ADMIN)
    assert r.json()["ticket"]["status"] == "ACTIVE"
    assert (await scan(client, code)).json()["success"] is True

    waiting = await seed.transaction(evt, payment_method="bank_transfer",
                                     awaiting=True)
    r = await client.post(f"/api/admin/transactions/{waiting.id}/supersede",
                          headers=ADMIN)
    assert r.json()["status"] == "FAILED"
    r = await client.post("/api/admin/transactions/tx_missing/supersede",
                          headers=ADMIN)
    assert r.status_code == 404

    r = await client.get("/api/admin/timings", headers=ADMIN)
    assert "verify.check_in" in r.json()["timings"]


# ---
# cron
# ---

async def test_cron_cleanup(client, seed):
    evt = await seed.event()
    tt = await seed.ticket_type(evt)
    tx = await seed.transaction(evt, age_hours=30)
    stale = await seed.ticket(tx, tt, age_hours=30)

    r = await client.get("/api/cron/cleanup-pending-tickets")
    assert r.status_code == 401

    r = await client.get("/api/cron/cleanup-pending-tickets", headers=CRON)
    stats = r.json()["data"]["statistics"]
    assert stats["eligibleForDeletion"] == 1

    r = await client.post("/api/cron/cleanup-pending-tickets",
                          json={"dryRun": True}, headers=CRON)
    body = r.json()
    assert body["data"]["cleanup"]["dryRun"] is True
    assert "would be deleted" in body["message"]
    assert await seed.ticket_status(stale.id) == "PENDING"

    r = await client.post("/api/cron/cleanup-pending-tickets", headers=CRON)
    body = r.json()
    assert body["success"] is True
    assert body["data"]["cleanup"]["deletedTickets"] == 1
    assert body["data"]["parameters"]["maxAge"] == 24
    assert await seed.ticket_status(stale.id) is None

    r = await client.post("/api/cron/cleanup-pending-tickets", headers=CRON)
    body = r.json()
    assert body["data"]["cleanup"] is None
    assert body["message"] == "No cleanup needed"


async def test_cron_cleanup_rejects_bad_options(client):
    r = await client.post("/api/cron/cleanup-pending-tickets",
                          json={"maxAge": -5}, headers=CRON)
    assert r.status_code == 400


async def test_cron_orphans_and_expiry(client, seed):
    evt = await seed.event(ends_at=1_000.0)
    tt = await seed.ticket_type(evt)
    tx = await seed.transaction(evt, status="SUCCESS")
    t = await seed.ticket(tx, tt, status="ACTIVE")
    orphan = await seed.transaction(evt, status="EXPIRED")

    r = await client.post("/api/cron/cleanup-orphaned-transactions",
                          headers=CRON)
    assert r.json()["data"]["transactionIds"] == [orphan.id]

    r = await client.post("/api/cron/expire-tickets", headers=CRON)
    assert r.json()["data"] == {"expired": 1, "event_ids": [evt.id]}
    assert await seed.ticket_status(t.id) == "EXPIRED"


async def test_cron_expire_orders(client, seed):
    evt = await seed.event()
    tt = await seed.ticket_type(evt, available=0)
    tx = await seed.transaction(evt, age_hours=25)
    t = await seed.ticket(tx, tt)

    r = await client.post("/api/cron/expire-orders")
    assert r.status_code == 401

    r = await client.get("/api/cron/expire-orders", headers=CRON)
    assert r.json()["data"]["pendingExpiration"] == 1

    r = await client.post("/api/cron/expire-orders", json={"maxAge": "1"},
                          headers=CRON)
    assert r.status_code == 400

    r = await client.post("/api/cron/expire-orders", headers=CRON)
    body = r.json()
    assert body["success"] is True
    assert body["data"]["transaction_ids"] == [tx.id]
    assert body["message"] == "Expired 1 orders"
    assert await seed.ticket_status(t.id) == "CANCELLED"

    r = await client.get("/api/cron/expire-orders", headers=CRON)
    assert r.json()["data"]["pendingExpiration"] == 0


@pytest.mark.parametrize("path, body", [
    ("/api/cron/cleanup-pending-tickets", {"includeFailedPayments": "false"}),
    ("/api/cron/cleanup-pending-tickets", {"dryRun": "true"}),
    ("/api/cron/cleanup-pending-tickets", {"statsOnly": "yes"}),
    ("/api/cron/cleanup-orphaned-transactions", {"dryRun": "false"}),
])
async def test_cron_flags_must_be_json_booleans(client, seed, path, body):
    evt = await seed.event()
    tt = await seed.ticket_type(evt)
    tx = await seed.transaction(evt, status="FAILED", age_hours=2)
    t = await seed.ticket(tx, tt, age_hours=2)

    r = await client.post(path, json=body, headers=CRON)
    assert r.status_code == 400
    assert await seed.ticket_status(t.id) == "PENDING"


async def test_check_in_flag_must_be_a_boolean(client, seed, codec):
    evt = await seed.event("org_1")
    tt = await seed.ticket_type(evt)
    tx = await seed.transaction(evt, status="SUCCESS")
    ticket, code = await seed.active_ticket(codec, tx, tt)

    r = await client.post("/api/verify", json={
        "encryptedCode": code, "scopeId": "org_1", "checkIn": "false",
    })
    assert r.status_code == 400
    assert await seed.ticket_status(ticket.id) == "ACTIVE"
