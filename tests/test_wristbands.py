import asyncio

import pytest
from sqlalchemy import text

from ticketgate.errors import ConfigurationError, ErrorCode
from ticketgate.helpers import now_ts
from ticketgate.model.scancounter import new_counter
from ticketgate.model.scancounter._redis import DEFAULT_TTL, TTL_GRACE
from ticketgate.model.states import WristbandStatus
from ticketgate.wristbands import SCAN_SUCCESS, WristbandLimiter

HOUR = 3600.0


@pytest.fixture
def limiter(db, codec):
    return WristbandLimiter(db, codec, new_counter("pg"))


async def issued(limiter, seed, **kw):
    """Seed a wristband of org_1, issue it; returns (wristband, code)."""
    evt = await seed.event("org_1")
    wb = await seed.wristband(evt, **kw)
    res = await limiter.issue(wb.id, "org_1")
    assert res.valid
    return wb, res.code


async def scan_results(seed, wristband_id):
    async with seed.db.session() as session:
        rows = (await session.execute(text(
            "SELECT result FROM wristband_scan_logs "
            "WHERE wristband_id = :id ORDER BY id"
        ), {"id": wristband_id})).scalars().all()
    return list(rows)


async def scan_count(seed, wristband_id):
    return await seed.scalar(
        "SELECT scan_count FROM wristbands WHERE id = :id",
        {"id": wristband_id},
    )


async def test_issue_activates_and_keeps_count(limiter, seed, codec):
    wb, code = await issued(limiter, seed, scan_count=1)
    payload = codec.decrypt(code).payload
    assert payload.wristband_id == wb.id
    assert payload.max_scans == 3

    row = await seed.row("SELECT status, code_data FROM wristbands "
                         "WHERE id = :id", {"id": wb.id})
    assert row["status"] == "ACTIVE"
    assert row["code_data"] == code

    again = await limiter.issue(wb.id, "org_1")
    assert again.valid
    assert again.code != code
    assert again.wristband.scan_count == 1


async def test_issue_refuses_unknown_or_revoked(limiter, seed):
    missing = await limiter.issue("wb_missing", "org_1")
    assert missing.error_code is ErrorCode.WRISTBAND_NOT_FOUND

    evt = await seed.event("org_1")
    wb = await seed.wristband(evt, status="REVOKED")
    res = await limiter.issue(wb.id, "org_1")
    assert res.error_code is ErrorCode.STATUS_INVALID
    assert await seed.scalar("SELECT status FROM wristbands WHERE id = :id",
                             {"id": wb.id}) == "REVOKED"


async def test_scans_until_the_limit(limiter, seed):
    wb, code = await issued(limiter, seed, max_scans=2)

    first = await limiter.scan(code, "org_1", location="Gate A")
    assert first.valid
    assert first.wristband.scan_count == 1
    assert first.wristband.remaining == 1

    assert (await limiter.scan(code, "org_1")).valid
    third = await limiter.scan(code, "org_1")
    assert third.error_code is ErrorCode.SCAN_LIMIT_REACHED

    assert await scan_count(seed, wb.id) == 2
    assert await scan_results(seed, wb.id) == [
        SCAN_SUCCESS, SCAN_SUCCESS, "SCAN_LIMIT_REACHED",
    ]


async def test_concurrent_scans_for_the_last_slot(limiter, seed):
    wb, code = await issued(limiter, seed, max_scans=3, scan_count=2)

    a, b = await asyncio.gather(
        limiter.scan(code, "org_1", device="scanner-a"),
        limiter.scan(code, "org_1", device="scanner-b"),
    )
    assert sorted([a.valid, b.valid]) == [False, True]
    loser = a if not a.valid else b
    assert loser.error_code is ErrorCode.SCAN_LIMIT_REACHED

    assert await scan_count(seed, wb.id) == 3
    assert sorted(await scan_results(seed, wb.id)) == [
        "SCAN_LIMIT_REACHED", SCAN_SUCCESS,
    ]


async def test_unlimited_wristband(limiter, seed):
    wb, code = await issued(limiter, seed, max_scans=None)
    results = await asyncio.gather(*[
        limiter.scan(code, "org_1") for _ in range(6)
    ])
    assert all(r.valid for r in results)
    assert await scan_count(seed, wb.id) == 6


async def test_validate_does_not_count(limiter, seed):
    wb, code = await issued(limiter, seed)
    res = await limiter.validate(code, "org_1")
    assert res.valid
    assert await scan_count(seed, wb.id) == 0
    assert await scan_results(seed, wb.id) == []


@pytest.mark.parametrize("window", [
    {"valid_from": now_ts() + 2 * HOUR},
    {"valid_until": now_ts() - HOUR},
])
async def test_outside_the_validity_window(limiter, seed, window):
    wb, code = await issued(limiter, seed, **window)
    res = await limiter.scan(code, "org_1")
    assert res.error_code is ErrorCode.OUT_OF_VALIDITY_WINDOW
    assert await scan_count(seed, wb.id) == 0
    assert await scan_results(seed, wb.id) == ["OUT_OF_VALIDITY_WINDOW"]


@pytest.mark.parametrize("status", ["INACTIVE", "REVOKED"])
async def test_inactive_or_revoked(limiter, seed, status):
    wb, code = await issued(limiter, seed)
    await seed.execute("UPDATE wristbands SET status = :s WHERE id = :id",
                       {"s": status, "id": wb.id})
    res = await limiter.scan(code, "org_1")
    assert res.error_code is ErrorCode.STATUS_INVALID
    assert res.wristband.status is WristbandStatus(status)


async def test_scope_and_existence(limiter, seed, codec):
    wb, code = await issued(limiter, seed)
    other_org = await limiter.scan(code, "org_2")
    assert other_org.error_code is ErrorCode.WRISTBAND_NOT_FOUND
    assert await scan_results(seed, wb.id) == []

    ghost = codec.encrypt(codec.generate_wristband(
        wristband_id="wb_ghost", event_id=wb.event_id, organizer_id="org_1",
        name="Ghost",
    ))
    res = await limiter.scan(ghost, "org_1")
    assert res.error_code is ErrorCode.WRISTBAND_NOT_FOUND
    assert res.wristband_id == "wb_ghost"


async def test_ticket_code_is_not_a_wristband(limiter, codec):
    ticket = codec.encrypt(codec.generate(
        ticket_id="tkt_1", event_id="evt_1", user_id="user_1",
        transaction_id="tx_1", ticket_type_id="tt_1",
    ))
    res = await limiter.scan(ticket, "org_1")
    assert res.error_code is ErrorCode.DECRYPTION_FAILED
    assert (await limiter.scan("", "org_1")).error_code is \
        ErrorCode.INVALID_INPUT


async def test_scan_history(limiter, seed):
    wb, code = await issued(limiter, seed, max_scans=1)
    await limiter.scan(code, "org_1", location="Gate A", device="s1",
                       scanned_by="staff_1")
    await limiter.scan(code, "org_1", location="Gate B")

    items = await limiter.scan_history(wb.id, "org_1")
    assert [i["result"] for i in items] == ["SCAN_LIMIT_REACHED",
                                            SCAN_SUCCESS]
    assert items[1]["location"] == "Gate A"
    assert items[1]["scanned_by"] == "staff_1"
    assert items[1]["scanned_at"].endswith("+00:00")

    assert len(await limiter.scan_history(wb.id, "org_1", limit=1)) == 1
    assert await limiter.scan_history(wb.id, "org_2") is None


def test_counter_factory():
    assert new_counter("pg").name == "pg"
    with pytest.raises(ConfigurationError):
        new_counter("redis")
    with pytest.raises(ConfigurationError):
        new_counter("memcached")


# ---
# redis backend
# ---

@pytest.fixture
async def fake_redis():
    aioredis = pytest.importorskip("fakeredis.aioredis")
    pytest.importorskip("lupa")
    r = aioredis.FakeRedis(decode_responses=True)
    yield r
    await r.aclose()


async def test_redis_counter_enforces_the_limit(db, codec, seed, fake_redis):
    limiter = WristbandLimiter(db, codec, new_counter("redis", r=fake_redis))
    wb, code = await issued(limiter, seed, max_scans=3, scan_count=1)

    results = await asyncio.gather(*[
        limiter.scan(code, "org_1") for _ in range(5)
    ])
    assert sum(r.valid for r in results) == 2
    assert {r.error_code for r in results if not r.valid} == \
        {ErrorCode.SCAN_LIMIT_REACHED}

    assert await fake_redis.get(f"wb:scans:{wb.id}") == "3"
    assert await scan_count(seed, wb.id) == 3


async def revoked_between_validate_and_count(limiter, seed, code, wb):
    checked = await limiter._validate(code, "org_1")
    assert checked.valid
    await seed.execute("UPDATE wristbands SET status = 'REVOKED' "
                       "WHERE id = :id", {"id": wb.id})
    return await limiter._count(checked.wristband, {"location": None,
                                                     "device": None,
                                                     "scanned_by": None})


async def test_revoked_mid_scan_is_refused(limiter, seed):
    wb, code = await issued(limiter, seed)
    res = await revoked_between_validate_and_count(limiter, seed, code, wb)
    assert res.error_code is ErrorCode.STATUS_INVALID
    assert await scan_count(seed, wb.id) == 0
    assert await scan_results(seed, wb.id) == ["STATUS_INVALID"]


async def test_redis_counter_refuses_revoked_mid_scan(db, codec, seed,
                                                      fake_redis):
    limiter = WristbandLimiter(db, codec, new_counter("redis", r=fake_redis))
    wb, code = await issued(limiter, seed)

    res = await revoked_between_validate_and_count(limiter, seed, code, wb)
    assert not res.valid
    assert res.error_code is ErrorCode.STATUS_INVALID
    assert res.wristband.status is WristbandStatus.REVOKED
    assert await scan_count(seed, wb.id) == 0
    assert await scan_results(seed, wb.id) == ["STATUS_INVALID"]


async def test_redis_counter_key_expires(db, codec, seed, fake_redis):
    limiter = WristbandLimiter(db, codec, new_counter("redis", r=fake_redis))
    bounded, bounded_code = await issued(
        limiter, seed, valid_until=now_ts() + 2 * HOUR,
    )
    open_ended, open_code = await issued(limiter, seed)

    assert (await limiter.scan(bounded_code, "org_1")).valid
    assert (await limiter.scan(open_code, "org_1")).valid

    ttl = await fake_redis.ttl(f"wb:scans:{bounded.id}")
    assert 2 * HOUR < ttl <= 2 * HOUR + TTL_GRACE + 1
    assert 0 < await fake_redis.ttl(f"wb:scans:{open_ended.id}") <= \
        DEFAULT_TTL
