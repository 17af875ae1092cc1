import pytest
from httpx import ASGITransport

from ticketgate import cleanupctl
from ticketgate.config import Settings
from ticketgate.infra import timings
from ticketgate.scan_client import Result, Stats, run_scans
from ticketgate.server import create_app

from tests.helpers import CHECKSUM_SECRET, KEY


async def test_scan_load_against_one_ticket(db, seed, codec):
    settings = Settings(database_url="sqlite://", token_encryption_key=KEY,
                        token_checksum_secret=CHECKSUM_SECRET,
                        log_level="WARNING")
    app = create_app(settings, db=db)

    evt = await seed.event("org_1")
    tt = await seed.ticket_type(evt)
    tx = await seed.transaction(evt, status="SUCCESS")
    _, code = await seed.active_ticket(codec, tx, tt)

    stats = await run_scans(
        base="http://test", code=code, scope_id="org_1", total=12,
        concurrency=12, transport=ASGITransport(app=app),
    )
    assert stats.outcomes() == {"ADMITTED": 1, "ALREADY_USED": 11}
    summary = stats.summary()
    assert summary["total"] == 12
    assert summary["admitted"] == 1
    assert summary["rejected"] == 11
    assert summary["error"] == 0


def test_stats_summary():
    stats = Stats()
    for outcome, t in (("ADMITTED", 0.1), ("ALREADY_USED", 0.3)):
        stats.add(Result(answered=True, outcome=outcome, latency=t))
    stats.add(Result(answered=False, outcome="ERROR", err="refused"))

    s = stats.summary()
    assert (s["admitted"], s["rejected"], s["error"]) == (1, 1, 1)
    assert s["avg_s"] == pytest.approx(0.2)
    assert s["p99_s"] == pytest.approx(0.3)

    report = stats.report(1.5)
    assert "admitted 1" in report
    assert "ALREADY_USED" in report
    assert "2.0 scans/s" in report


async def test_timings_count_failures():
    with pytest.raises(KeyError):
        async with timings.timeit("op.fails"):
            raise KeyError("x")
    for _ in range(3):
        async with timings.timeit("op.ok"):
            pass

    snap = timings.snapshot()
    assert snap["op.fails"]["errors"] == 1
    assert snap["op.ok"]["n"] == 3
    assert snap["op.ok"]["errors"] == 0
    assert snap["op.ok"]["p95_ms"] <= snap["op.ok"]["max_ms"]

    timings.reset()
    assert timings.snapshot() == {}


def test_cleanupctl_needs_a_database(monkeypatch, capsys):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    assert cleanupctl.main(["--stats"]) == 2
    assert "DATABASE_URL" in capsys.readouterr().err


def test_cleanupctl_rejects_bad_options(capsys):
    assert cleanupctl.main(["--batch-size", "0"]) == 2


def test_cleanupctl_stats_and_dry_run(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")

    assert cleanupctl.main(["--stats"]) == 0
    out = capsys.readouterr().out
    assert "Total PENDING tickets: 0" in out
    assert "Include failed payments: yes" in out

    assert cleanupctl.main(["--dry-run", "--exclude-failed", "--orphans",
                            "--max-age", "48"]) == 0
    out = capsys.readouterr().out
    assert "No tickets found for cleanup" in out
    assert "Would delete: 0 orphaned transactions" in out
    assert "Max age: 48 hours" in out
    assert "Include failed payments: no" in out
