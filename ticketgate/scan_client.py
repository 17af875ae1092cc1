#!/usr/bin/env python3
"""
ticketgate scan load client (async)

N scanners present the same code at once, the way a crowd at a gate
re-scans a screenshot of one ticket:
  POST /api/verify {encryptedCode, scopeId, checkIn: true}

For a ticket exactly one scan must be admitted and every other one must
come back ALREADY_USED; for a wristband with maxScans=k at most k are
admitted. The report counts outcomes per error code.

Usage:
  ticketgate-scan-load --base http://localhost:8000 \
                       --code "<ivHex>:<cipherHex>" --scope org_1 \
                       --total 50 --concurrency 50
"""

import argparse
import asyncio
import statistics
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

ADMITTED = "ADMITTED"


@dataclass
class Result:
    # answered: the service gave a verdict (admitted or an error code)
    answered: bool
    outcome: str
    latency: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)

    def add(self, r: Result) -> None:
        self.results.append(r)

    def outcomes(self) -> Dict[str, int]:
        return dict(Counter(r.outcome for r in self.results))

    def summary(self) -> Dict[str, float]:
        lat = sorted(r.latency for r in self.results if r.latency > 0)
        admitted = sum(r.outcome == ADMITTED for r in self.results)
        answered = sum(r.answered for r in self.results)

        def at(q: float) -> float:
            if not lat:
                return 0.0
            return lat[min(len(lat) - 1, round(q * (len(lat) - 1)))]

        return {
            "total": len(self.results),
            "admitted": admitted,
            "rejected": answered - admitted,
            "error": len(self.results) - answered,
            "avg_s": statistics.fmean(lat) if lat else 0.0,
            "p50_s": at(0.50),
            "p90_s": at(0.90),
            "p99_s": at(0.99),
        }

    def report(self, elapsed_s: float) -> str:
        s = self.summary()
        lines = [
            "=== scans ===",
            f"total {s['total']}  admitted {s['admitted']}  "
            f"rejected {s['rejected']}  errors {s['error']}",
        ]
        for outcome, n in sorted(self.outcomes().items(),
                                 key=lambda kv: (-kv[1], kv[0])):
            lines.append(f"  {outcome:<24}{n:>6}")
        lines.append(
            f"latency avg {s['avg_s'] * 1000:.1f}ms  "
            f"p50 {s['p50_s'] * 1000:.1f}ms  p90 {s['p90_s'] * 1000:.1f}ms  "
            f"p99 {s['p99_s'] * 1000:.1f}ms"
        )
        if elapsed_s > 0:
            lines.append(f"wall {elapsed_s:.2f}s  "
                         f"{s['total'] / elapsed_s:.1f} scans/s")
        return "\n".join(lines)


def classify(resp: httpx.Response) -> Result:
    try:
        body = resp.json()
    except ValueError:
        return Result(False, f"HTTP_{resp.status_code}", err="non-JSON")
    if body.get("success"):
        return Result(True, ADMITTED)
    # INTERNAL_ERROR arrives as a 503 but still carries a verdict
    if "errorCode" in body:
        return Result(True, body["errorCode"])
    return Result(False, f"HTTP_{resp.status_code}")


async def one_scan(client: httpx.AsyncClient, base: str, code: str,
                   scope_id: str, check_in: bool, device: str) -> Result:
    t0 = time.perf_counter()
    try:
        resp = await client.post(f"{base}/api/verify", json={
            "encryptedCode": code,
            "scopeId": scope_id,
            "checkIn": check_in,
            "device": device,
        })
    except httpx.HTTPError as e:
        return Result(False, "ERROR", err=str(e) or type(e).__name__)
    result = classify(resp)
    result.latency = time.perf_counter() - t0
    return result


async def run_scans(
    base: str,
    code: str,
    scope_id: str,
    total: int,
    concurrency: int,
    check_in: bool = True,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Stats:
    stats = Stats()
    sem = asyncio.Semaphore(concurrency)
    # hold every scanner at the line until all of them are ready
    go = asyncio.Event()

    async with httpx.AsyncClient(
        transport=transport,
        timeout=30.0,
        limits=httpx.Limits(max_connections=concurrency,
                            max_keepalive_connections=concurrency),
        headers={"User-Agent": "ticketgate-scan-load/1.0"},
    ) as client:

        async def scanner(n: int) -> None:
            async with sem:
                await go.wait()
                stats.add(await one_scan(client, base, code, scope_id,
                                         check_in, device=f"scanner-{n}"))

        tasks = [asyncio.create_task(scanner(i)) for i in range(total)]
        await asyncio.sleep(0)
        go.set()
        await asyncio.gather(*tasks)

    return stats


def main() -> None:
    ap = argparse.ArgumentParser(description="ticketgate scan load client")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the service")
    ap.add_argument("--code", required=True,
                    help="Encrypted ticket or wristband code")
    ap.add_argument("--scope", required=True,
                    help="Organizer id the scanners belong to")
    ap.add_argument("--total", type=int, default=20,
                    help="Scans to send")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Scanners in flight at once")
    ap.add_argument("--validate-only", action="store_true",
                    help="Validate without checking in")
    args = ap.parse_args()

    t0 = time.perf_counter()
    stats = asyncio.run(run_scans(
        base=args.base.rstrip("/"),
        code=args.code,
        scope_id=args.scope,
        total=args.total,
        concurrency=args.concurrency,
        check_in=not args.validate_only,
    ))
    print(stats.report(time.perf_counter() - t0))


if __name__ == "__main__":
    main()
