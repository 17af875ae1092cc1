from __future__ import annotations
import math
from typing import Optional

import redis.asyncio as redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

# counters of wristbands without an end date are reseeded from the row
# after this long without a scan
DEFAULT_TTL = 7 * 24 * 3600
TTL_GRACE = 24 * 3600


# ---- keys
def k_scans(wristband_id: str) -> str: return f"wb:scans:{wristband_id}"


# KEYS[1] = counter
# ARGV[1] = seed from the row, ARGV[2] = limit (-1: none), ARGV[3] = ttl s
# returns the new count, or -1 when the limit is already reached
LUA_BOUNDED_INCR = """
redis.call('SET', KEYS[1], ARGV[1], 'NX')
redis.call('EXPIRE', KEYS[1], tonumber(ARGV[3]))
local limit = tonumber(ARGV[2])
local cur = tonumber(redis.call('GET', KEYS[1]))
if limit >= 0 and cur >= limit then
  return -1
end
return redis.call('INCR', KEYS[1])
"""

# monotonic: a slower writer never moves the row backwards
SQL_ADVANCE = text("""
    UPDATE wristbands
    SET scan_count = :n,
        last_scanned_at = :now
    WHERE id = :id AND status = 'ACTIVE' AND scan_count < :n
""")

SQL_STATUS = text("SELECT status FROM wristbands WHERE id = :id")


def key_ttl(valid_until: Optional[float], now: float) -> int:
    if valid_until is None:
        return DEFAULT_TTL
    return max(1, math.ceil(valid_until - now)) + TTL_GRACE


class ScanCounter:
    """
    Redis holds the hot counter, the row follows it. The slot is taken in
    Lua; the SQL advance then only lands on an ACTIVE row, and a scan whose
    row stopped being ACTIVE in between is refused.
    """
    name = "redis"

    def __init__(self, r: redis.Redis) -> None:
        self.r = r
        self._incr = r.register_script(LUA_BOUNDED_INCR)

    async def increment(self, db: AsyncSession, wristband_id: str,
                        max_scans: Optional[int], seed: int,
                        now: float,
                        valid_until: Optional[float] = None) -> Optional[int]:
        limit = -1 if max_scans is None else int(max_scans)
        n = int(await self._incr(
            keys=[k_scans(wristband_id)],
            args=[int(seed), limit, key_ttl(valid_until, now)],
        ))
        if n < 0:
            return None
        res = await db.execute(SQL_ADVANCE, {"id": wristband_id, "n": n,
                                             "now": now})
        if res.rowcount == 0:
            # either a later count already landed, or the row left ACTIVE
            status = (await db.execute(
                SQL_STATUS, {"id": wristband_id}
            )).scalar()
            if status != "ACTIVE":
                return None
        return n
