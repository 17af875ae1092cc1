from __future__ import annotations
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


SQL_INCREMENT = text("""
    UPDATE wristbands
    SET scan_count = scan_count + 1,
        last_scanned_at = :now
    WHERE id = :id
      AND status = 'ACTIVE'
      AND (max_scans IS NULL OR scan_count < max_scans)
    RETURNING scan_count
""")


class ScanCounter:
    """
    The row is the counter: the limit check and the increment are the same
    UPDATE, so two scans racing for the last slot cannot both land.
    """
    name = "pg"

    async def increment(self, db: AsyncSession, wristband_id: str,
                        max_scans: Optional[int], seed: int,
                        now: float,
                        valid_until: Optional[float] = None) -> Optional[int]:
        # UN-GATED: caller holds the gate and the transaction
        row = (await db.execute(
            SQL_INCREMENT, {"id": wristband_id, "now": now}
        )).first()
        return int(row[0]) if row else None
