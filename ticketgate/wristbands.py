# ticketgate/wristbands.py
"""
Reusable wristband codes with a bounded scan count.

Every scan is one conditional increment through the configured counter
backend plus one scan log row, written in the same transaction. The limit
check lives inside the increment, so validate() is advisory only.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ErrorCode
from .helpers import now_ts, to_iso
from .infra.sql import Database
from .infra.timings import timeit
from .model.states import WristbandStatus
from .token import TokenCodec, WristbandPayload

log = logging.getLogger(__name__)

# ValueError: a stored status the enums do not know
INFRA_ERRORS = (SQLAlchemyError, RedisError, OSError, asyncio.TimeoutError,
                ValueError)

SCAN_SUCCESS = "SUCCESS"


@dataclass(frozen=True)
class WristbandSnapshot:
    id: str
    event_id: str
    organizer_id: str
    name: str
    status: WristbandStatus
    max_scans: Optional[int]
    scan_count: int
    valid_from: Optional[float]
    valid_until: Optional[float]
    last_scanned_at: Optional[float]

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "WristbandSnapshot":
        return cls(
            id=row["id"],
            event_id=row["event_id"],
            organizer_id=row["organizer_id"],
            name=row["name"],
            status=WristbandStatus(row["status"]),
            max_scans=row["max_scans"],
            scan_count=int(row["scan_count"]),
            valid_from=row["valid_from"],
            valid_until=row["valid_until"],
            last_scanned_at=row["last_scanned_at"],
        )

    @property
    def remaining(self) -> Optional[int]:
        if self.max_scans is None:
            return None
        return max(0, self.max_scans - self.scan_count)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "name": self.name,
            "status": self.status.value,
            "max_scans": self.max_scans,
            "scan_count": self.scan_count,
            "remaining": self.remaining,
            "valid_from": to_iso(self.valid_from),
            "valid_until": to_iso(self.valid_until),
            "last_scanned_at": to_iso(self.last_scanned_at),
        }


@dataclass(frozen=True)
class WristbandResult:
    valid: bool
    wristband: Optional[WristbandSnapshot] = None
    error_code: Optional[ErrorCode] = None
    wristband_id: Optional[str] = None
    # set by issue() only
    code: Optional[str] = None

    @classmethod
    def fail(cls, code: ErrorCode,
             wristband: Optional[WristbandSnapshot] = None,
             wristband_id: Optional[str] = None) -> "WristbandResult":
        if wristband is not None:
            wristband_id = wristband.id
        return cls(valid=False, wristband=wristband, error_code=code,
                   wristband_id=wristband_id)


_COLS = """
    id, event_id, organizer_id, name, status, max_scans, scan_count,
    valid_from, valid_until, last_scanned_at
"""


async def fetch_scoped(db: AsyncSession, wristband_id: str,
                       scope_id: str) -> Optional[WristbandSnapshot]:
    row = (await db.execute(text(f"""
        SELECT {_COLS} FROM wristbands
        WHERE id = :id AND organizer_id = :scope
    """), {"id": wristband_id, "scope": scope_id})).mappings().first()
    return WristbandSnapshot.from_row(row) if row else None


async def append_scan_log(db: AsyncSession, wristband_id: str, result: str,
                          now: float, location: Optional[str] = None,
                          device: Optional[str] = None,
                          scanned_by: Optional[str] = None,
                          notes: Optional[str] = None) -> None:
    await db.execute(text("""
        INSERT INTO wristband_scan_logs(
            wristband_id, scanned_at, result, location, device,
            scanned_by, notes
        ) VALUES (
            :wid, :now, :result, :location, :device, :scanned_by, :notes
        )
    """), {
        "wid": wristband_id, "now": now, "result": result,
        "location": location, "device": device,
        "scanned_by": scanned_by, "notes": notes,
    })


def _eligibility(wb: WristbandSnapshot, now: float) -> Optional[ErrorCode]:
    if wb.status is not WristbandStatus.ACTIVE:
        return ErrorCode.STATUS_INVALID
    if wb.valid_from is not None and now < wb.valid_from:
        return ErrorCode.OUT_OF_VALIDITY_WINDOW
    if wb.valid_until is not None and now > wb.valid_until:
        return ErrorCode.OUT_OF_VALIDITY_WINDOW
    if wb.max_scans is not None and wb.scan_count >= wb.max_scans:
        return ErrorCode.SCAN_LIMIT_REACHED
    return None


class WristbandLimiter:
    def __init__(self, db: Database, codec: TokenCodec, counter,
                 clock=now_ts) -> None:
        self.db = db
        self.codec = codec
        self.counter = counter
        self.clock = clock

    async def validate(self, code: Any, scope_id: str) -> WristbandResult:
        async with timeit("wristband.validate"):
            result = await self._validate(code, scope_id)
        if not result.valid:
            self._log_rejection(scope_id, result)
        return result

    async def scan(self, code: Any, scope_id: str,
                   location: Optional[str] = None,
                   device: Optional[str] = None,
                   scanned_by: Optional[str] = None) -> WristbandResult:
        meta = {"location": location, "device": device,
                "scanned_by": scanned_by}
        async with timeit("wristband.scan"):
            result = await self._validate(code, scope_id)
            if result.valid:
                result = await self._count(result.wristband, meta)
            elif result.wristband is not None:
                await self._record_rejection(result, meta)

        if result.valid:
            log.info("wristband scan ok scope=%s wristband=%s count=%s",
                     scope_id, result.wristband_id,
                     result.wristband.scan_count)
        else:
            self._log_rejection(scope_id, result)
        return result

    async def issue(self, wristband_id: str, scope_id: str) -> WristbandResult:
        """
        Generate and store the wristband's code and make it ACTIVE.

        Re-issuing an ACTIVE or INACTIVE wristband replaces its code and
        keeps the scan count; a REVOKED one stays revoked.
        """
        async with self.db.gated():
            async with self.db.session() as session:
                async with session.begin():
                    wb = await fetch_scoped(session, wristband_id, scope_id)
                    if wb is None:
                        return WristbandResult.fail(
                            ErrorCode.WRISTBAND_NOT_FOUND,
                            wristband_id=wristband_id,
                        )
                    if wb.status is WristbandStatus.REVOKED:
                        return WristbandResult.fail(
                            ErrorCode.STATUS_INVALID, wb
                        )
                    payload = self.codec.generate_wristband(
                        wristband_id=wb.id,
                        event_id=wb.event_id,
                        organizer_id=wb.organizer_id,
                        name=wb.name,
                        valid_from=wb.valid_from,
                        valid_until=wb.valid_until,
                        max_scans=wb.max_scans,
                    )
                    code = self.codec.encrypt(payload)
                    row = (await session.execute(text(f"""
                        UPDATE wristbands
                        SET code_data = :code, status = 'ACTIVE'
                        WHERE id = :id AND status <> 'REVOKED'
                        RETURNING {_COLS}
                    """), {"id": wb.id, "code": code})).mappings().first()

        if row is None:
            return WristbandResult.fail(ErrorCode.STATUS_INVALID, wb)
        log.info("wristband issued scope=%s wristband=%s", scope_id, wb.id)
        return WristbandResult(valid=True,
                               wristband=WristbandSnapshot.from_row(row),
                               wristband_id=wb.id, code=code)

    async def scan_history(self, wristband_id: str, scope_id: str,
                           limit: int = 50) -> Optional[List[Dict[str, Any]]]:
        async with self.db.gated():
            async with self.db.session() as session:
                async with session.begin():
                    wb = await fetch_scoped(session, wristband_id, scope_id)
                    if wb is None:
                        return None
                    rows = (await session.execute(text("""
                        SELECT scanned_at, result, location, device,
                               scanned_by, notes
                        FROM wristband_scan_logs
                        WHERE wristband_id = :id
                        ORDER BY scanned_at DESC, id DESC
                        LIMIT :limit
                    """), {"id": wristband_id, "limit": int(limit)}
                    )).mappings().all()
        return [
            {**dict(r), "scanned_at": to_iso(r["scanned_at"])} for r in rows
        ]

    # ---

    async def _validate(self, code: Any, scope_id: str) -> WristbandResult:
        if not scope_id:
            return WristbandResult.fail(ErrorCode.INVALID_INPUT)

        decoded = self.codec.decrypt(code)
        if not decoded.ok:
            return WristbandResult.fail(decoded.error)
        payload = decoded.payload
        if not isinstance(payload, WristbandPayload):
            return WristbandResult.fail(ErrorCode.DECRYPTION_FAILED)

        problem = self.codec.check_structure(payload, now=self.clock())
        if problem is not None:
            return WristbandResult.fail(
                problem, wristband_id=payload.wristband_id
            )

        try:
            async with self.db.gated():
                async with self.db.session() as session:
                    async with session.begin():
                        wb = await fetch_scoped(
                            session, payload.wristband_id, scope_id
                        )
        except INFRA_ERRORS:
            log.exception("wristband lookup failed scope=%s wristband=%s",
                          scope_id, payload.wristband_id)
            return WristbandResult.fail(
                ErrorCode.INTERNAL_ERROR, wristband_id=payload.wristband_id
            )

        if wb is None:
            return WristbandResult.fail(
                ErrorCode.WRISTBAND_NOT_FOUND,
                wristband_id=payload.wristband_id,
            )
        if (wb.event_id != payload.event_id
                or wb.organizer_id != payload.organizer_id):
            return WristbandResult.fail(ErrorCode.STATUS_INVALID, wb)

        problem = _eligibility(wb, self.clock())
        if problem is not None:
            return WristbandResult.fail(problem, wb)
        return WristbandResult(valid=True, wristband=wb, wristband_id=wb.id)

    async def _count(self, wb: WristbandSnapshot,
                     meta: Dict[str, Optional[str]]) -> WristbandResult:
        now = self.clock()
        try:
            async with self.db.gated():
                async with self.db.session() as session:
                    async with session.begin():
                        n = await self.counter.increment(
                            session, wb.id, wb.max_scans,
                            seed=wb.scan_count, now=now,
                            valid_until=wb.valid_until,
                        )
                        current = await fetch_scoped(
                            session, wb.id, wb.organizer_id
                        )
                        if n is None:
                            # the increment's condition no longer held
                            code = (
                                _eligibility(current, now)
                                if current is not None else None
                            ) or ErrorCode.SCAN_LIMIT_REACHED
                            result = code.value
                        else:
                            result = SCAN_SUCCESS
                        await append_scan_log(session, wb.id, result, now,
                                              **meta)
        except INFRA_ERRORS:
            log.exception("wristband scan write failed wristband=%s", wb.id)
            return WristbandResult.fail(ErrorCode.INTERNAL_ERROR, wb)

        if n is None:
            return WristbandResult.fail(code, current or wb)
        return WristbandResult(valid=True, wristband=current,
                               wristband_id=wb.id)

    async def _record_rejection(self, result: WristbandResult,
                                meta: Dict[str, Optional[str]]) -> None:
        try:
            async with self.db.gated():
                async with self.db.session() as session:
                    async with session.begin():
                        await append_scan_log(
                            session, result.wristband_id,
                            result.error_code.value, self.clock(), **meta
                        )
        except INFRA_ERRORS:
            log.exception("scan log write failed wristband=%s",
                          result.wristband_id)

    @staticmethod
    def _log_rejection(scope_id: str, result: WristbandResult) -> None:
        level = (
            logging.ERROR if result.error_code is ErrorCode.INTERNAL_ERROR
            else logging.WARNING
        )
        log.log(level, "wristband rejected scope=%s wristband=%s code=%s",
                scope_id, result.wristband_id or "-",
                result.error_code.value)
