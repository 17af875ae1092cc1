# ticketgate/verification.py
"""
Ticket verification and single-use check-in.

validate() binds a scanned code to a live ticket of the requesting
organizer. check_in() then admits it with one conditional UPDATE; whoever
loses a concurrent race sees ALREADY_USED.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from .errors import ErrorCode
from .helpers import now_ts
from .infra.sql import Database
from .infra.timings import timeit
from .model import tickets
from .model.audit import CheckInSucceeded, write_audit
from .model.states import QrCodeStatus, TicketStatus, Transition
from .model.tickets import TicketSnapshot
from .token import TokenCodec, TokenPayload

log = logging.getLogger(__name__)

# infrastructure failures we turn into INTERNAL_ERROR at this boundary
# ValueError: a stored status the enums do not know
INFRA_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError, ValueError)


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    ticket: Optional[TicketSnapshot] = None
    error_code: Optional[ErrorCode] = None
    # id claimed by the code, known once it decrypts; for logs only
    ticket_id: Optional[str] = None

    @classmethod
    def fail(cls, code: ErrorCode,
             ticket: Optional[TicketSnapshot] = None,
             ticket_id: Optional[str] = None) -> "VerificationResult":
        if ticket is not None:
            ticket_id = ticket.id
        return cls(valid=False, ticket=ticket, error_code=code,
                   ticket_id=ticket_id)


def _matches(ticket: TicketSnapshot, payload: TokenPayload) -> bool:
    return (
        ticket.event_id == payload.event_id
        and ticket.transaction_id == payload.transaction_id
        and ticket.user_id == payload.user_id
        and ticket.ticket_type_id == payload.ticket_type_id
    )


class VerificationEngine:
    def __init__(self, db: Database, codec: TokenCodec, clock=now_ts) -> None:
        self.db = db
        self.codec = codec
        self.clock = clock

    async def validate(self, code: Any, scope_id: str) -> VerificationResult:
        async with timeit("verify.validate"):
            result = await self._validate(code, scope_id)
        if not result.valid:
            self._log_rejection(scope_id, result)
        return result

    async def check_in(self, code: Any, scope_id: str) -> VerificationResult:
        async with timeit("verify.check_in"):
            result = await self._validate(code, scope_id)
            if result.valid:
                result = await self._admit(result.ticket, scope_id)

        if result.valid:
            log.info("check-in ok scope=%s ticket=%s",
                     scope_id, result.ticket.id)
        else:
            self._log_rejection(scope_id, result)
        return result

    # ---

    async def _validate(self, code: Any,
                        scope_id: str) -> VerificationResult:
        if not scope_id:
            return VerificationResult.fail(ErrorCode.INVALID_INPUT)

        decoded = self.codec.decrypt(code)
        if not decoded.ok:
            return VerificationResult.fail(decoded.error)
        payload = decoded.payload
        if not isinstance(payload, TokenPayload):
            # a wristband code presented as a ticket
            return VerificationResult.fail(ErrorCode.DECRYPTION_FAILED)

        problem = self.codec.check_structure(payload, now=self.clock())
        if problem is not None:
            return VerificationResult.fail(
                problem, ticket_id=payload.ticket_id
            )

        try:
            async with self.db.gated():
                async with self.db.session() as session:
                    async with session.begin():
                        ticket = await tickets.fetch_scoped(
                            session, payload.ticket_id, scope_id
                        )
        except INFRA_ERRORS:
            log.exception("ticket lookup failed scope=%s ticket=%s",
                          scope_id, payload.ticket_id)
            return VerificationResult.fail(
                ErrorCode.INTERNAL_ERROR, ticket_id=payload.ticket_id
            )

        if ticket is None:
            return VerificationResult.fail(
                ErrorCode.TICKET_NOT_FOUND, ticket_id=payload.ticket_id
            )

        # a used ticket is reported as used, not as "wrong status", so a
        # re-scan at the gate says what actually happened
        if ticket.checked_in or ticket.status is TicketStatus.USED:
            return VerificationResult.fail(ErrorCode.ALREADY_USED, ticket)

        if ticket.status is not TicketStatus.ACTIVE:
            return VerificationResult.fail(ErrorCode.STATUS_INVALID, ticket)

        if not _matches(ticket, payload):
            return VerificationResult.fail(ErrorCode.STATUS_INVALID, ticket)

        return VerificationResult(valid=True, ticket=ticket,
                                  ticket_id=ticket.id)

    async def _admit(self, ticket: TicketSnapshot,
                     scope_id: str) -> VerificationResult:
        now = self.clock()
        try:
            async with self.db.gated():
                async with self.db.session() as session:
                    async with session.begin():
                        updated = await tickets.apply_transition(
                            session,
                            ticket.id,
                            Transition.CHECK_IN,
                            now,
                            sets={
                                "checked_in": True,
                                "check_in_time": now,
                                "qr_code_status": QrCodeStatus.USED.value,
                            },
                            where="AND checked_in = FALSE",
                        )
                        if updated is not None:
                            await write_audit(session, CheckInSucceeded(
                                ticket_id=ticket.id,
                                scope_id=scope_id,
                                event_id=ticket.event_id,
                                check_in_time=now,
                            ), ts=now)
        except INFRA_ERRORS:
            log.exception("check-in write failed scope=%s ticket=%s",
                          scope_id, ticket.id)
            return VerificationResult.fail(ErrorCode.INTERNAL_ERROR, ticket)

        if updated is None:
            # lost the race: someone else admitted this ticket in between
            return VerificationResult.fail(ErrorCode.ALREADY_USED, ticket)
        return VerificationResult(valid=True, ticket=updated,
                                  ticket_id=updated.id)

    @staticmethod
    def _log_rejection(scope_id: str, result: VerificationResult) -> None:
        ticket_id = result.ticket_id or "-"
        level = (
            logging.ERROR if result.error_code is ErrorCode.INTERNAL_ERROR
            else logging.WARNING
        )
        log.log(level, "ticket rejected scope=%s ticket=%s code=%s",
                scope_id, ticket_id, result.error_code.value)
