# ticketgate/lifecycle.py
"""
Upstream and admin driven ticket transitions.

Payment settlement activates tickets (and issues their codes), payment
failure or refund retires them, an admin may undo a check-in, ended
events expire their unused tickets and orders left unpaid for a day are
closed with their reservations. Every status write goes through
`tickets.apply_transition`, so a request whose row has moved on returns
STATUS_INVALID instead of mutating it.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ErrorCode
from .helpers import now_ts
from .infra.sql import Database
from .infra.timings import timeit
from .model import tickets
from .model.audit import (
    CheckInUndone,
    ManualVerificationSuperseded,
    TicketActivated,
    TicketCancelled,
    TicketsExpired,
    TransactionExpired,
    write_audit,
)
from .model.states import (
    PaymentState,
    PaymentStatus,
    QrCodeStatus,
    TicketStatus,
    Transition,
    can_transition,
    payment_sources,
    rule_for,
)
from .model.tickets import TicketSnapshot
from .notify import Notifier
from .token import TokenCodec

log = logging.getLogger(__name__)

HOUR = 3600.0

# unpaid orders are given up on after this long
ORDER_TTL_HOURS = 24


@dataclass(frozen=True)
class LifecycleResult:
    ok: bool
    ticket: Optional[TicketSnapshot] = None
    error_code: Optional[ErrorCode] = None
    # the encrypted code, set on activation
    code: Optional[str] = None

    @classmethod
    def fail(cls, code: ErrorCode,
             ticket: Optional[TicketSnapshot] = None) -> "LifecycleResult":
        return cls(ok=False, ticket=ticket, error_code=code)


@dataclass(frozen=True)
class TransactionResult:
    ok: bool
    transaction_id: str
    status: Optional[PaymentStatus] = None
    tickets: Tuple[TicketSnapshot, ...] = ()
    error_code: Optional[ErrorCode] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "status": self.status.value if self.status else None,
            "tickets": [t.to_dict() for t in self.tickets],
        }


@dataclass(frozen=True)
class ExpireResult:
    expired: int
    event_ids: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {"expired": self.expired, "event_ids": list(self.event_ids)}


@dataclass(frozen=True)
class OrderExpiryResult:
    expired: int
    cancelled_tickets: int = 0
    transaction_ids: Tuple[str, ...] = ()
    errors: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expired": self.expired,
            "cancelled_tickets": self.cancelled_tickets,
            "transaction_ids": list(self.transaction_ids),
            "errors": list(self.errors),
        }


# ------------------------------------------------------------------------------
# Transaction rows (UN-GATED)
# ------------------------------------------------------------------------------

async def fetch_payment_state(db: AsyncSession,
                              transaction_id: str) -> Optional[PaymentState]:
    row = (await db.execute(text("""
        SELECT status, payment_method, awaiting_manual_verification
        FROM transactions WHERE id = :id
    """), {"id": transaction_id})).mappings().first()
    return PaymentState.from_row(row) if row else None


async def set_payment_status(db: AsyncSession, transaction_id: str,
                             target: PaymentStatus, now: float,
                             where: str = "",
                             where_params: Optional[Dict[str, Any]] = None
                             ) -> bool:
    res = await db.execute(text(f"""
        UPDATE transactions
        SET status = :target,
            awaiting_manual_verification = FALSE,
            updated_at = :now
        WHERE id = :id AND status IN :sources {where}
        RETURNING id
    """).bindparams(bindparam("sources", expanding=True)), {
        **(where_params or {}),
        "id": transaction_id,
        "target": target.value,
        "now": now,
        "sources": sorted(s.value for s in payment_sources(target)),
    })
    return res.first() is not None


async def _event_starts_at(db: AsyncSession,
                           event_id: str) -> Optional[float]:
    return (await db.execute(text("""
        SELECT starts_at FROM events WHERE id = :id
    """), {"id": event_id})).scalar_one_or_none()


class TicketLifecycle:
    def __init__(self, db: Database, codec: TokenCodec,
                 notifier: Optional[Notifier] = None,
                 clock=now_ts) -> None:
        self.db = db
        self.codec = codec
        self.notifier = notifier or Notifier(None)
        self.clock = clock

    # ---
    # activation
    # ---

    async def activate(self, ticket_id: str,
                       event_date: Optional[float] = None) -> LifecycleResult:
        now = self.clock()
        async with timeit("lifecycle.activate"):
            async with self.db.gated():
                async with self.db.session() as session:
                    async with session.begin():
                        ticket = await tickets.fetch(session, ticket_id)
                        if ticket is None:
                            return LifecycleResult.fail(
                                ErrorCode.TICKET_NOT_FOUND
                            )
                        if not can_transition(ticket.status,
                                              Transition.ACTIVATE):
                            return LifecycleResult.fail(
                                ErrorCode.STATUS_INVALID, ticket
                            )
                        issued = await self._activate_one(
                            session, ticket, event_date, now
                        )

        if issued is None:
            return LifecycleResult.fail(ErrorCode.STATUS_INVALID, ticket)
        updated, code = issued
        log.info("ticket activated ticket=%s", updated.id)
        await self.notifier.ticket_activated(
            updated.id, updated.transaction_id, code
        )
        return LifecycleResult(ok=True, ticket=updated, code=code)

    async def activate_transaction(self,
                                   transaction_id: str) -> TransactionResult:
        """
        Settle the payment and activate every PENDING ticket of it.

        Safe to repeat: a transaction that is already SUCCESS only picks up
        tickets a previous attempt did not get to.
        """
        now = self.clock()
        issued: List[Tuple[TicketSnapshot, str]] = []
        async with timeit("lifecycle.activate_transaction"):
            async with self.db.gated():
                async with self.db.session() as session:
                    async with session.begin():
                        settled = await set_payment_status(
                            session, transaction_id, PaymentStatus.SUCCESS,
                            now,
                        )
                        if not settled:
                            state = await fetch_payment_state(
                                session, transaction_id
                            )
                            if state is None:
                                return TransactionResult(
                                    ok=False, transaction_id=transaction_id,
                                    error_code=ErrorCode.INVALID_INPUT,
                                )
                            if not state.settled:
                                return TransactionResult(
                                    ok=False, transaction_id=transaction_id,
                                    status=state.status,
                                    error_code=ErrorCode.STATUS_INVALID,
                                )

                        dates: Dict[str, Optional[float]] = {}
                        rows = await tickets.fetch_by_transaction(
                            session, transaction_id
                        )
                        for ticket in rows:
                            if ticket.status is not TicketStatus.PENDING:
                                continue
                            if ticket.event_id not in dates:
                                dates[ticket.event_id] = (
                                    await _event_starts_at(
                                        session, ticket.event_id
                                    )
                                )
                            one = await self._activate_one(
                                session, ticket, dates[ticket.event_id], now
                            )
                            if one is not None:
                                issued.append(one)

        log.info("transaction settled tx=%s activated=%d",
                 transaction_id, len(issued))
        for ticket, code in issued:
            await self.notifier.ticket_activated(
                ticket.id, ticket.transaction_id, code
            )
        return TransactionResult(
            ok=True, transaction_id=transaction_id,
            status=PaymentStatus.SUCCESS,
            tickets=tuple(t for t, _ in issued),
        )

    async def _activate_one(
        self, session: AsyncSession, ticket: TicketSnapshot,
        event_date: Optional[float], now: float,
    ) -> Optional[Tuple[TicketSnapshot, str]]:
        if event_date is None:
            event_date = await _event_starts_at(session, ticket.event_id)
        payload = self.codec.generate(
            ticket_id=ticket.id,
            event_id=ticket.event_id,
            user_id=ticket.user_id,
            transaction_id=ticket.transaction_id,
            ticket_type_id=ticket.ticket_type_id,
            event_date=event_date,
        )
        code = self.codec.encrypt(payload)
        updated = await tickets.apply_transition(
            session, ticket.id, Transition.ACTIVATE, now,
            sets={
                "qr_code_status": QrCodeStatus.ACTIVE.value,
                "qr_code_data": code,
            },
            expected={ticket.status},
        )
        if updated is None:
            return None
        await write_audit(session, TicketActivated(
            ticket_id=ticket.id,
            transaction_id=ticket.transaction_id,
            expires_at=payload.expires_at,
        ), ts=now)
        return updated, code

    # ---
    # cancellation / refund
    # ---

    async def cancel(self, ticket_id: str,
                     reason: str = "cancelled") -> LifecycleResult:
        return await self._retire_ticket(ticket_id, Transition.CANCEL, reason)

    async def refund(self, ticket_id: str,
                     reason: str = "refunded") -> LifecycleResult:
        return await self._retire_ticket(ticket_id, Transition.REFUND, reason)

    async def cancel_transaction(self, transaction_id: str,
                                 reason: str = "cancelled"
                                 ) -> TransactionResult:
        """Reject the order: fail a pending payment, cancel its tickets."""
        return await self._retire_transaction(
            transaction_id, PaymentStatus.FAILED, reason,
        )

    async def refund_transaction(self, transaction_id: str,
                                 reason: str = "refunded"
                                 ) -> TransactionResult:
        return await self._retire_transaction(
            transaction_id, PaymentStatus.REFUNDED, reason,
        )

    async def fail_transaction(self, transaction_id: str,
                               outcome: PaymentStatus = PaymentStatus.FAILED
                               ) -> TransactionResult:
        """
        Record a failed or expired payment only.

        Its PENDING tickets stay where they are; reconciliation deletes
        them and gives the inventory back.
        """
        now = self.clock()
        async with self.db.gated():
            async with self.db.session() as session:
                async with session.begin():
                    changed = await set_payment_status(
                        session, transaction_id, outcome, now
                    )
                    state = await fetch_payment_state(session, transaction_id)

        if state is None:
            return TransactionResult(ok=False, transaction_id=transaction_id,
                                     error_code=ErrorCode.INVALID_INPUT)
        if not changed and state.status is not outcome:
            return TransactionResult(ok=False, transaction_id=transaction_id,
                                     status=state.status,
                                     error_code=ErrorCode.STATUS_INVALID)
        log.info("payment %s tx=%s", outcome.value.lower(), transaction_id)
        return TransactionResult(ok=True, transaction_id=transaction_id,
                                 status=state.status)

    async def _retire_ticket(self, ticket_id: str, transition: Transition,
                             reason: str) -> LifecycleResult:
        now = self.clock()
        async with self.db.gated():
            async with self.db.session() as session:
                async with session.begin():
                    ticket = await tickets.fetch(session, ticket_id)
                    if ticket is None:
                        return LifecycleResult.fail(ErrorCode.TICKET_NOT_FOUND)
                    if not can_transition(ticket.status, transition):
                        return LifecycleResult.fail(
                            ErrorCode.STATUS_INVALID, ticket
                        )
                    updated = await self._retire_one(
                        session, ticket, transition, reason, now
                    )

        if updated is None:
            return LifecycleResult.fail(ErrorCode.STATUS_INVALID, ticket)
        log.info("ticket %s ticket=%s reason=%s",
                 updated.status.value.lower(), updated.id, reason)
        return LifecycleResult(ok=True, ticket=updated)

    async def _retire_transaction(self, transaction_id: str,
                                  outcome: PaymentStatus,
                                  reason: str) -> TransactionResult:
        now = self.clock()
        retired: List[TicketSnapshot] = []
        async with self.db.gated():
            async with self.db.session() as session:
                async with session.begin():
                    changed = await set_payment_status(
                        session, transaction_id, outcome, now
                    )
                    state = await fetch_payment_state(session, transaction_id)
                    if state is None:
                        return TransactionResult(
                            ok=False, transaction_id=transaction_id,
                            error_code=ErrorCode.INVALID_INPUT,
                        )
                    if not changed and state.status is not outcome:
                        return TransactionResult(
                            ok=False, transaction_id=transaction_id,
                            status=state.status,
                            error_code=ErrorCode.STATUS_INVALID,
                        )

                    rows = await tickets.fetch_by_transaction(
                        session, transaction_id
                    )
                    for ticket in rows:
                        transition = Transition.CANCEL
                        if (outcome is PaymentStatus.REFUNDED
                                and can_transition(ticket.status,
                                                   Transition.REFUND)):
                            transition = Transition.REFUND
                        if not can_transition(ticket.status, transition):
                            continue
                        updated = await self._retire_one(
                            session, ticket, transition, reason, now
                        )
                        if updated is not None:
                            retired.append(updated)

        log.info("transaction %s tx=%s tickets=%d",
                 outcome.value.lower(), transaction_id, len(retired))
        return TransactionResult(ok=True, transaction_id=transaction_id,
                                 status=outcome, tickets=tuple(retired))

    async def _retire_one(self, session: AsyncSession,
                          ticket: TicketSnapshot, transition: Transition,
                          reason: str,
                          now: float) -> Optional[TicketSnapshot]:
        updated = await tickets.apply_transition(
            session, ticket.id, transition, now,
            sets={"qr_code_status": QrCodeStatus.REVOKED.value},
            expected={ticket.status},
        )
        if updated is None:
            return None
        if rule_for(transition).restores_inventory:
            await tickets.restore_inventory(session, ticket.ticket_type_id)
        await write_audit(session, TicketCancelled(
            ticket_id=ticket.id,
            previous_status=ticket.status.value,
            reason=reason,
            refunded=transition is Transition.REFUND,
        ), ts=now)
        return updated

    # ---
    # admin
    # ---

    async def undo_check_in(self, ticket_id: str, scope_id: str,
                            actor: str) -> LifecycleResult:
        now = self.clock()
        async with self.db.gated():
            async with self.db.session() as session:
                async with session.begin():
                    ticket = await tickets.fetch_scoped(
                        session, ticket_id, scope_id
                    )
                    if ticket is None:
                        return LifecycleResult.fail(ErrorCode.TICKET_NOT_FOUND)
                    if not ticket.checked_in or not can_transition(
                        ticket.status, Transition.UNDO_CHECK_IN
                    ):
                        return LifecycleResult.fail(
                            ErrorCode.STATUS_INVALID, ticket
                        )
                    updated = await tickets.apply_transition(
                        session, ticket.id, Transition.UNDO_CHECK_IN, now,
                        sets={
                            "checked_in": False,
                            "check_in_time": None,
                            "qr_code_status": QrCodeStatus.ACTIVE.value,
                        },
                        expected={ticket.status},
                        where="AND checked_in = TRUE",
                    )
                    if updated is not None:
                        await write_audit(session, CheckInUndone(
                            ticket_id=ticket.id,
                            scope_id=scope_id,
                            actor=actor,
                            previous_status=ticket.status.value,
                        ), ts=now)

        if updated is None:
            return LifecycleResult.fail(ErrorCode.STATUS_INVALID, ticket)
        log.warning("check-in undone scope=%s ticket=%s actor=%s",
                    scope_id, ticket.id, actor)
        return LifecycleResult(ok=True, ticket=updated)

    async def supersede_manual_verification(
        self, transaction_id: str,
    ) -> TransactionResult:
        now = self.clock()
        async with self.db.gated():
            async with self.db.session() as session:
                async with session.begin():
                    state = await fetch_payment_state(session, transaction_id)
                    if state is None:
                        return TransactionResult(
                            ok=False, transaction_id=transaction_id,
                            error_code=ErrorCode.INVALID_INPUT,
                        )
                    if not state.can_supersede():
                        return TransactionResult(
                            ok=False, transaction_id=transaction_id,
                            status=state.status,
                            error_code=ErrorCode.STATUS_INVALID,
                        )
                    new = state.supersede()
                    row = (await session.execute(text("""
                        UPDATE transactions
                        SET status = :status,
                            awaiting_manual_verification = :awaiting,
                            updated_at = :now
                        WHERE id = :id
                          AND status = 'PENDING'
                          AND awaiting_manual_verification = TRUE
                        RETURNING id
                    """), {
                        "id": transaction_id,
                        "status": new.status.value,
                        "awaiting": new.awaiting_manual_verification,
                        "now": now,
                    })).first()
                    if row is not None:
                        await write_audit(session, ManualVerificationSuperseded(
                            transaction_id=transaction_id,
                            method=state.method,
                        ), ts=now)

        if row is None:
            return TransactionResult(ok=False, transaction_id=transaction_id,
                                     status=state.status,
                                     error_code=ErrorCode.STATUS_INVALID)
        log.info("manual verification superseded tx=%s", transaction_id)
        return TransactionResult(ok=True, transaction_id=transaction_id,
                                 status=new.status)

    # ---
    # time based
    # ---

    async def expire_ended_events(self,
                                  now: Optional[float] = None) -> ExpireResult:
        now = self.clock() if now is None else now
        async with timeit("lifecycle.expire"):
            async with self.db.gated():
                async with self.db.session() as session:
                    async with session.begin():
                        ended = (await session.execute(text("""
                            SELECT id FROM events
                            WHERE ends_at IS NOT NULL AND ends_at < :now
                        """), {"now": now})).scalars().all()
                        if not ended:
                            return ExpireResult(expired=0)

                        updated = await tickets.apply_transition_many(
                            session, Transition.EXPIRE, now,
                            where="event_id IN :event_ids",
                            where_params={"event_ids": list(ended)},
                            sets={
                                "qr_code_status": QrCodeStatus.REVOKED.value,
                            },
                            expanding=("event_ids",),
                        )
                        event_ids = tuple(sorted({t.event_id
                                                  for t in updated}))
                        if updated:
                            await write_audit(session, TicketsExpired(
                                event_ids=event_ids, count=len(updated),
                            ), ts=now)

        if updated:
            log.info("expired %d tickets across %d events",
                     len(updated), len(event_ids))
        return ExpireResult(expired=len(updated), event_ids=event_ids)

    async def count_stale_transactions(
        self, max_age_hours: float = ORDER_TTL_HOURS,
        now: Optional[float] = None,
    ) -> int:
        now = self.clock() if now is None else now
        async with self.db.gated():
            async with self.db.session() as session:
                async with session.begin():
                    rows = await _stale_transactions(
                        session, now - max_age_hours * HOUR
                    )
        return len(rows)

    async def expire_stale_transactions(
        self, max_age_hours: float = ORDER_TTL_HOURS,
        now: Optional[float] = None,
    ) -> OrderExpiryResult:
        """
        Close orders still unpaid after `max_age_hours`: the payment becomes
        EXPIRED and the tickets are cancelled, giving their inventory back.

        Manual payments awaiting verification are left alone. Each order is
        its own transaction; one that fails is reported and the rest go on.
        """
        now = self.clock() if now is None else now
        cutoff = now - max_age_hours * HOUR
        expired: List[str] = []
        errors: List[str] = []
        cancelled = 0
        async with timeit("lifecycle.expire_orders"):
            async with self.db.gated():
                async with self.db.session() as session:
                    async with session.begin():
                        stale = await _stale_transactions(session, cutoff)

            for transaction_id, created_at in stale:
                try:
                    n = await self._expire_order(
                        transaction_id, created_at, cutoff, now
                    )
                except SQLAlchemyError as e:
                    log.exception("order expiry failed tx=%s", transaction_id)
                    errors.append(f"{transaction_id}: {e}")
                    continue
                if n is not None:
                    expired.append(transaction_id)
                    cancelled += n

        if stale:
            log.info("expired %d orders cancelled=%d errors=%d",
                     len(expired), cancelled, len(errors))
        return OrderExpiryResult(
            expired=len(expired),
            cancelled_tickets=cancelled,
            transaction_ids=tuple(expired),
            errors=tuple(errors),
        )

    async def _expire_order(self, transaction_id: str, created_at: float,
                            cutoff: float, now: float) -> Optional[int]:
        async with self.db.gated():
            async with self.db.session() as session:
                async with session.begin():
                    state = await fetch_payment_state(session, transaction_id)
                    if (state is None
                            or state.status is not PaymentStatus.PENDING
                            or state.awaiting_manual_verification):
                        return None
                    # re-checked in the write: a proof of payment may have
                    # arrived since the candidates were read
                    changed = await set_payment_status(
                        session, transaction_id, PaymentStatus.EXPIRED, now,
                        where="AND awaiting_manual_verification = FALSE "
                              "AND created_at < :cutoff",
                        where_params={"cutoff": cutoff},
                    )
                    if not changed:
                        return None

                    retired = 0
                    rows = await tickets.fetch_by_transaction(
                        session, transaction_id
                    )
                    for ticket in rows:
                        if not can_transition(ticket.status,
                                              Transition.CANCEL):
                            continue
                        updated = await self._retire_one(
                            session, ticket, Transition.CANCEL,
                            "order_expired", now,
                        )
                        if updated is not None:
                            retired += 1

                    await write_audit(session, TransactionExpired(
                        transaction_id=transaction_id,
                        age_hours=int(round((now - created_at) / HOUR)),
                        cancelled_tickets=retired,
                    ), ts=now)
        return retired


async def _stale_transactions(db: AsyncSession,
                              cutoff: float) -> List[Tuple[str, float]]:
    rows = (await db.execute(text("""
        SELECT id, created_at FROM transactions
        WHERE status = 'PENDING'
          AND awaiting_manual_verification = FALSE
          AND created_at < :cutoff
        ORDER BY created_at, id
    """), {"cutoff": cutoff})).all()
    return [(r[0], float(r[1])) for r in rows]
