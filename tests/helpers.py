from __future__ import annotations
from typing import Any, Dict, Optional

from sqlalchemy import text

from ticketgate.helpers import new_id, now_ts
from ticketgate.infra.sql import Database
from ticketgate.model.db import (
    BuyerInfo,
    Event,
    OrderItem,
    Payment,
    Ticket,
    TicketHolder,
    TicketType,
    Transaction,
    Wristband,
)
from ticketgate.token import TokenCodec

HOUR = 3600.0

KEY = "test-encryption-key-0123456789abcdef"
CHECKSUM_SECRET = "test-checksum-secret"


class Seed:
    """Writes fixture rows through the ORM, one transaction per call."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def add(self, *rows) -> None:
        async with self.db.session() as session:
            async with session.begin():
                session.add_all(rows)

    async def event(self, organizer_id: str = "org_1",
                    starts_at: Optional[float] = None,
                    ends_at: Optional[float] = None) -> Event:
        evt = Event(id=new_id("evt_"), organizer_id=organizer_id,
                    title="Main Stage", starts_at=starts_at, ends_at=ends_at)
        await self.add(evt)
        return evt

    async def ticket_type(self, event: Event,
                          available: int = 10) -> TicketType:
        tt = TicketType(id=new_id("tt_"), event_id=event.id, name="GA",
                        capacity=100, available=available)
        await self.add(tt)
        return tt

    async def transaction(self, event: Event, status: str = "PENDING",
                          user_id: str = "user_1",
                          payment_method: Optional[str] = None,
                          awaiting: bool = False,
                          age_hours: float = 0.0) -> Transaction:
        tx = Transaction(
            id=new_id("tx_"), event_id=event.id, user_id=user_id,
            amount=5000, status=status, payment_method=payment_method,
            awaiting_manual_verification=awaiting,
            created_at=now_ts() - age_hours * HOUR,
        )
        await self.add(tx)
        return tx

    async def ticket(self, tx: Transaction, tt: TicketType,
                     status: str = "PENDING", age_hours: float = 0.0,
                     with_holder: bool = False) -> Ticket:
        t = Ticket(
            id=new_id("tkt_"), status=status, event_id=tx.event_id,
            ticket_type_id=tt.id, transaction_id=tx.id, user_id=tx.user_id,
            checked_in=status == "USED",
            check_in_time=now_ts() if status == "USED" else None,
            created_at=now_ts() - age_hours * HOUR,
        )
        await self.add(t)
        if with_holder:
            await self.add(TicketHolder(id=new_id("th_"), ticket_id=t.id,
                                        full_name="Ada Guest"))
        return t

    async def active_ticket(self, codec: TokenCodec, tx: Transaction,
                            tt: TicketType,
                            event_date: Optional[float] = None):
        """An ACTIVE ticket with its code stored; returns (ticket, code)."""
        t = await self.ticket(tx, tt, status="ACTIVE")
        code = codec.encrypt(codec.generate(
            ticket_id=t.id, event_id=t.event_id, user_id=t.user_id,
            transaction_id=t.transaction_id, ticket_type_id=t.ticket_type_id,
            event_date=event_date,
        ))
        await self.execute(
            "UPDATE tickets SET qr_code_data = :c, qr_code_status = 'ACTIVE' "
            "WHERE id = :id", {"c": code, "id": t.id},
        )
        return t, code

    async def order_rows(self, tx: Transaction) -> None:
        await self.add(
            BuyerInfo(id=new_id("bi_"), transaction_id=tx.id,
                      full_name="Ada Buyer"),
            OrderItem(id=new_id("oi_"), order_id=tx.id,
                      ticket_type_id="tt_x", qty=1),
            Payment(id=new_id("pay_"), order_id=tx.id, amount=5000),
        )

    async def wristband(self, event: Event, max_scans: Optional[int] = 3,
                        scan_count: int = 0, status: str = "PENDING",
                        valid_from: Optional[float] = None,
                        valid_until: Optional[float] = None) -> Wristband:
        wb = Wristband(
            id=new_id("wb_"), event_id=event.id,
            organizer_id=event.organizer_id, name="Crew",
            max_scans=max_scans, scan_count=scan_count, status=status,
            valid_from=valid_from, valid_until=valid_until,
            created_at=now_ts(),
        )
        await self.add(wb)
        return wb

    # --- reads ---

    async def execute(self, sql: str, params: Optional[Dict] = None) -> None:
        async with self.db.session() as session:
            async with session.begin():
                await session.execute(text(sql), params or {})

    async def scalar(self, sql: str, params: Optional[Dict] = None) -> Any:
        async with self.db.session() as session:
            return (await session.execute(text(sql), params or {})).scalar()

    async def row(self, sql: str, params: Optional[Dict] = None):
        async with self.db.session() as session:
            return (await session.execute(
                text(sql), params or {}
            )).mappings().first()

    async def ticket_status(self, ticket_id: str) -> Optional[str]:
        return await self.scalar("SELECT status FROM tickets WHERE id = :id",
                                 {"id": ticket_id})

    async def audit_actions(self):
        async with self.db.session() as session:
            rows = (await session.execute(text(
                "SELECT action FROM audit_logs ORDER BY id"
            ))).scalars().all()
        return list(rows)
