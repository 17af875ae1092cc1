# model/audit.py
"""
Audit trail entries.

One frozen dataclass per action; the union `AuditEvent` is what the rest
of the code passes around. The `action` tag and the class are 1:1, so the
stored payload of an action always has the same shape.
"""

from __future__ import annotations
from dataclasses import asdict, dataclass, field
from typing import ClassVar, Dict, List, Optional, Tuple, Type, Union

import orjson
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts


@dataclass(frozen=True)
class TicketActivated:
    action: ClassVar[str] = "TICKET_ACTIVATED"
    entity: ClassVar[str] = "Ticket"
    ticket_id: str
    transaction_id: str
    expires_at: Optional[str] = None


@dataclass(frozen=True)
class CheckInSucceeded:
    action: ClassVar[str] = "CHECK_IN_SUCCESS"
    entity: ClassVar[str] = "Ticket"
    ticket_id: str
    scope_id: str
    event_id: str
    check_in_time: float


@dataclass(frozen=True)
class CheckInUndone:
    action: ClassVar[str] = "CHECK_IN_UNDONE"
    entity: ClassVar[str] = "Ticket"
    ticket_id: str
    scope_id: str
    actor: str
    previous_status: str


@dataclass(frozen=True)
class TicketCancelled:
    action: ClassVar[str] = "TICKET_CANCELLED"
    entity: ClassVar[str] = "Ticket"
    ticket_id: str
    previous_status: str
    reason: str
    refunded: bool = False


@dataclass(frozen=True)
class TicketsExpired:
    action: ClassVar[str] = "TICKETS_EXPIRED"
    entity: ClassVar[str] = "Ticket"
    event_ids: Tuple[str, ...]
    count: int


@dataclass(frozen=True)
class TransactionExpired:
    action: ClassVar[str] = "TRANSACTION_EXPIRED"
    entity: ClassVar[str] = "Transaction"
    transaction_id: str
    age_hours: int
    cancelled_tickets: int


@dataclass(frozen=True)
class ManualVerificationSuperseded:
    action: ClassVar[str] = "MANUAL_VERIFICATION_SUPERSEDED"
    entity: ClassVar[str] = "Transaction"
    transaction_id: str
    method: Optional[str]


@dataclass(frozen=True)
class CleanupStarted:
    action: ClassVar[str] = "TICKET_CLEANUP_START"
    entity: ClassVar[str] = "Ticket"
    ticket_count: int
    transaction_count: int
    ticket_type_count: int
    cutoff: str
    options: Dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class TicketDeleted:
    action: ClassVar[str] = "TICKET_DELETED"
    entity: ClassVar[str] = "Ticket"
    ticket_id: str
    ticket_type_id: str
    transaction_id: str
    transaction_status: str
    age_hours: int
    reason: str = "PENDING_CLEANUP"


@dataclass(frozen=True)
class CleanupCompleted:
    action: ClassVar[str] = "TICKET_CLEANUP_COMPLETE"
    entity: ClassVar[str] = "Ticket"
    deleted_tickets: int
    affected_transactions: int
    affected_ticket_types: int
    execution_time_ms: int


@dataclass(frozen=True)
class CleanupFailed:
    action: ClassVar[str] = "TICKET_CLEANUP_ERROR"
    entity: ClassVar[str] = "Ticket"
    error: str
    execution_time_ms: int
    options: Dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class OrphanedTransactionsDeleted:
    action: ClassVar[str] = "ORPHANED_TRANSACTIONS_CLEANUP"
    entity: ClassVar[str] = "Transaction"
    deleted_count: int
    transaction_ids: List[str] = field(default_factory=list)


AuditEvent = Union[
    TicketActivated,
    CheckInSucceeded,
    CheckInUndone,
    TicketCancelled,
    TicketsExpired,
    TransactionExpired,
    ManualVerificationSuperseded,
    CleanupStarted,
    TicketDeleted,
    CleanupCompleted,
    CleanupFailed,
    OrphanedTransactionsDeleted,
]

EVENT_TYPES: Dict[str, Type] = {
    cls.action: cls for cls in AuditEvent.__args__  # type: ignore[attr-defined]
}


def _entity_id(evt: AuditEvent) -> Optional[str]:
    for name in ("ticket_id", "transaction_id"):
        value = getattr(evt, name, None)
        if value:
            return value
    return None


async def write_audit(db: AsyncSession, evt: AuditEvent,
                      ts: Optional[float] = None) -> None:
    # UN-GATED: callers are already inside their gate + transaction
    await db.execute(text("""
        INSERT INTO audit_logs(action, entity, entity_id, payload, created_at)
        VALUES (:action, :entity, :entity_id, :payload, :created_at)
    """), {
        "action": evt.action,
        "entity": evt.entity,
        "entity_id": _entity_id(evt),
        "payload": orjson.dumps(asdict(evt)).decode(),
        "created_at": now_ts() if ts is None else ts,
    })


def load_event(action: str, payload: str) -> AuditEvent:
    cls = EVENT_TYPES[action]
    data = orjson.loads(payload)
    if "event_ids" in data:
        data["event_ids"] = tuple(data["event_ids"])
    return cls(**data)
