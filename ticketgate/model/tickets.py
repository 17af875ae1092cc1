# model/tickets.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import to_iso
from .states import Transition, TicketStatus, rule_for


@dataclass(frozen=True)
class TicketSnapshot:
    id: str
    status: TicketStatus
    event_id: str
    ticket_type_id: str
    transaction_id: str
    user_id: str
    checked_in: bool
    check_in_time: Optional[float]
    qr_code_status: str
    created_at: float

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TicketSnapshot":
        return cls(
            id=row["id"],
            status=TicketStatus(row["status"]),
            event_id=row["event_id"],
            ticket_type_id=row["ticket_type_id"],
            transaction_id=row["transaction_id"],
            user_id=row["user_id"],
            checked_in=bool(row["checked_in"]),
            check_in_time=row["check_in_time"],
            qr_code_status=row["qr_code_status"],
            created_at=float(row["created_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "event_id": self.event_id,
            "ticket_type_id": self.ticket_type_id,
            "transaction_id": self.transaction_id,
            "user_id": self.user_id,
            "checked_in": self.checked_in,
            "check_in_time": to_iso(self.check_in_time),
            "qr_code_status": self.qr_code_status,
            "created_at": to_iso(self.created_at),
        }


_COLS = """
    t.id, t.status, t.event_id, t.ticket_type_id, t.transaction_id,
    t.user_id, t.checked_in, t.check_in_time, t.qr_code_status,
    t.created_at
"""

_RETURNING = """
    id, status, event_id, ticket_type_id, transaction_id, user_id,
    checked_in, check_in_time, qr_code_status, created_at
"""


# ------------------------------------------------------------------------------
# UN-GATED building blocks: callers hold the gate and the transaction
# ------------------------------------------------------------------------------

async def fetch_scoped(db: AsyncSession, ticket_id: str,
                       scope_id: str) -> Optional[TicketSnapshot]:
    row = (await db.execute(text(f"""
        SELECT {_COLS}
        FROM tickets AS t
        JOIN events AS e ON e.id = t.event_id
        WHERE t.id = :id AND e.organizer_id = :scope
    """), {"id": ticket_id, "scope": scope_id})).mappings().first()
    return TicketSnapshot.from_row(row) if row else None


async def fetch(db: AsyncSession, ticket_id: str) -> Optional[TicketSnapshot]:
    row = (await db.execute(text(f"""
        SELECT {_COLS} FROM tickets AS t WHERE t.id = :id
    """), {"id": ticket_id})).mappings().first()
    return TicketSnapshot.from_row(row) if row else None


async def fetch_by_transaction(db: AsyncSession,
                               transaction_id: str) -> List[TicketSnapshot]:
    rows = (await db.execute(text(f"""
        SELECT {_COLS} FROM tickets AS t
        WHERE t.transaction_id = :tx
        ORDER BY t.created_at, t.id
    """), {"tx": transaction_id})).mappings().all()
    return [TicketSnapshot.from_row(r) for r in rows]


async def apply_transition(
    db: AsyncSession,
    ticket_id: str,
    transition: Transition,
    now: float,
    sets: Optional[Dict[str, Any]] = None,
    expected: Optional[Iterable[TicketStatus]] = None,
    where: str = "",
) -> Optional[TicketSnapshot]:
    """
    The only way a ticket's status changes.

    One UPDATE, conditional on the row still being in an allowed source
    state (optionally narrowed by `expected`, plus an extra `where`
    fragment for predicates such as `checked_in = FALSE`). Returns the
    updated row, or None if the condition no longer held.
    """
    prepared = _prepare(transition, now, sets, expected)
    if prepared is None:
        return None
    assignments, params = prepared
    params["id"] = ticket_id

    stmt = text(f"""
        UPDATE tickets
        SET {assignments}
        WHERE id = :id AND status IN :sources {where}
        RETURNING {_RETURNING}
    """).bindparams(bindparam("sources", expanding=True))

    row = (await db.execute(stmt, params)).mappings().first()
    return TicketSnapshot.from_row(row) if row else None


async def apply_transition_many(
    db: AsyncSession,
    transition: Transition,
    now: float,
    where: str,
    where_params: Dict[str, Any],
    sets: Optional[Dict[str, Any]] = None,
    expanding: Iterable[str] = (),
) -> List[TicketSnapshot]:
    """Bulk form of apply_transition for rows selected by `where`."""
    prepared = _prepare(transition, now, sets, None)
    if prepared is None:
        return []
    assignments, params = prepared
    params.update(where_params)

    stmt = text(f"""
        UPDATE tickets
        SET {assignments}
        WHERE status IN :sources AND ({where})
        RETURNING {_RETURNING}
    """).bindparams(
        bindparam("sources", expanding=True),
        *[bindparam(name, expanding=True) for name in expanding],
    )
    rows = (await db.execute(stmt, params)).mappings().all()
    return [TicketSnapshot.from_row(r) for r in rows]


def _prepare(transition: Transition, now: float,
             sets: Optional[Dict[str, Any]],
             expected: Optional[Iterable[TicketStatus]]):
    rule = rule_for(transition)
    sources = set(rule.sources)
    if expected is not None:
        sources &= {TicketStatus(s) for s in expected}
    if not sources:
        return None

    params: Dict[str, Any] = {
        "target": rule.target.value,
        "now": now,
        "sources": sorted(s.value for s in sources),
    }
    assignments = ["status = :target", "updated_at = :now"]
    for i, (column, value) in enumerate((sets or {}).items()):
        assignments.append(f"{column} = :set_{i}")
        params[f"set_{i}"] = value
    return ", ".join(assignments), params


async def restore_inventory(db: AsyncSession, ticket_type_id: str,
                            qty: int = 1) -> None:
    await db.execute(text("""
        UPDATE ticket_types SET available = available + :qty
        WHERE id = :id
    """), {"id": ticket_type_id, "qty": qty})

