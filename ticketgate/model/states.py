# model/states.py
"""
Ticket lifecycle and payment state, defined once.

Every status write in the repo goes through `TRANSITIONS`: the store turns
a transition into one conditional UPDATE whose WHERE clause is the set of
allowed source states, so a transition can only land if the row is still
where the caller believed it to be.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, FrozenSet, Optional

from ..errors import TransitionError


class TicketStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    USED = "USED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


class QrCodeStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    USED = "USED"
    REVOKED = "REVOKED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


class WristbandStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    REVOKED = "REVOKED"


class Transition(str, Enum):
    ACTIVATE = "ACTIVATE"
    CHECK_IN = "CHECK_IN"
    CANCEL = "CANCEL"
    REFUND = "REFUND"
    UNDO_CHECK_IN = "UNDO_CHECK_IN"
    EXPIRE = "EXPIRE"


@dataclass(frozen=True)
class Rule:
    sources: FrozenSet[TicketStatus]
    target: TicketStatus
    restores_inventory: bool = False
    # scanners may only drive CHECK_IN; everything else is an upstream or
    # admin action
    privileged: bool = False


S = TicketStatus

TRANSITIONS: Dict[Transition, Rule] = {
    # payment confirmed; the encrypted code is written with it
    Transition.ACTIVATE: Rule(frozenset({S.PENDING}), S.ACTIVE),
    Transition.CHECK_IN: Rule(frozenset({S.ACTIVE}), S.USED),
    Transition.CANCEL: Rule(
        frozenset({S.PENDING, S.ACTIVE}), S.CANCELLED,
        restores_inventory=True,
    ),
    Transition.REFUND: Rule(
        frozenset({S.ACTIVE}), S.REFUNDED, restores_inventory=True,
    ),
    Transition.UNDO_CHECK_IN: Rule(
        frozenset({S.ACTIVE, S.USED}), S.ACTIVE, privileged=True,
    ),
    # soft, time based; cleanup's hard delete of PENDING rows is separate
    Transition.EXPIRE: Rule(frozenset({S.PENDING, S.ACTIVE}), S.EXPIRED),
}

TERMINAL: FrozenSet[TicketStatus] = frozenset({
    S.USED, S.CANCELLED, S.REFUNDED, S.EXPIRED,
})

# which transitions the gate-facing code is allowed to request
SCANNER_TRANSITIONS: FrozenSet[Transition] = frozenset({Transition.CHECK_IN})


def rule_for(transition: Transition) -> Rule:
    try:
        return TRANSITIONS[transition]
    except KeyError:
        raise TransitionError(f"unknown transition: {transition!r}")


def can_transition(status: TicketStatus | str,
                   transition: Transition) -> bool:
    return TicketStatus(status) in rule_for(transition).sources


def next_status(status: TicketStatus | str,
                transition: Transition) -> TicketStatus:
    rule = rule_for(transition)
    if TicketStatus(status) not in rule.sources:
        raise TransitionError(
            f"{transition.value} not allowed from {TicketStatus(status).value}"
        )
    return rule.target


def is_terminal(status: TicketStatus | str) -> bool:
    return TicketStatus(status) in TERMINAL


# ----------------------------
# Payment composite state
# ----------------------------
P = PaymentStatus

# settlement outcome -> statuses it may be applied to
PAYMENT_SOURCES: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    P.SUCCESS: frozenset({P.PENDING}),
    P.FAILED: frozenset({P.PENDING}),
    P.EXPIRED: frozenset({P.PENDING}),
    P.REFUNDED: frozenset({P.SUCCESS}),
}


def payment_sources(target: PaymentStatus) -> FrozenSet[PaymentStatus]:
    try:
        return PAYMENT_SOURCES[target]
    except KeyError:
        raise TransitionError(f"no payment transition into {target!r}")


@dataclass(frozen=True)
class PaymentState:
    """
    {status, method, awaiting_manual_verification} as one value.

    "Pending and waiting for a human to look at a bank transfer" is
    `PaymentState(PENDING, "bank_transfer", True)`, never a status of its
    own.
    """
    status: PaymentStatus
    method: Optional[str] = None
    awaiting_manual_verification: bool = False

    @classmethod
    def from_row(cls, row) -> "PaymentState":
        return cls(
            status=PaymentStatus(row["status"]),
            method=row.get("payment_method"),
            awaiting_manual_verification=bool(
                row.get("awaiting_manual_verification")
            ),
        )

    @property
    def settled(self) -> bool:
        return self.status is PaymentStatus.SUCCESS

    @property
    def failed(self) -> bool:
        return self.status in (PaymentStatus.FAILED, PaymentStatus.EXPIRED)

    def can_supersede(self) -> bool:
        return (
            self.status is PaymentStatus.PENDING
            and self.awaiting_manual_verification
        )

    def supersede(self) -> "PaymentState":
        """
        A newer submission replaces one still awaiting manual verification:
        the old one is closed as FAILED and leaves the review queue.
        """
        if not self.can_supersede():
            raise TransitionError(
                f"cannot supersede payment in state {self!r}"
            )
        return replace(
            self,
            status=PaymentStatus.FAILED,
            awaiting_manual_verification=False,
        )
