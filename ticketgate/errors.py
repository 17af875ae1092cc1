from __future__ import annotations
from enum import Enum
from typing import Dict


class ErrorCode(str, Enum):
    INVALID_INPUT = "INVALID_INPUT"
    DECRYPTION_FAILED = "DECRYPTION_FAILED"
    CHECKSUM_MISMATCH = "CHECKSUM_MISMATCH"
    EXPIRED = "EXPIRED"
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    WRISTBAND_NOT_FOUND = "WRISTBAND_NOT_FOUND"
    STATUS_INVALID = "STATUS_INVALID"
    ALREADY_USED = "ALREADY_USED"
    SCAN_LIMIT_REACHED = "SCAN_LIMIT_REACHED"
    OUT_OF_VALIDITY_WINDOW = "OUT_OF_VALIDITY_WINDOW"
    # infrastructure, the only retryable code
    INTERNAL_ERROR = "INTERNAL_ERROR"

    @property
    def retryable(self) -> bool:
        return self is ErrorCode.INTERNAL_ERROR


# What the scanning surface shows per code. Every entry must stay distinct
# so staff at the gate know what to do next.
MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.INVALID_INPUT:
        "Nothing readable was scanned. Scan the code again.",
    ErrorCode.DECRYPTION_FAILED:
        "This code was not issued by us or is damaged. Send the guest to "
        "the box office.",
    ErrorCode.CHECKSUM_MISMATCH:
        "This code has been altered. Do not admit; call a supervisor.",
    ErrorCode.EXPIRED:
        "This code has expired. Send the guest to the box office.",
    ErrorCode.TICKET_NOT_FOUND:
        "No ticket for this code exists for your event.",
    ErrorCode.WRISTBAND_NOT_FOUND:
        "No wristband for this code exists for your event.",
    ErrorCode.STATUS_INVALID:
        "This ticket is not valid for entry (unpaid, cancelled or "
        "refunded).",
    ErrorCode.ALREADY_USED:
        "This ticket has already been used for entry.",
    ErrorCode.SCAN_LIMIT_REACHED:
        "This wristband has reached its maximum number of scans.",
    ErrorCode.OUT_OF_VALIDITY_WINDOW:
        "This wristband is not valid at this time.",
    ErrorCode.INTERNAL_ERROR:
        "The scanner could not reach the server. Please scan again.",
}


def message_for(code: ErrorCode | None) -> str:
    if code is None:
        return "Admitted."
    return MESSAGES[code]


class TicketGateError(Exception):
    pass


class ConfigurationError(TicketGateError):
    pass


class TransitionError(TicketGateError):
    """Raised when code asks the state table for a transition it lacks."""
