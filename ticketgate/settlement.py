from abc import ABC, abstractmethod
from typing import Optional, Tuple
from fastapi import HTTPException
import hmac
import hashlib
import base64

import orjson

SIGNATURE_HEADER = "x-settlement-signature"

# event type suffix -> what the lifecycle does with the transaction
KINDS = ("succeeded", "failed", "expired", "refunded")


def sign(secret: str, payload: bytes) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# Settlement Adapter Interface
# ----------------------------
class SettlementAdapter(ABC):
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "expired" | "refunded"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (transaction_id, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...


# ----------------------------
# HMAC signed webhooks
# ----------------------------
class SignedWebhooks(SettlementAdapter):
    """
    The payment side POSTs `{type: "payment.<kind>", transaction_id,
    idempotency_key}` and signs the raw body with the shared secret,
    base64(HMAC-SHA256) in the x-settlement-signature header.
    """

    def __init__(self, secret: str) -> None:
        self.secret = secret

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        expected = sign(self.secret, payload)
        if not sig or not hmac.compare_digest(expected.encode(), sig.encode()):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            event = orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(event, dict):
            raise HTTPException(status_code=400, detail="Invalid event")
        return event

    def event_kind(self, event: dict) -> str:
        return str(event.get("type", "")).split(".")[-1]

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                event.get("transaction_id", ""),
                event.get("idempotency_key")
        )
