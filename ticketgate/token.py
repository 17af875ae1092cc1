# ticketgate/token.py
"""
Token codec for ticket and wristband codes.

Wire format of a code:  "<ivHex>:<cipherHex>"
  - iv      : 12 random bytes, fresh on every encrypt()
  - cipher  : AES-256-GCM over the orjson-encoded payload (tag appended)

The payload also carries an HMAC-SHA256 checksum over its own identity
fields. GCM already rejects any modified ciphertext; the checksum binds the
fields to the server secret so a payload re-encrypted with altered fields
(e.g. by someone holding an old key) is still caught.
"""

from __future__ import annotations
import hashlib
import hmac
import os
import re
from dataclasses import dataclass, replace, fields
from typing import Any, ClassVar, Dict, Optional, Tuple, Union

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .config import check_key
from .errors import ErrorCode
from .helpers import now_ts, to_iso, from_iso

NONCE_SIZE = 12
TAG_SIZE = 16
AAD = b"ticketgate:v1"

KIND_TICKET = "ticket"
KIND_WRISTBAND = "wristband"

# expiry derived from the event date: the later of these two
EXPIRY_AFTER_EVENT_SECONDS = 24 * 3600
MIN_VALIDITY_SECONDS = 7 * 24 * 3600

_HEX = re.compile(r"\A(?:[0-9a-fA-F]{2})+\Z")


# ----------------------------
# Payloads
# ----------------------------
@dataclass(frozen=True)
class TokenPayload:
    kind: ClassVar[str] = KIND_TICKET
    required: ClassVar[Tuple[str, ...]] = (
        "ticket_id", "event_id", "user_id", "transaction_id",
        "ticket_type_id", "issued_at", "checksum",
    )
    wire_names: ClassVar[Dict[str, str]] = {
        "ticket_id": "ticketId",
        "event_id": "eventId",
        "user_id": "userId",
        "transaction_id": "transactionId",
        "ticket_type_id": "ticketTypeId",
        "issued_at": "issuedAt",
        "expires_at": "expiresAt",
        "checksum": "checksum",
    }

    ticket_id: Optional[str]
    event_id: Optional[str]
    user_id: Optional[str]
    transaction_id: Optional[str]
    ticket_type_id: Optional[str]
    issued_at: Optional[str]
    expires_at: Optional[str] = None
    checksum: Optional[str] = None


@dataclass(frozen=True)
class WristbandPayload:
    kind: ClassVar[str] = KIND_WRISTBAND
    required: ClassVar[Tuple[str, ...]] = (
        "wristband_id", "event_id", "organizer_id", "issued_at", "checksum",
    )
    wire_names: ClassVar[Dict[str, str]] = {
        "wristband_id": "wristbandId",
        "event_id": "eventId",
        "organizer_id": "organizerId",
        "name": "name",
        "valid_from": "validFrom",
        "valid_until": "validUntil",
        "max_scans": "maxScans",
        "issued_at": "issuedAt",
        "checksum": "checksum",
    }

    wristband_id: Optional[str]
    event_id: Optional[str]
    organizer_id: Optional[str]
    name: Optional[str]
    valid_from: Optional[str]
    valid_until: Optional[str]
    max_scans: Optional[int]
    issued_at: Optional[str]
    checksum: Optional[str] = None


Payload = Union[TokenPayload, WristbandPayload]
_PAYLOAD_TYPES = {cls.kind: cls for cls in (TokenPayload, WristbandPayload)}


def to_wire(payload: Payload) -> Dict[str, Any]:
    out: Dict[str, Any] = {"kind": payload.kind}
    for f in fields(payload):
        value = getattr(payload, f.name)
        if value is not None:
            out[payload.wire_names[f.name]] = value
    return out


def from_wire(wire: Dict[str, Any]) -> Optional[Payload]:
    cls = _PAYLOAD_TYPES.get(wire.get("kind"))
    if cls is None:
        return None
    kw = {name: wire.get(wname) for name, wname in cls.wire_names.items()}
    return cls(**kw)


@dataclass(frozen=True)
class DecodeResult:
    payload: Optional[Payload] = None
    error: Optional[ErrorCode] = None

    @property
    def ok(self) -> bool:
        return self.payload is not None


def _failed(code: ErrorCode = ErrorCode.DECRYPTION_FAILED) -> DecodeResult:
    return DecodeResult(error=code)


def _derive(material: bytes, info: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(), length=32, salt=None, info=info,
    ).derive(material)


# ----------------------------
# Codec
# ----------------------------
class TokenCodec:
    def __init__(self, key: str, checksum_secret: Optional[str] = None,
                 clock=now_ts) -> None:
        check_key(key)
        material = key.encode()
        self._aead = AESGCM(_derive(material, b"ticketgate token cipher"))
        if checksum_secret:
            self._mac_key = checksum_secret.encode()
        else:
            self._mac_key = _derive(material, b"ticketgate token checksum")
        self._clock = clock

    # --- generate ---

    def generate(
        self,
        ticket_id: str,
        event_id: str,
        user_id: str,
        transaction_id: str,
        ticket_type_id: str,
        event_date: Optional[float] = None,
    ) -> TokenPayload:
        now = self._clock()
        expires_at = None
        if event_date is not None:
            expires_at = to_iso(max(
                event_date + EXPIRY_AFTER_EVENT_SECONDS,
                now + MIN_VALIDITY_SECONDS,
            ))
        return self.sign(TokenPayload(
            ticket_id=ticket_id,
            event_id=event_id,
            user_id=user_id,
            transaction_id=transaction_id,
            ticket_type_id=ticket_type_id,
            issued_at=to_iso(now),
            expires_at=expires_at,
        ))

    def generate_wristband(
        self,
        wristband_id: str,
        event_id: str,
        organizer_id: str,
        name: str,
        valid_from: Optional[float] = None,
        valid_until: Optional[float] = None,
        max_scans: Optional[int] = None,
    ) -> WristbandPayload:
        return self.sign(WristbandPayload(
            wristband_id=wristband_id,
            event_id=event_id,
            organizer_id=organizer_id,
            name=name,
            valid_from=to_iso(valid_from),
            valid_until=to_iso(valid_until),
            max_scans=max_scans,
            issued_at=to_iso(self._clock()),
        ))

    def checksum(self, payload: Payload) -> str:
        # canonical ordering = dataclass field order, checksum excluded
        values = [payload.kind] + [
            getattr(payload, f.name) for f in fields(payload)
            if f.name != "checksum"
        ]
        canonical = orjson.dumps(values)
        return hmac.new(self._mac_key, canonical, hashlib.sha256).hexdigest()

    def sign(self, payload: Payload) -> Payload:
        return replace(payload, checksum=self.checksum(payload))

    # --- encrypt / decrypt ---

    def encrypt(self, payload: Payload) -> str:
        nonce = os.urandom(NONCE_SIZE)
        cipher = self._aead.encrypt(nonce, orjson.dumps(to_wire(payload)), AAD)
        return f"{nonce.hex()}:{cipher.hex()}"

    def decrypt(self, code: Any) -> DecodeResult:
        if not isinstance(code, str) or not code.strip():
            return _failed(ErrorCode.INVALID_INPUT)

        parts = code.strip().split(":")
        if len(parts) != 2:
            return _failed()
        iv_hex, cipher_hex = parts
        if not _HEX.match(iv_hex) or not _HEX.match(cipher_hex):
            return _failed()

        nonce = bytes.fromhex(iv_hex)
        cipher = bytes.fromhex(cipher_hex)
        if len(nonce) != NONCE_SIZE or len(cipher) <= TAG_SIZE:
            return _failed()

        try:
            raw = self._aead.decrypt(nonce, cipher, AAD)
        except InvalidTag:
            return _failed()

        try:
            wire = orjson.loads(raw)
        except orjson.JSONDecodeError:
            return _failed()
        if not isinstance(wire, dict):
            return _failed()

        payload = from_wire(wire)
        if payload is None:
            return _failed()
        return DecodeResult(payload=payload)

    def detect_kind(self, code: Any) -> Optional[str]:
        decoded = self.decrypt(code)
        return decoded.payload.kind if decoded.ok else None

    # --- structure ---

    def check_structure(self, payload: Payload,
                        now: Optional[float] = None) -> Optional[ErrorCode]:
        for name in payload.required:
            value = getattr(payload, name)
            if not isinstance(value, str) or not value:
                return ErrorCode.CHECKSUM_MISMATCH

        expected = self.checksum(payload).encode()
        if not hmac.compare_digest(expected, payload.checksum.encode()):
            return ErrorCode.CHECKSUM_MISMATCH

        if isinstance(payload, WristbandPayload):
            if payload.max_scans is not None and (
                not isinstance(payload.max_scans, int)
                or payload.max_scans <= 0
            ):
                return ErrorCode.CHECKSUM_MISMATCH
            return None

        if payload.expires_at is not None:
            try:
                expires = from_iso(payload.expires_at)
            except (TypeError, ValueError):
                return ErrorCode.CHECKSUM_MISMATCH
            now = self._clock() if now is None else now
            if expires is None or expires <= now:
                return ErrorCode.EXPIRED
        return None

    def validate_structure(self, payload: Payload,
                           now: Optional[float] = None) -> bool:
        return self.check_structure(payload, now) is None
