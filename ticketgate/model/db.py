from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    ForeignKey,
    Index,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    id = Column(String, primary_key=True)
    # the scope/tenant boundary for every scan
    organizer_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False, default="")
    starts_at = Column(Float, nullable=True)
    ends_at = Column(Float, nullable=True)


class TicketType(Base):
    __tablename__ = "ticket_types"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    name = Column(String, nullable=False, default="")
    capacity = Column(Integer, nullable=False, default=0)
    available = Column(Integer, nullable=False, default=0)


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    user_id = Column(String, nullable=False)
    amount = Column(Integer, nullable=False, default=0)  # cents

    # PENDING | SUCCESS | FAILED | EXPIRED | REFUNDED
    status = Column(String, nullable=False, default="PENDING")
    # e.g. card | bank_transfer | manual
    payment_method = Column(String, nullable=True)
    awaiting_manual_verification = Column(
        Boolean, nullable=False, default=False
    )
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)


class Ticket(Base):
    __tablename__ = "tickets"
    id = Column(String, primary_key=True)

    # PENDING | ACTIVE | USED | CANCELLED | EXPIRED | REFUNDED
    status = Column(String, nullable=False, default="PENDING")
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    ticket_type_id = Column(
        String, ForeignKey("ticket_types.id"), nullable=False
    )
    transaction_id = Column(
        String, ForeignKey("transactions.id"), nullable=False
    )
    user_id = Column(String, nullable=False)

    checked_in = Column(Boolean, nullable=False, default=False)
    check_in_time = Column(Float, nullable=True)

    # PENDING | ACTIVE | USED | REVOKED
    qr_code_status = Column(String, nullable=False, default="PENDING")
    qr_code_data = Column(Text, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("tickets_status_created_idx", "status", "created_at"),
        Index("tickets_transaction_idx", "transaction_id"),
    )


class TicketHolder(Base):
    __tablename__ = "ticket_holders"
    id = Column(String, primary_key=True)
    ticket_id = Column(String, ForeignKey("tickets.id"), nullable=False,
                       index=True)
    full_name = Column(String, nullable=False, default="")
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)


class BuyerInfo(Base):
    __tablename__ = "buyer_info"
    id = Column(String, primary_key=True)
    transaction_id = Column(String, ForeignKey("transactions.id"),
                            nullable=False, index=True)
    full_name = Column(String, nullable=False, default="")
    email = Column(String, nullable=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("transactions.id"),
                      nullable=False, index=True)
    ticket_type_id = Column(String, nullable=False)
    qty = Column(Integer, nullable=False, default=1)


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("transactions.id"),
                      nullable=False, index=True)
    amount = Column(Integer, nullable=False, default=0)
    provider_ref = Column(String, nullable=True)


class Wristband(Base):
    __tablename__ = "wristbands"
    id = Column(String, primary_key=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    organizer_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)

    max_scans = Column(Integer, nullable=True)  # NULL = unlimited
    scan_count = Column(Integer, nullable=False, default=0)
    valid_from = Column(Float, nullable=True)
    valid_until = Column(Float, nullable=True)

    # PENDING | ACTIVE | INACTIVE | REVOKED
    status = Column(String, nullable=False, default="PENDING")
    code_data = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)
    last_scanned_at = Column(Float, nullable=True)


class WristbandScanLog(Base):
    __tablename__ = "wristband_scan_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    wristband_id = Column(String, ForeignKey("wristbands.id"),
                          nullable=False, index=True)
    scanned_at = Column(Float, nullable=False)
    # SUCCESS or the rejecting error code
    result = Column(String, nullable=False)
    location = Column(String, nullable=True)
    device = Column(String, nullable=True)
    scanned_by = Column(String, nullable=True)
    notes = Column(String, nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String, nullable=False, index=True)
    entity = Column(String, nullable=False)
    entity_id = Column(String, nullable=True)
    payload = Column(Text, nullable=False)  # orjson of the audit event
    created_at = Column(Float, nullable=False)


class WebhookEventSeen(Base):
    __tablename__ = "webhook_events_seen"
    idempotency_key = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)
