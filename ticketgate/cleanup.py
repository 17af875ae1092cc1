# ticketgate/cleanup.py
"""
Reconciliation of abandoned reservations.

A ticket that sits in PENDING because its payment never completed still
holds inventory. The engine finds such tickets (older than max_age hours,
or tied to a FAILED/EXPIRED payment), deletes them with their holders,
hands the inventory back and leaves an audit trail, all in one database
transaction per batch.
"""

from __future__ import annotations
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import bindparam, text

from .helpers import flag, now_ts, to_iso
from .infra.sql import Database
from .infra.timings import timeit
from .model import tickets
from .model.audit import (
    CleanupCompleted,
    CleanupFailed,
    CleanupStarted,
    OrphanedTransactionsDeleted,
    TicketDeleted,
    write_audit,
)

log = logging.getLogger(__name__)

HOUR = 3600.0

DEFAULT_MAX_AGE_HOURS = 24
DEFAULT_BATCH_SIZE = 100


@dataclass(frozen=True)
class CleanupOptions:
    dry_run: bool = False
    max_age: float = DEFAULT_MAX_AGE_HOURS  # hours
    batch_size: int = DEFAULT_BATCH_SIZE
    include_failed_payments: bool = True

    def __post_init__(self):
        if self.max_age < 0:
            raise ValueError("max_age must be >= 0")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")

    @classmethod
    def from_request(cls, body: Dict[str, Any]) -> "CleanupOptions":
        return cls(
            dry_run=flag(body, "dryRun"),
            max_age=float(body.get("maxAge", DEFAULT_MAX_AGE_HOURS)),
            batch_size=int(body.get("batchSize", DEFAULT_BATCH_SIZE)),
            include_failed_payments=flag(body, "includeFailedPayments",
                                         default=True),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dryRun": self.dry_run,
            "maxAge": self.max_age,
            "batchSize": self.batch_size,
            "includeFailedPayments": self.include_failed_payments,
        }


@dataclass(frozen=True)
class CleanupStats:
    total_pending_tickets: int
    eligible_for_deletion: int
    under_1_hour: int = 0
    under_24_hours: int = 0
    under_7_days: int = 0
    over_7_days: int = 0
    payment_pending: int = 0
    payment_failed: int = 0
    payment_expired: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalPendingTickets": self.total_pending_tickets,
            "eligibleForDeletion": self.eligible_for_deletion,
            "ticketsByAge": {
                "under1Hour": self.under_1_hour,
                "under24Hours": self.under_24_hours,
                "under7Days": self.under_7_days,
                "over7Days": self.over_7_days,
            },
            "ticketsByPaymentStatus": {
                "pending": self.payment_pending,
                "failed": self.payment_failed,
                "expired": self.payment_expired,
            },
        }


@dataclass(frozen=True)
class CleanupResult:
    success: bool
    deleted_tickets: int = 0
    affected_transactions: int = 0
    affected_ticket_types: Tuple[str, ...] = ()
    execution_time_ms: int = 0
    dry_run: bool = False
    timestamp: Optional[float] = None
    errors: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "deletedTickets": self.deleted_tickets,
            "affectedTransactions": self.affected_transactions,
            "affectedTicketTypes": list(self.affected_ticket_types),
            "executionTimeMs": self.execution_time_ms,
            "dryRun": self.dry_run,
            "timestamp": to_iso(self.timestamp),
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class OrphanCleanupResult:
    deleted_transactions: int
    transaction_ids: Tuple[str, ...] = field(default_factory=tuple)
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deletedTransactions": self.deleted_transactions,
            "transactionIds": list(self.transaction_ids),
            "dryRun": self.dry_run,
        }


def _elapsed_ms(t0: float) -> int:
    return int((time.perf_counter() - t0) * 1000)


def _eligibility_sql(include_failed: bool) -> str:
    if include_failed:
        return ("(t.created_at < :cutoff "
                "OR tx.status IN ('FAILED', 'EXPIRED'))")
    return "t.created_at < :cutoff"


class CleanupEngine:
    def __init__(self, db: Database, clock=now_ts) -> None:
        self.db = db
        self.clock = clock

    async def get_stats(self, max_age_hours: float = DEFAULT_MAX_AGE_HOURS,
                        include_failed_payments: bool = True
                        ) -> CleanupStats:
        """Read-only census of PENDING tickets."""
        now = self.clock()
        async with self.db.gated():
            async with self.db.session() as session:
                async with session.begin():
                    row = (await session.execute(text(f"""
                        SELECT
                          COUNT(*) AS total,
                          COALESCE(SUM(CASE WHEN
                            {_eligibility_sql(include_failed_payments)}
                            THEN 1 ELSE 0 END), 0) AS eligible,
                          COALESCE(SUM(CASE WHEN t.created_at > :h1
                            THEN 1 ELSE 0 END), 0) AS under_1h,
                          COALESCE(SUM(CASE WHEN t.created_at <= :h1
                            AND t.created_at > :h24
                            THEN 1 ELSE 0 END), 0) AS under_24h,
                          COALESCE(SUM(CASE WHEN t.created_at <= :h24
                            AND t.created_at > :d7
                            THEN 1 ELSE 0 END), 0) AS under_7d,
                          COALESCE(SUM(CASE WHEN t.created_at <= :d7
                            THEN 1 ELSE 0 END), 0) AS over_7d,
                          COALESCE(SUM(CASE WHEN tx.status = 'PENDING'
                            THEN 1 ELSE 0 END), 0) AS p_pending,
                          COALESCE(SUM(CASE WHEN tx.status = 'FAILED'
                            THEN 1 ELSE 0 END), 0) AS p_failed,
                          COALESCE(SUM(CASE WHEN tx.status = 'EXPIRED'
                            THEN 1 ELSE 0 END), 0) AS p_expired
                        FROM tickets AS t
                        JOIN transactions AS tx ON tx.id = t.transaction_id
                        WHERE t.status = 'PENDING'
                    """), {
                        "cutoff": now - max_age_hours * HOUR,
                        "h1": now - HOUR,
                        "h24": now - 24 * HOUR,
                        "d7": now - 7 * 24 * HOUR,
                    })).mappings().one()

        return CleanupStats(
            total_pending_tickets=int(row["total"]),
            eligible_for_deletion=int(row["eligible"]),
            under_1_hour=int(row["under_1h"]),
            under_24_hours=int(row["under_24h"]),
            under_7_days=int(row["under_7d"]),
            over_7_days=int(row["over_7d"]),
            payment_pending=int(row["p_pending"]),
            payment_failed=int(row["p_failed"]),
            payment_expired=int(row["p_expired"]),
        )

    async def cleanup(self, options: Optional[CleanupOptions] = None
                      ) -> CleanupResult:
        options = options or CleanupOptions()
        t0 = time.perf_counter()
        started = self.clock()
        log.info("cleanup start dry_run=%s max_age=%sh batch=%d "
                 "include_failed=%s", options.dry_run, options.max_age,
                 options.batch_size, options.include_failed_payments)
        try:
            async with timeit("cleanup.run"):
                result = await self._cleanup(options, started, t0)
        except Exception as e:
            elapsed = _elapsed_ms(t0)
            log.exception("cleanup failed options=%s", options.to_dict())
            await self._record_failure(e, elapsed, options)
            raise

        log.info("cleanup done dry_run=%s deleted=%d transactions=%d "
                 "ticket_types=%d took=%dms", result.dry_run,
                 result.deleted_tickets, result.affected_transactions,
                 len(result.affected_ticket_types), result.execution_time_ms)
        return result

    async def _cleanup(self, options: CleanupOptions, now: float,
                       t0: float) -> CleanupResult:
        cutoff = now - options.max_age * HOUR
        async with self.db.gated():
            async with self.db.session() as session:
                async with session.begin():
                    candidates = (await session.execute(text(f"""
                        SELECT t.id, t.ticket_type_id, t.transaction_id,
                               t.created_at, tx.status AS transaction_status
                        FROM tickets AS t
                        JOIN transactions AS tx
                          ON tx.id = t.transaction_id
                        WHERE t.status = 'PENDING'
                          AND {_eligibility_sql(
                              options.include_failed_payments)}
                        ORDER BY t.created_at, t.id
                        LIMIT :limit
                    """), {"cutoff": cutoff, "limit": options.batch_size}
                    )).mappings().all()

                    if not candidates or options.dry_run:
                        return CleanupResult(
                            success=True,
                            deleted_tickets=len(candidates),
                            affected_transactions=len(
                                {c["transaction_id"] for c in candidates}
                            ),
                            affected_ticket_types=tuple(sorted(
                                {c["ticket_type_id"] for c in candidates}
                            )),
                            execution_time_ms=_elapsed_ms(t0),
                            dry_run=options.dry_run,
                            timestamp=now,
                        )

                    by_id = {c["id"]: c for c in candidates}
                    ids = list(by_id)

                    await write_audit(session, CleanupStarted(
                        ticket_count=len(candidates),
                        transaction_count=len(
                            {c["transaction_id"] for c in candidates}
                        ),
                        ticket_type_count=len(
                            {c["ticket_type_id"] for c in candidates}
                        ),
                        cutoff=to_iso(cutoff),
                        options=options.to_dict(),
                    ), ts=now)

                    # claim: lock the rows that are still PENDING right now;
                    # anything activated since the SELECT drops out here
                    claimed = (await session.execute(text("""
                        UPDATE tickets SET updated_at = :now
                        WHERE id IN :ids AND status = 'PENDING'
                        RETURNING id
                    """).bindparams(bindparam("ids", expanding=True)),
                        {"ids": ids, "now": now})).scalars().all()

                    deleted: List[Dict[str, Any]] = []
                    if claimed:
                        await session.execute(text("""
                            DELETE FROM ticket_holders
                            WHERE ticket_id IN :ids
                        """).bindparams(bindparam("ids", expanding=True)),
                            {"ids": list(claimed)})
                        gone = (await session.execute(text("""
                            DELETE FROM tickets
                            WHERE id IN :ids AND status = 'PENDING'
                            RETURNING id
                        """).bindparams(bindparam("ids", expanding=True)),
                            {"ids": list(claimed)})).scalars().all()
                        deleted = [by_id[i] for i in gone]

                    per_type = Counter(d["ticket_type_id"] for d in deleted)
                    for ticket_type_id, qty in sorted(per_type.items()):
                        await tickets.restore_inventory(
                            session, ticket_type_id, qty
                        )

                    for d in deleted:
                        await write_audit(session, TicketDeleted(
                            ticket_id=d["id"],
                            ticket_type_id=d["ticket_type_id"],
                            transaction_id=d["transaction_id"],
                            transaction_status=d["transaction_status"],
                            age_hours=int(round(
                                (now - float(d["created_at"])) / HOUR
                            )),
                        ), ts=now)

                    transactions = {d["transaction_id"] for d in deleted}
                    await write_audit(session, CleanupCompleted(
                        deleted_tickets=len(deleted),
                        affected_transactions=len(transactions),
                        affected_ticket_types=len(per_type),
                        execution_time_ms=_elapsed_ms(t0),
                    ), ts=now)

        return CleanupResult(
            success=True,
            deleted_tickets=len(deleted),
            affected_transactions=len(transactions),
            affected_ticket_types=tuple(sorted(per_type)),
            execution_time_ms=_elapsed_ms(t0),
            dry_run=False,
            timestamp=now,
        )

    async def _record_failure(self, error: Exception, elapsed_ms: int,
                              options: CleanupOptions) -> None:
        try:
            async with self.db.gated():
                async with self.db.session() as session:
                    async with session.begin():
                        await write_audit(session, CleanupFailed(
                            error=str(error) or type(error).__name__,
                            execution_time_ms=elapsed_ms,
                            options=options.to_dict(),
                        ))
        except Exception:
            log.exception("failed to record cleanup error")

    async def cleanup_orphaned_transactions(self, dry_run: bool = False
                                            ) -> OrphanCleanupResult:
        """Drop FAILED/EXPIRED transactions that have no tickets left."""
        now = self.clock()
        orphan_sql = """
            SELECT tx.id FROM transactions AS tx
            WHERE tx.status IN ('FAILED', 'EXPIRED')
              AND NOT EXISTS (
                SELECT 1 FROM tickets AS t WHERE t.transaction_id = tx.id
              )
            ORDER BY tx.id
        """
        async with timeit("cleanup.orphans"):
            async with self.db.gated():
                async with self.db.session() as session:
                    async with session.begin():
                        ids = (await session.execute(
                            text(orphan_sql)
                        )).scalars().all()
                        if not ids or dry_run:
                            return OrphanCleanupResult(
                                deleted_transactions=len(ids),
                                transaction_ids=tuple(ids),
                                dry_run=dry_run,
                            )

                        params = {"ids": list(ids)}
                        for stmt in (
                            "DELETE FROM buyer_info "
                            "WHERE transaction_id IN :ids",
                            "DELETE FROM order_items WHERE order_id IN :ids",
                            "DELETE FROM payments WHERE order_id IN :ids",
                        ):
                            await session.execute(text(stmt).bindparams(
                                bindparam("ids", expanding=True)
                            ), params)

                        gone = (await session.execute(text("""
                            DELETE FROM transactions
                            WHERE id IN :ids
                              AND status IN ('FAILED', 'EXPIRED')
                              AND NOT EXISTS (
                                SELECT 1 FROM tickets AS t
                                WHERE t.transaction_id = transactions.id
                              )
                            RETURNING id
                        """).bindparams(bindparam("ids", expanding=True)),
                            params)).scalars().all()

                        await write_audit(session, OrphanedTransactionsDeleted(
                            deleted_count=len(gone),
                            transaction_ids=sorted(gone),
                        ), ts=now)

        log.info("orphaned transactions deleted=%d", len(gone))
        return OrphanCleanupResult(
            deleted_transactions=len(gone),
            transaction_ids=tuple(sorted(gone)),
        )
