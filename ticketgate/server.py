from __future__ import annotations
import logging
from typing import Any, Dict, Optional

import httpx
import redis.asyncio as redis
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from .cleanup import CleanupEngine, CleanupOptions
from .config import Settings
from .errors import ErrorCode, message_for
from .helpers import bearer_token, ct_equal, flag, now_ts, to_iso
from .infra.sql import Database
from .infra.timings import snapshot, timeit
from .lifecycle import ORDER_TTL_HOURS, TicketLifecycle
from .model.scancounter import new_counter
from .model.states import PaymentStatus
from .notify import Notifier
from .settlement import KINDS, SettlementAdapter, SignedWebhooks
from .token import KIND_WRISTBAND, TokenCodec
from .verification import VerificationEngine
from .wristbands import WristbandLimiter

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("ticketgate").setLevel(level)


# ----------------------------
# Response helpers
# ----------------------------
def scan_response(kind: str, valid: bool, error_code: Optional[ErrorCode],
                  snap: Optional[Any]) -> ORJSONResponse:
    body: Dict[str, Any] = {
        "success": valid,
        "type": kind,
        "message": message_for(None if valid else error_code),
    }
    if not valid:
        body["errorCode"] = error_code.value
    if snap is not None:
        body["snapshot"] = snap.to_dict()
    status = 503 if error_code is ErrorCode.INTERNAL_ERROR else 200
    return ORJSONResponse(body, status_code=status)


def lifecycle_response(result) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": result.ok}
    if not result.ok:
        body["errorCode"] = result.error_code.value
        body["message"] = message_for(result.error_code)
    if result.ticket is not None:
        body["ticket"] = result.ticket.to_dict()
    if getattr(result, "code", None):
        body["code"] = result.code
    return body


def transaction_response(result) -> Dict[str, Any]:
    if result.error_code is ErrorCode.INVALID_INPUT:
        raise HTTPException(404, detail="transaction not found")
    body = {"success": result.ok, **result.to_dict()}
    if not result.ok:
        body["errorCode"] = result.error_code.value
    return body


# ----------------------------
# App factory
# ----------------------------
def create_app(settings: Optional[Settings] = None,
               db: Optional[Database] = None,
               redis_client: Optional[redis.Redis] = None) -> FastAPI:
    """
    Build the service. `db` and `redis_client` may be injected (already
    open) by tests; otherwise they are opened on startup and closed on
    shutdown.

        uvicorn --factory ticketgate.server:create_app
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="ticketgate",
        default_response_class=ORJSONResponse,
    )

    owns_db = db is None
    db = db or Database(settings.database_url)
    codec = TokenCodec(settings.token_encryption_key,
                       settings.token_checksum_secret)
    notifier = Notifier(settings.notify_url)
    counter = None
    if settings.scan_counter_backend == "pg":
        counter = new_counter("pg")
    elif redis_client is not None:
        counter = new_counter("redis", r=redis_client)

    app.state.settings = settings
    app.state.db = db
    app.state.redis = redis_client
    app.state.codec = codec
    app.state.notifier = notifier
    app.state.verifier = VerificationEngine(db, codec)
    app.state.wristbands = WristbandLimiter(db, codec, counter)
    app.state.lifecycle = TicketLifecycle(db, codec, notifier=notifier)
    app.state.cleanup = CleanupEngine(db)
    app.state.adapter = SignedWebhooks(settings.settlement_secret)

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        log.info("ticketgate starting: scan counter backend=%s notify=%s",
                 settings.scan_counter_backend,
                 "on" if settings.notify_url else "off")

    @app.on_event("startup")
    async def _db_init():
        if not db.is_open:
            await db.open()

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(
            timeout=5.0,
            limits=httpx.Limits(
                max_connections=64, max_keepalive_connections=64
            ),
        )
        notifier.client = app.state.http

    @app.on_event("startup")
    async def _redis_start():
        if settings.scan_counter_backend != "redis":
            return
        if app.state.redis is None:
            app.state.redis = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                max_connections=settings.redis_max_conn,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )
            app.state.owns_redis = True
        app.state.wristbands.counter = new_counter("redis",
                                                   r=app.state.redis)

    @app.on_event("shutdown")
    async def _http_client_stop():
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None
            notifier.client = None

    @app.on_event("shutdown")
    async def _redis_stop():
        r = app.state.redis
        if r is not None and getattr(app.state, "owns_redis", False):
            await r.close()
            app.state.redis = None

    @app.on_event("shutdown")
    async def _db_stop():
        if owns_db:
            await db.close()

    # ---
    # auth
    # ---
    def bearer(setting: str):
        def _check(authorization: Optional[str] = Header(None)) -> None:
            expected = getattr(settings, setting)
            token = bearer_token(authorization)
            if not expected or not token or not ct_equal(token, expected):
                log.warning("unauthorized request for %s", setting)
                raise HTTPException(401, detail="Unauthorized")
        return _check

    require_internal = bearer("internal_token")
    require_admin = bearer("admin_token")
    require_cron = bearer("cron_secret")

    # ----------------------------
    # Scanning
    # ----------------------------
    @app.post("/api/verify")
    async def verify(payload: dict):
        code = payload.get("encryptedCode")
        scope_id = payload.get("scopeId") or ""
        try:
            check_in = flag(payload, "checkIn")
        except ValueError as e:
            raise HTTPException(400, detail=str(e))
        if not isinstance(scope_id, str):
            scope_id = ""

        kind = codec.detect_kind(code)
        if kind == KIND_WRISTBAND:
            wb = app.state.wristbands
            if check_in:
                res = await wb.scan(
                    code, scope_id,
                    location=payload.get("location"),
                    device=payload.get("device"),
                    scanned_by=payload.get("scannedBy"),
                )
            else:
                res = await wb.validate(code, scope_id)
            return scan_response(KIND_WRISTBAND, res.valid, res.error_code,
                                 res.wristband)

        verifier = app.state.verifier
        if check_in:
            res = await verifier.check_in(code, scope_id)
        else:
            res = await verifier.validate(code, scope_id)
        return scan_response(kind or "unknown", res.valid, res.error_code,
                             res.ticket)

    # ----------------------------
    # Settlement webhook
    # ----------------------------
    @app.post("/payments/settlement")
    async def payments_settlement(request: Request):
        adapter: SettlementAdapter = app.state.adapter
        payload = await request.body()
        headers = dict(request.headers)

        event = adapter.verify_webhook(payload, headers)
        kind = adapter.event_kind(event)
        transaction_id, idem = adapter.event_ids(event)
        if not transaction_id:
            raise HTTPException(400, detail="missing transaction_id")
        if kind not in KINDS:
            raise HTTPException(400, detail="invalid event type")

        if idem and await _event_seen(db, idem):
            return {"ok": True, "idempotent": True}

        lifecycle: TicketLifecycle = app.state.lifecycle
        async with timeit(f"settlement.{kind}"):
            if kind == "succeeded":
                result = await lifecycle.activate_transaction(transaction_id)
            elif kind == "refunded":
                result = await lifecycle.refund_transaction(transaction_id)
            else:
                result = await lifecycle.fail_transaction(
                    transaction_id, PaymentStatus[kind.upper()]
                )

        body = transaction_response(result)
        if idem:
            await _mark_event_seen(db, idem)
        return {"ok": result.ok, **body}

    # ----------------------------
    # Ticket lifecycle (payment / order side)
    # ----------------------------
    @app.post("/api/tickets/{ticket_id}/activate",
              dependencies=[Depends(require_internal)])
    async def activate_ticket(ticket_id: str,
                              payload: Optional[dict] = Body(None)):
        event_date = (payload or {}).get("eventDate")
        if event_date is not None and not isinstance(event_date,
                                                     (int, float)):
            raise HTTPException(400, detail="eventDate must be epoch seconds")
        res = await app.state.lifecycle.activate(ticket_id, event_date)
        return lifecycle_response(res)

    @app.post("/api/tickets/{ticket_id}/cancel",
              dependencies=[Depends(require_internal)])
    async def cancel_ticket(ticket_id: str,
                            payload: Optional[dict] = Body(None)):
        reason = (payload or {}).get("reason") or "cancelled"
        res = await app.state.lifecycle.cancel(ticket_id, reason)
        return lifecycle_response(res)

    @app.post("/api/tickets/{ticket_id}/refund",
              dependencies=[Depends(require_internal)])
    async def refund_ticket(ticket_id: str,
                            payload: Optional[dict] = Body(None)):
        reason = (payload or {}).get("reason") or "refunded"
        res = await app.state.lifecycle.refund(ticket_id, reason)
        return lifecycle_response(res)

    # ----------------------------
    # Admin
    # ----------------------------
    @app.post("/api/admin/tickets/{ticket_id}/undo-check-in",
              dependencies=[Depends(require_admin)])
    async def undo_check_in(ticket_id: str, payload: dict):
        scope_id = payload.get("scopeId")
        if not scope_id:
            raise HTTPException(400, detail="scopeId is required")
        actor = payload.get("actor") or "admin"
        res = await app.state.lifecycle.undo_check_in(
            ticket_id, scope_id, actor
        )
        return lifecycle_response(res)

    @app.post("/api/admin/transactions/{transaction_id}/supersede",
              dependencies=[Depends(require_admin)])
    async def supersede(transaction_id: str):
        res = await app.state.lifecycle.supersede_manual_verification(
            transaction_id
        )
        return transaction_response(res)

    @app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
    async def timings():
        return {"timings": snapshot()}

    # ----------------------------
    # Wristbands
    # ----------------------------
    @app.post("/api/wristbands/{wristband_id}/issue",
              dependencies=[Depends(require_internal)])
    async def issue_wristband(wristband_id: str, payload: dict):
        scope_id = payload.get("scopeId")
        if not scope_id:
            raise HTTPException(400, detail="scopeId is required")
        res = await app.state.wristbands.issue(wristband_id, scope_id)
        body: Dict[str, Any] = {"success": res.valid}
        if not res.valid:
            body["errorCode"] = res.error_code.value
            body["message"] = message_for(res.error_code)
        if res.wristband is not None:
            body["wristband"] = res.wristband.to_dict()
        if res.code:
            body["code"] = res.code
        return body

    @app.get("/api/wristbands/{wristband_id}/scans",
             dependencies=[Depends(require_internal)])
    async def wristband_scans(wristband_id: str, scopeId: str,
                              limit: int = 50):
        items = await app.state.wristbands.scan_history(
            wristband_id, scopeId, limit=max(1, min(limit, 500))
        )
        if items is None:
            raise HTTPException(404, detail="wristband not found")
        return {"items": items, "limit": limit}

    # ----------------------------
    # Cron
    # ----------------------------
    @app.get("/api/cron/cleanup-pending-tickets",
             dependencies=[Depends(require_cron)])
    async def cleanup_stats(maxAge: float = 24,
                            includeFailedPayments: bool = True):
        stats = await app.state.cleanup.get_stats(
            max_age_hours=maxAge,
            include_failed_payments=includeFailedPayments,
        )
        return {
            "success": True,
            "data": {"statistics": stats.to_dict()},
            "timestamp": to_iso(now_ts()),
        }

    @app.post("/api/cron/cleanup-pending-tickets",
              dependencies=[Depends(require_cron)])
    async def cleanup_pending(payload: Optional[dict] = Body(None)):
        payload = payload or {}
        try:
            options = CleanupOptions.from_request(payload)
            stats_only = flag(payload, "statsOnly")
        except (TypeError, ValueError) as e:
            raise HTTPException(400, detail=f"invalid options: {e}")

        engine: CleanupEngine = app.state.cleanup
        t0 = now_ts()
        try:
            stats = await engine.get_stats(
                max_age_hours=options.max_age,
                include_failed_payments=options.include_failed_payments,
            )
            result = None
            if not stats_only and stats.eligible_for_deletion:
                result = await engine.cleanup(options)
        except Exception as e:
            log.error("cleanup request failed: %s", e)
            return ORJSONResponse({
                "success": False,
                "error": str(e) or type(e).__name__,
                "executionTimeMs": int((now_ts() - t0) * 1000),
                "timestamp": to_iso(now_ts()),
            }, status_code=500)

        if result is None:
            message = "No cleanup needed"
        else:
            verb = "would be deleted" if result.dry_run else "deleted"
            message = (f"Cleanup completed: {result.deleted_tickets} "
                       f"tickets {verb}")
        return {
            "success": True,
            "data": {
                "statistics": stats.to_dict(),
                "cleanup": result.to_dict() if result else None,
                "executionTimeMs": int((now_ts() - t0) * 1000),
                "parameters": options.to_dict(),
            },
            "message": message,
            "timestamp": to_iso(now_ts()),
        }

    @app.post("/api/cron/cleanup-orphaned-transactions",
              dependencies=[Depends(require_cron)])
    async def cleanup_orphans(payload: Optional[dict] = Body(None)):
        try:
            dry_run = flag(payload or {}, "dryRun")
        except ValueError as e:
            raise HTTPException(400, detail=str(e))
        result = await app.state.cleanup.cleanup_orphaned_transactions(
            dry_run=dry_run
        )
        return {"success": True, "data": result.to_dict()}

    @app.post("/api/cron/expire-tickets",
              dependencies=[Depends(require_cron)])
    async def expire_tickets():
        result = await app.state.lifecycle.expire_ended_events()
        return {"success": True, "data": result.to_dict()}

    @app.get("/api/cron/expire-orders", dependencies=[Depends(require_cron)])
    async def expire_orders_stats():
        n = await app.state.lifecycle.count_stale_transactions()
        return {
            "success": True,
            "data": {"pendingExpiration": n, "lastCheck": to_iso(now_ts())},
            "message": f"{n} orders pending expiration",
        }

    @app.post("/api/cron/expire-orders", dependencies=[Depends(require_cron)])
    async def expire_orders(payload: Optional[dict] = Body(None)):
        max_age = (payload or {}).get("maxAge", ORDER_TTL_HOURS)
        if (isinstance(max_age, bool) or not isinstance(max_age, (int, float))
                or max_age < 0):
            raise HTTPException(400, detail="maxAge must be hours >= 0")
        result = await app.state.lifecycle.expire_stale_transactions(
            max_age_hours=max_age
        )
        return {
            "success": True,
            "data": result.to_dict(),
            "message": f"Expired {result.expired} orders",
            "timestamp": to_iso(now_ts()),
        }

    return app


# ----------------------------
# Webhook idempotency
# ----------------------------
async def _event_seen(db: Database, key: str) -> bool:
    async with db.gated():
        async with db.session() as session:
            async with session.begin():
                row = (await session.execute(text("""
                    SELECT 1 FROM webhook_events_seen
                    WHERE idempotency_key = :k
                """), {"k": key})).first()
    return row is not None


async def _mark_event_seen(db: Database, key: str) -> None:
    try:
        async with db.gated():
            async with db.session() as session:
                async with session.begin():
                    await session.execute(text("""
                        INSERT INTO webhook_events_seen(
                            idempotency_key, created_at
                        ) VALUES (:k, :now)
                    """), {"k": key, "now": now_ts()})
    except IntegrityError:
        # a concurrent replay got there first
        pass
