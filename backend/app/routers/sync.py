import json
from datetime import datetime, timezone
from typing import Any, Optional

import psycopg
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from ..config import settings
from ..db import get_admin_conn, set_tenant_context
from ..logs import json_log
from ..security import verify_device_request
from ..validation import as_int, as_rate, is_uuid, str_or

router = APIRouter(tags=["sync"])

ORDER_CREATED = "order.created"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": (
        "authorization, x-client-info, apikey, content-type, "
        "x-tenant-id, x-device-key, x-timestamp, x-signature"
    ),
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


class SyncRejected(Exception):
    def __init__(self, status_code: int, error: str, details: Optional[str] = None):
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.details = details


def cors_headers_for(origin: Optional[str]) -> Optional[dict]:
    """
    Without an allow-list every origin gets wildcard CORS. With one, only listed
    origins are reflected; None means the request must be refused with 403.
    """
    allowed = settings.sync_allowed_origins
    if not allowed:
        return dict(CORS_HEADERS)
    if origin and origin in allowed:
        return {**CORS_HEADERS, "Access-Control-Allow-Origin": origin, "Vary": "Origin"}
    return None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_order_created(payload: Any, header_tenant: str) -> dict:
    p = payload if isinstance(payload, dict) else {}
    order = p.get("order") if isinstance(p.get("order"), dict) else {}
    items = p.get("items") if isinstance(p.get("items"), list) else []

    tenant_id = str_or(order.get("tenant_id"), None) or header_tenant or settings.sync_default_tenant_id
    if not tenant_id:
        raise SyncRejected(400, "missing_tenant_id")
    if not is_uuid(tenant_id):
        raise SyncRejected(400, "invalid_tenant_id")
    if not is_uuid(order.get("id")):
        raise SyncRejected(400, "invalid_order_id")

    now = _now_iso()
    order_row = {
        "id": order["id"],
        "tenant_id": tenant_id,
        "opened_at": str_or(order.get("opened_at"), now),
        "closed_at": str_or(order.get("closed_at"), now),
        "status": str_or(order.get("status"), "CLOSED"),
        "total_cents": as_int(order.get("total_cents"), 0),
        "vat_total_cents": as_int(order.get("vat_total_cents"), 0),
        "pager_number": str_or(order.get("pager_number"), None),
        "outlet_id": order.get("outlet_id") if is_uuid(order.get("outlet_id")) else None,
    }

    item_rows = []
    for it in items:
        # Items are best-effort: a bad id drops the item, never the order.
        if not isinstance(it, dict) or not is_uuid(it.get("id")):
            continue
        item_rows.append(
            {
                "id": it["id"],
                "order_id": order_row["id"],
                "product_id": it.get("product_id") if is_uuid(it.get("product_id")) else None,
                "kind": str_or(it.get("kind"), "SALE"),
                "qty": as_int(it.get("qty"), 1),
                "price_cents": as_int(it.get("price_cents"), 0),
                "deposit_cents": as_int(it.get("deposit_cents"), 0),
                "vat_rate": as_rate(it.get("vat_rate"), 0),
                "prep_status": str_or(it.get("prep_status"), "QUEUED"),
            }
        )
    return {"order": order_row, "items": item_rows}


def _upsert_order(cur, o: dict) -> None:
    try:
        cur.execute(
            """
            INSERT INTO orders
              (id, tenant_id, opened_at, closed_at, status,
               total_cents, vat_total_cents, pager_number, outlet_id)
            VALUES
              (%s::uuid, %s::uuid, %s::timestamptz, %s::timestamptz, %s,
               %s, %s, %s, %s::uuid)
            ON CONFLICT (id) DO UPDATE SET
              opened_at = EXCLUDED.opened_at,
              closed_at = EXCLUDED.closed_at,
              status = EXCLUDED.status,
              total_cents = EXCLUDED.total_cents,
              vat_total_cents = EXCLUDED.vat_total_cents,
              pager_number = EXCLUDED.pager_number,
              outlet_id = EXCLUDED.outlet_id
            WHERE orders.tenant_id = EXCLUDED.tenant_id
            RETURNING id
            """,
            (
                o["id"],
                o["tenant_id"],
                o["opened_at"],
                o["closed_at"],
                o["status"],
                o["total_cents"],
                o["vat_total_cents"],
                o["pager_number"],
                o["outlet_id"],
            ),
        )
        row = cur.fetchone()
    except psycopg.Error as exc:
        raise SyncRejected(500, "upsert_order_failed", details=str(exc)[:200]) from exc
    if row is None:
        # The id already belongs to another tenant's order.
        raise SyncRejected(409, "order_id_conflict")


def _upsert_item(cur, it: dict) -> None:
    try:
        cur.execute(
            """
            INSERT INTO order_items
              (id, order_id, product_id, kind, qty,
               price_cents, deposit_cents, vat_rate, prep_status)
            VALUES
              (%s::uuid, %s::uuid, %s::uuid, %s, %s,
               %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
              product_id = EXCLUDED.product_id,
              kind = EXCLUDED.kind,
              qty = EXCLUDED.qty,
              price_cents = EXCLUDED.price_cents,
              deposit_cents = EXCLUDED.deposit_cents,
              vat_rate = EXCLUDED.vat_rate,
              prep_status = EXCLUDED.prep_status
            WHERE order_items.order_id = EXCLUDED.order_id
            RETURNING id
            """,
            (
                it["id"],
                it["order_id"],
                it["product_id"],
                it["kind"],
                it["qty"],
                it["price_cents"],
                it["deposit_cents"],
                it["vat_rate"],
                it["prep_status"],
            ),
        )
        row = cur.fetchone()
    except psycopg.Error as exc:
        raise SyncRejected(500, "upsert_item_failed", details=str(exc)[:200]) from exc
    if row is None:
        # The item id is already attached to a different order.
        raise SyncRejected(409, "item_id_conflict")


def ingest_events(events: list, header_tenant: str) -> int:
    """
    Apply a batch of device events. Every `order.created` event is validated
    first, then all of them are upserted in one transaction, so a rejected
    request leaves no partial rows behind. Unknown event types are skipped.
    """
    bundles = []
    for evt in events:
        if not isinstance(evt, dict) or evt.get("type") != ORDER_CREATED:
            continue
        bundles.append(normalize_order_created(evt.get("payload"), header_tenant))

    if not bundles:
        return 0

    with get_admin_conn() as conn:
        with conn.transaction():
            for b in bundles:
                set_tenant_context(conn, b["order"]["tenant_id"])
                with conn.cursor() as cur:
                    _upsert_order(cur, b["order"])
                    for it in b["items"]:
                        _upsert_item(cur, it)
    return len(bundles)


def _error(status_code: int, error: str, headers: dict, details: Optional[str] = None) -> JSONResponse:
    content = {"ok": False, "error": error}
    if details and settings.env in {"local", "dev"}:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content, headers=headers)


async def _handle_sync(request: Request):
    cors = cors_headers_for(request.headers.get("origin"))
    if request.method == "OPTIONS":
        if cors is None:
            return PlainTextResponse("forbidden", status_code=403)
        return PlainTextResponse("ok", headers=cors)
    if cors is None:
        return PlainTextResponse("forbidden", status_code=403)
    if request.method != "POST":
        return PlainTextResponse("Method Not Allowed", status_code=405, headers=cors)

    raw = await request.body()

    if settings.sync_require_device_key:
        auth_error = verify_device_request(
            expected_key=settings.sync_device_key,
            presented_key=request.headers.get("x-device-key"),
            timestamp=request.headers.get("x-timestamp"),
            signature=request.headers.get("x-signature"),
            raw_body=raw,
            max_skew_ms=settings.sync_max_skew_ms,
        )
        if auth_error:
            json_log("warning", "sync.ingest.unauthorized", error=auth_error)
            return _error(401, auth_error, cors)

    try:
        # UnicodeDecodeError is a ValueError: non UTF-8 bodies are rejected here.
        body = json.loads(raw.decode("utf-8"))
    except ValueError:
        body = None
    if not isinstance(body, dict) or not isinstance(body.get("events"), list):
        return _error(400, "invalid_payload_events", cors)

    header_tenant = (request.headers.get("x-tenant-id") or "").strip()
    try:
        processed = await run_in_threadpool(ingest_events, body["events"], header_tenant)
    except SyncRejected as rej:
        level = "error" if rej.status_code >= 500 else "warning"
        event = "sync.ingest.upsert_failed" if rej.status_code >= 500 else "sync.ingest.rejected"
        json_log(level, event, error=rej.error, details=rej.details)
        return _error(rej.status_code, rej.error, cors, details=rej.details)

    return JSONResponse(content={"ok": True, "processed": processed}, headers=cors)


@router.api_route("/sync", methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
async def sync_events(request: Request):
    """
    Device sync endpoint. Accepts {"events": [{"type": "order.created", ...}]}
    and upserts orders and items keyed by their client-generated UUIDs, so the
    same batch can be delivered any number of times.
    """
    try:
        return await _handle_sync(request)
    except Exception as exc:
        # Never leak backend internals to devices.
        json_log("error", "sync.ingest.unhandled", error=str(exc))
        return JSONResponse(status_code=500, content={"ok": False, "error": "server_error"}, headers=CORS_HEADERS)
