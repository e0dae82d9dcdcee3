"""
Device -> server sync client.

Orders are sent as a batch-of-events envelope:

    {"events": [{"type": "order.created", "payload": {"order": {...}, "items": [...]}}]}

When a device key is configured the JSON body is signed with
HMAC-SHA256("{timestamp}.{body}") and sent with x-device-key, x-timestamp and
x-signature headers. Sending from the checkout flow is fire-and-forget; the
outbox drain worker (outbox_worker.py) is what guarantees redelivery.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import threading
import time
import urllib.error
import urllib.request
from typing import Callable, Iterable, Optional

from .config import DeviceConfig
from .logs import json_log
from .models import CartLine, OrderMeta, Totals
from .store import ORDER_CREATED, new_id, order_created_payload, utcnow_iso

# Validation, auth, CORS, method and id-conflict errors won't fix themselves on retry.
PERMANENT_STATUSES = {400, 401, 403, 405, 409}


class SyncError(Exception):
    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None, permanent: bool = False):
        super().__init__(message)
        self.status = status
        self.code = code
        self.permanent = permanent


def _http_post(url: str, body: bytes, headers: dict, timeout: float) -> tuple[int, str]:
    req = urllib.request.Request(url, data=body, headers=headers, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.status, resp.read().decode("utf-8")
    except urllib.error.HTTPError as ex:
        # Server answered with a non-2xx status; keep its body for the error code.
        try:
            text = ex.read().decode("utf-8")
        except Exception:
            text = ""
        return ex.code, text


def sign(device_key: str, timestamp: str, body: str) -> str:
    return hmac.new(device_key.encode("utf-8"), f"{timestamp}.{body}".encode("utf-8"), hashlib.sha256).hexdigest()


def events_envelope(events: Iterable[tuple[str, dict]]) -> dict:
    return {"events": [{"type": t, "payload": p} for t, p in events]}


class SyncClient:
    def __init__(self, config: DeviceConfig, sender: Optional[Callable[[str, bytes, dict, float], tuple[int, str]]] = None):
        self.config = config
        self._send = sender or _http_post

    def refresh(self, config: Optional[DeviceConfig] = None) -> None:
        """Pick up a new device config (tenant, key, URL) without rebuilding the client."""
        self.config = config or self.config.reload()

    def build_order_created(
        self,
        lines: Iterable[CartLine],
        totals: Totals,
        meta: Optional[OrderMeta] = None,
        *,
        tenant_id: Optional[str] = None,
        order_id: Optional[str] = None,
        item_ids: Optional[list[str]] = None,
        opened_at: Optional[str] = None,
    ) -> dict:
        meta = meta or OrderMeta()
        lines = list(lines)
        now = opened_at or utcnow_iso()
        oid = order_id or new_id()
        order = {
            "id": oid,
            "tenant_id": tenant_id,
            "status": "CLOSED",
            "opened_at": now,
            "closed_at": now,
            "total_cents": totals.grand_total_cents,
            "vat_total_cents": totals.vat_total_cents,
            "pager_number": meta.pager_number,
            "outlet_id": meta.outlet_id,
        }
        items = []
        for i, l in enumerate(lines):
            items.append(
                {
                    "id": item_ids[i] if item_ids and i < len(item_ids) else new_id(),
                    "order_id": oid,
                    "product_id": l.product_id,
                    "kind": l.kind,
                    "qty": l.qty,
                    "price_cents": l.price_cents,
                    "deposit_cents": l.deposit_cents,
                    "vat_rate": str(l.vat_rate),
                    "prep_status": l.prep_status,
                }
            )
        return order_created_payload(order, items)

    def signed_request(self, envelope: dict, tenant_id: str, now_ms: Optional[int] = None) -> tuple[bytes, dict]:
        body = json.dumps(envelope, separators=(",", ":"), default=str)
        headers = {
            "Content-Type": "application/json",
            "x-tenant-id": tenant_id,
        }
        key = (self.config.device_key or "").strip()
        if key:
            ts = str(int(time.time() * 1000) if now_ms is None else int(now_ms))
            headers["x-device-key"] = key
            headers["x-timestamp"] = ts
            headers["x-signature"] = sign(key, ts, body)
        return body.encode("utf-8"), headers

    def deliver(self, envelope: dict, tenant_id: str) -> dict:
        """
        POST one envelope. Returns the parsed response on 2xx; raises SyncError
        otherwise, with `permanent` set for rejections a retry cannot fix.
        """
        url = (self.config.sync_url or "").strip()
        if not url:
            raise SyncError("sync_url not configured", permanent=True)
        body, headers = self.signed_request(envelope, tenant_id)
        try:
            status, text = self._send(url, body, headers, float(self.config.sync_timeout_seconds or 10.0))
        except (urllib.error.URLError, OSError) as ex:
            raise SyncError(f"network error: {ex}") from ex

        try:
            data = json.loads(text) if text else {}
        except ValueError:
            data = {"raw": text[:200]}
        if 200 <= status < 300:
            return data
        code = data.get("error") if isinstance(data, dict) else None
        raise SyncError(
            f"http {status} {code or ''}".strip(),
            status=status,
            code=code,
            permanent=status in PERMANENT_STATUSES,
        )

    def sync_order_created(
        self,
        lines: Iterable[CartLine],
        totals: Totals,
        meta: Optional[OrderMeta] = None,
        *,
        order_id: Optional[str] = None,
        item_ids: Optional[list[str]] = None,
        opened_at: Optional[str] = None,
    ) -> Optional[dict]:
        """
        Send one closed order. Skips (returns None) when no tenant resolves or no
        sync URL is set: the order is already stored locally and stays queued.
        """
        meta = meta or OrderMeta()
        tenant_id = (meta.tenant_id or "").strip() or self.config.resolve_tenant_id()
        if not tenant_id:
            json_log("info", "sync.send.skipped", reason="no tenant")
            return None
        if not (self.config.sync_url or "").strip():
            json_log("info", "sync.send.skipped", reason="no sync_url")
            return None
        payload = self.build_order_created(
            lines, totals, meta,
            tenant_id=tenant_id, order_id=order_id, item_ids=item_ids, opened_at=opened_at,
        )
        return self.deliver(events_envelope([(ORDER_CREATED, payload)]), tenant_id)

    def sync_order_created_detached(
        self,
        lines: Iterable[CartLine],
        totals: Totals,
        meta: Optional[OrderMeta] = None,
        *,
        on_delivered: Optional[Callable[[], object]] = None,
        **kwargs,
    ) -> threading.Thread:
        """Run sync_order_created on a daemon thread. Errors are logged, never raised."""
        lines = list(lines)

        def _run():
            try:
                res = self.sync_order_created(lines, totals, meta, **kwargs)
                if res is not None and on_delivered is not None:
                    on_delivered()
            except SyncError as ex:
                json_log("warning", "sync.send.failed", error=str(ex), status=ex.status, code=ex.code)
            except Exception as ex:
                json_log("error", "sync.send.failed", error=str(ex))

        t = threading.Thread(target=_run, name="order-sync", daemon=True)
        t.start()
        return t
