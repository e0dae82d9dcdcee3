"""
Outbox drain worker.

Redelivers outbox entries that were written at checkout but not confirmed by
the server: entries are sent oldest first, stamped `sent_at` on a 2xx,
retried with bounded exponential backoff on transient failures and marked
`dead` on permanent rejections (or after too many attempts).
"""

import hashlib
import threading
import time
import traceback
from datetime import datetime, timedelta, timezone
from typing import Optional

from .logs import json_log
from .models import OutboxEntry
from .store import ORDER_CREATED, OrderStore
from .sync_client import SyncClient, SyncError, events_envelope

MAX_ATTEMPTS_DEFAULT = 8
MAX_DELAY_SECONDS = 300


def next_retry_at_for_attempt(attempt_count: int, entry_id: Optional[str] = None, now: Optional[datetime] = None) -> str:
    delay_seconds = min(MAX_DELAY_SECONDS, 2 ** max(attempt_count - 1, 0))
    if entry_id:
        # Deterministic per-entry jitter so a fleet coming back online doesn't retry in lockstep.
        digest = hashlib.sha1(f"{entry_id}:{attempt_count}".encode("utf-8")).hexdigest()
        jitter_window = max(1, min(30, delay_seconds // 5 or 1))
        delay_seconds = min(MAX_DELAY_SECONDS, delay_seconds + (int(digest[:8], 16) % (jitter_window + 1)))
    base = now or datetime.now(timezone.utc)
    return (base + timedelta(seconds=delay_seconds)).isoformat(timespec="microseconds")


def _entry_tenant(entry: OutboxEntry, client: SyncClient) -> Optional[str]:
    order = (entry.payload or {}).get("order") or {}
    return (order.get("tenant_id") or "").strip() or client.config.resolve_tenant_id()


def _envelope_for(entry: OutboxEntry, tenant_id: str) -> dict:
    payload = dict(entry.payload or {})
    if entry.type == ORDER_CREATED:
        order = dict(payload.get("order") or {})
        # Orders saved before the device had a tenant pick it up at send time.
        order["tenant_id"] = order.get("tenant_id") or tenant_id
        payload["order"] = order
    return events_envelope([(entry.type, payload)])


def drain_outbox(
    store: OrderStore,
    client: SyncClient,
    limit: int = 10,
    max_attempts: int = MAX_ATTEMPTS_DEFAULT,
    now: Optional[str] = None,
) -> int:
    """Deliver due outbox entries. Returns how many were confirmed sent."""
    if not (client.config.sync_url or "").strip():
        return 0

    delivered = 0
    for entry in store.list_due_outbox(limit=max(1, int(limit or 10)), now=now):
        tenant_id = _entry_tenant(entry, client)
        if not tenant_id:
            # Not a failure: stays pending until the device is given a tenant.
            json_log("info", "outbox.skipped", outbox_id=entry.id, reason="no tenant")
            continue

        try:
            client.deliver(_envelope_for(entry, tenant_id), tenant_id)
        except SyncError as ex:
            attempt = entry.attempt_count + 1
            dead = ex.permanent or attempt >= max_attempts
            store.mark_outbox_failed(
                entry.id,
                str(ex),
                None if dead else next_retry_at_for_attempt(attempt, entry.id),
                dead=dead,
            )
            json_log(
                "error" if dead else "warning",
                "outbox.dead" if dead else "outbox.failed",
                outbox_id=entry.id,
                type=entry.type,
                attempt=attempt,
                status=ex.status,
                code=ex.code,
                error=str(ex),
            )
            continue

        store.mark_outbox_sent(entry.id)
        delivered += 1
        json_log("info", "outbox.delivered", outbox_id=entry.id, type=entry.type)
    return delivered


def run_forever(
    store: OrderStore,
    client: SyncClient,
    *,
    interval: float = 15.0,
    limit: int = 10,
    max_attempts: int = MAX_ATTEMPTS_DEFAULT,
    stop_event: Optional[threading.Event] = None,
) -> None:
    stop_event = stop_event or threading.Event()
    while not stop_event.is_set():
        started = time.time()
        try:
            n = drain_outbox(store, client, limit=limit, max_attempts=max_attempts)
            if n:
                json_log("info", "outbox.drain", delivered=n, pending=store.count_outbox_pending())
        except Exception as ex:
            json_log("error", "outbox.drain.error", error=str(ex), traceback=traceback.format_exc())
        stop_event.wait(max(0.0, interval - (time.time() - started)))


def start_background_drain(store: OrderStore, client: SyncClient, *, interval: float = 15.0, **kwargs):
    stop_event = threading.Event()
    t = threading.Thread(
        target=run_forever,
        args=(store, client),
        kwargs={"interval": interval, "stop_event": stop_event, **kwargs},
        name="outbox-drain",
        daemon=True,
    )
    t.start()
    return t, stop_event
