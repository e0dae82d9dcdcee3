import json
import threading
from datetime import datetime, timedelta, timezone

from pos_desktop.config import DeviceConfig
from pos_desktop.models import CartLine, OrderMeta, PaymentIn
from pos_desktop.outbox_worker import (
    MAX_DELAY_SECONDS,
    drain_outbox,
    next_retry_at_for_attempt,
    run_forever,
)
from pos_desktop.pricing import calc_totals
from pos_desktop.store import MemoryOrderStore, SqliteOrderStore
from pos_desktop.sync_client import SyncClient

TENANT = "6f1c2a52-8a0e-4f4a-9d55-0a3c1c1c7b11"
FAR_FUTURE = "2999-01-01T00:00:00.000000+00:00"


class _ScriptedSender:
    """Replies with the queued (status, text) pairs, then 200s."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.bodies = []

    def __call__(self, url, body, headers, timeout):
        self.bodies.append(json.loads(body.decode("utf-8")))
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return reply
        return 200, '{"ok":true,"processed":1}'


def _save(store, tenant_id=TENANT):
    lines = [CartLine(kind="SALE", product_id="p1", name="Tea", qty=1, price_cents=380, vat_rate=2.6)]
    totals = calc_totals(lines)
    return store.save_order(lines, totals, PaymentIn(method="cash", amount_cents=380), OrderMeta(tenant_id=tenant_id))


def _client(sender, **kw):
    cfg = dict(tenant_id=TENANT, sync_url="https://api.example.test/sync", device_key="k")
    cfg.update(kw)
    return SyncClient(DeviceConfig(**cfg), sender=sender)


def test_backoff_grows_and_is_capped():
    now = datetime(2026, 10, 19, tzinfo=timezone.utc)

    def delay(n):
        return (datetime.fromisoformat(next_retry_at_for_attempt(n, now=now)) - now).total_seconds()

    assert [delay(n) for n in (1, 2, 3, 4)] == [1, 2, 4, 8]
    assert delay(20) == MAX_DELAY_SECONDS


def test_backoff_jitter_is_deterministic_and_bounded():
    now = datetime(2026, 10, 19, tzinfo=timezone.utc)
    a = next_retry_at_for_attempt(6, "entry-1", now=now)
    assert a == next_retry_at_for_attempt(6, "entry-1", now=now)
    delay = datetime.fromisoformat(a) - now
    assert timedelta(seconds=32) <= delay <= timedelta(seconds=32 + 6)


def test_drain_delivers_and_marks_sent(tmp_path):
    store = SqliteOrderStore(str(tmp_path / "pos.sqlite"))
    store.init_schema()
    oid = _save(store)
    sender = _ScriptedSender()

    assert drain_outbox(store, _client(sender)) == 1
    assert store.count_outbox_pending() == 0
    assert store.get_outbox_entry(store.outbox_id_for_order(oid)).status == "sent"
    evt = sender.bodies[0]["events"][0]
    assert evt["type"] == "order.created"
    assert evt["payload"]["order"]["id"] == oid

    # Nothing left to do on the next pass.
    assert drain_outbox(store, _client(sender)) == 0
    assert len(sender.bodies) == 1


def test_transient_failure_schedules_retry():
    store = MemoryOrderStore()
    oid = _save(store)
    sender = _ScriptedSender((502, "bad gateway"))

    assert drain_outbox(store, _client(sender)) == 0
    entry = store.get_outbox_entry(store.outbox_id_for_order(oid))
    assert entry.status == "failed"
    assert entry.attempt_count == 1
    assert entry.next_attempt_at is not None
    assert entry.sent_at is None

    # Not due yet.
    assert drain_outbox(store, _client(sender), now="2000-01-01T00:00:00.000000+00:00") == 0
    assert len(sender.bodies) == 1

    # Once due it goes out again and succeeds.
    assert drain_outbox(store, _client(sender), now=FAR_FUTURE) == 1
    assert store.get_outbox_entry(entry.id).status == "sent"


def test_network_error_is_retried():
    store = MemoryOrderStore()
    oid = _save(store)
    drain_outbox(store, _client(_ScriptedSender(OSError("no route to host"))))
    entry = store.get_outbox_entry(store.outbox_id_for_order(oid))
    assert entry.status == "failed"
    assert "network error" in entry.last_error


def test_permanent_rejection_is_dead_lettered():
    store = MemoryOrderStore()
    oid = _save(store)
    sender = _ScriptedSender((400, '{"ok":false,"error":"invalid_order_id"}'))

    drain_outbox(store, _client(sender))
    entry = store.get_outbox_entry(store.outbox_id_for_order(oid))
    assert entry.status == "dead"
    assert entry.next_attempt_at is None
    assert drain_outbox(store, _client(sender), now=FAR_FUTURE) == 0
    assert len(sender.bodies) == 1


def test_gives_up_after_max_attempts():
    store = MemoryOrderStore()
    oid = _save(store)
    sender = _ScriptedSender(*[(503, "")] * 3)

    for _ in range(3):
        drain_outbox(store, _client(sender), max_attempts=3, now=FAR_FUTURE)

    entry = store.get_outbox_entry(store.outbox_id_for_order(oid))
    assert entry.status == "dead"
    assert entry.attempt_count == 3


def test_entry_without_tenant_waits_for_one():
    store = MemoryOrderStore()
    oid = _save(store, tenant_id=None)
    sender = _ScriptedSender()

    assert drain_outbox(store, _client(sender, tenant_id=None)) == 0
    entry = store.get_outbox_entry(store.outbox_id_for_order(oid))
    assert entry.status == "pending"
    assert entry.attempt_count == 0
    assert sender.bodies == []

    # Device gets a tenant; the stored order picks it up at send time.
    assert drain_outbox(store, _client(sender)) == 1
    assert sender.bodies[0]["events"][0]["payload"]["order"]["tenant_id"] == TENANT


def test_no_sync_url_is_a_no_op():
    store = MemoryOrderStore()
    _save(store)
    sender = _ScriptedSender()
    assert drain_outbox(store, _client(sender, sync_url=None)) == 0
    assert store.count_outbox_pending() == 1


def test_run_forever_stops_on_event():
    store = MemoryOrderStore()
    _save(store)
    stop = threading.Event()
    sender = _ScriptedSender()
    client = _client(sender)

    def _stop_after_send(url, body, headers, timeout):
        res = sender(url, body, headers, timeout)
        stop.set()
        return res

    client._send = _stop_after_send
    t = threading.Thread(target=run_forever, args=(store, client), kwargs={"interval": 0.01, "stop_event": stop})
    t.start()
    t.join(timeout=5)
    assert not t.is_alive()
    assert store.count_outbox_pending() == 0
