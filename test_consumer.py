"""Consumption loop, dispatch and multi-queue coordination."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from sqs_consumer.config import ConsumerConfig
from sqs_consumer.consumer import Consumer
from sqs_consumer.errors import AcknowledgeError, ConfigurationError, ConsumerError, ReceiveError, ReleaseError
from sqs_consumer.local import InMemoryGateway
from sqs_consumer.message import RawMessage


def wait_for(cond, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return True
        time.sleep(0.02)
    return cond()


def run_in_background(consumer):
    t = threading.Thread(target=consumer.start, daemon=True)
    t.start()
    return t


def make_config(handler, queue_name="orders", **kwargs):
    kwargs.setdefault("wait_seconds", 1)
    return ConsumerConfig(queue_name=queue_name, handler=handler, **kwargs)


def receive_one(gw, name):
    address = gw.resolve_address(name)
    batch = gw.receive_batch(address, max_count=1, wait_seconds=0, visibility_seconds=30)
    assert len(batch) == 1
    return address, batch[0]


# ---------- construction ----------

def test_empty_queue_name_fails_at_construction():
    with pytest.raises(ConfigurationError):
        ConsumerConfig(queue_name="", handler=lambda m: True)


def test_gateway_required():
    with pytest.raises(ConfigurationError):
        Consumer(None, make_config(lambda m: True))


def test_defaults():
    cfg = ConsumerConfig(queue_name="orders", handler=lambda m: True)

    assert cfg.max_messages == 10
    assert cfg.wait_seconds == 20
    assert cfg.visibility_timeout == 30
    assert not cfg.prefix_based


# ---------- per-message verdicts ----------

def test_true_verdict_acknowledges_once():
    gw = InMemoryGateway(["orders"])
    gw.send("orders", '{"id": 1}')
    address, raw = receive_one(gw, "orders")
    consumer = Consumer(gw, make_config(lambda m: True))

    assert consumer.process_message(address, raw) is True
    assert gw.acknowledged == [(address, raw.receipt_handle)]
    assert gw.released == []
    assert gw.pending("orders") == 0


def test_false_verdict_releases_once():
    gw = InMemoryGateway(["orders"])
    gw.send("orders", '{"id": 1}')
    address, raw = receive_one(gw, "orders")
    consumer = Consumer(gw, make_config(lambda m: False))

    assert consumer.process_message(address, raw) is False
    assert gw.released == [(address, raw.receipt_handle)]
    assert gw.acknowledged == []
    # Immediately visible again
    assert len(gw.receive_batch(address, 10, 0, 30)) == 1


def test_release_targets_address_and_token():
    gw = MagicMock()
    raw = RawMessage(message_id="m-1", receipt_handle="T", body="payload")
    consumer = Consumer(gw, make_config(lambda m: False))

    consumer.process_message("A", raw)

    gw.release.assert_called_once_with("A", "T")
    gw.acknowledge.assert_not_called()


def test_handler_sees_normalized_message():
    seen = []
    gw = MagicMock()
    body = '{"Message":"{\\"asda\\":\\"asdas\\"}","MessageAttributes":{"attribute1":{"Type":"String","Value":"value1"}}}'
    raw = RawMessage(message_id="m-1", receipt_handle="T", body=body)
    consumer = Consumer(gw, make_config(lambda m: seen.append(m) or True))

    consumer.process_message("A", raw)

    assert seen[0].content == '{"asda":"asdas"}'
    assert dict(seen[0].attributes) == {"attribute1": "value1"}
    gw.acknowledge.assert_called_once_with("A", "T")


def test_raising_handler_releases():
    def boom(message):
        raise RuntimeError("handler bug")

    gw = MagicMock()
    consumer = Consumer(gw, make_config(boom))

    assert consumer.process_message("A", RawMessage("m-1", "T", "x")) is False
    gw.release.assert_called_once_with("A", "T")


def test_ack_failure_is_fatal_by_default():
    gw = MagicMock()
    gw.acknowledge.side_effect = AcknowledgeError("gone", address="A")
    consumer = Consumer(gw, make_config(lambda m: True))

    with pytest.raises(AcknowledgeError):
        consumer.process_message("A", RawMessage("m-1", "T", "x"))


def test_ack_failure_can_be_log_only():
    gw = MagicMock()
    gw.release.side_effect = ReleaseError("gone", address="A")
    consumer = Consumer(gw, make_config(lambda m: False, ack_failure="log"))

    assert consumer.process_message("A", RawMessage("m-1", "T", "x")) is False


def test_handler_timeout_releases_message():
    gate = threading.Event()
    gw = MagicMock()
    consumer = Consumer(gw, make_config(lambda m: gate.wait(10), handler_timeout=0.2))

    try:
        assert consumer.process_message("A", RawMessage("m-1", "T", "x")) is False
        gw.release.assert_called_once_with("A", "T")
        gw.acknowledge.assert_not_called()
    finally:
        gate.set()


def test_heartbeat_extends_visibility_while_handler_runs():
    gw = InMemoryGateway(["orders"])
    gw.send("orders", "slow")
    address, raw = receive_one(gw, "orders")

    def slow(message):
        time.sleep(1.6)
        return True

    consumer = Consumer(gw, make_config(slow, visibility_timeout=4, heartbeat_seconds=1))
    consumer.process_message(address, raw)

    assert gw.extended
    assert gw.extended[0] == (address, raw.receipt_handle, 4)
    assert gw.acknowledged == [(address, raw.receipt_handle)]


# ---------- loop ----------

def test_loop_drains_queue():
    gw = InMemoryGateway(["orders"])
    for i in range(25):
        gw.send("orders", f'{{"n": {i}}}')
    seen = []
    lock = threading.Lock()

    def handler(message):
        with lock:
            seen.append(message.json()["n"])
        return True

    consumer = Consumer(gw, make_config(handler))
    t = run_in_background(consumer)
    try:
        assert wait_for(lambda: gw.pending("orders") == 0)
    finally:
        consumer.stop()
        t.join(timeout=5)

    assert sorted(seen) == list(range(25))
    assert len(gw.acknowledged) == 25
    assert not t.is_alive()
    assert consumer.error is None


def test_hung_handler_does_not_block_receiving():
    gw = InMemoryGateway(["orders"])
    gw.send("orders", "slow")
    gate = threading.Event()
    started = threading.Event()
    done = []

    def handler(message):
        if message.content == "slow":
            started.set()
            gate.wait(10)
        done.append(message.content)
        return True

    consumer = Consumer(gw, make_config(handler, max_messages=1))
    t = run_in_background(consumer)
    try:
        assert started.wait(5)
        gw.send("orders", "fast-1")
        gw.send("orders", "fast-2")
        assert wait_for(lambda: sorted(done) == ["fast-1", "fast-2"])
        assert "slow" not in done
    finally:
        gate.set()
        consumer.stop()
        t.join(timeout=5)

    assert wait_for(lambda: "slow" in done)


def test_max_in_flight_bounds_concurrent_dispatches():
    gw = InMemoryGateway(["orders"])
    for i in range(3):
        gw.send("orders", str(i))
    gate = threading.Event()
    active = []
    peak = []
    lock = threading.Lock()

    def handler(message):
        with lock:
            active.append(message.id)
            peak.append(len(active))
        gate.wait(10)
        with lock:
            active.remove(message.id)
        return True

    consumer = Consumer(gw, make_config(handler, max_in_flight=1))
    t = run_in_background(consumer)
    try:
        assert wait_for(lambda: len(peak) == 1)
        time.sleep(0.3)
        assert len(peak) == 1
        gate.set()
        assert wait_for(lambda: gw.pending("orders") == 0)
    finally:
        gate.set()
        consumer.stop()
        t.join(timeout=5)

    assert max(peak) == 1


def test_max_in_flight_holds_slot_for_handler_past_deadline():
    gw = InMemoryGateway(["orders"])
    for i in range(4):
        gw.send("orders", str(i))
    gate = threading.Event()
    active = []
    peak = []
    lock = threading.Lock()

    def handler(message):
        with lock:
            active.append(message.id)
            peak.append(len(active))
        gate.wait(1.5)
        with lock:
            active.remove(message.id)
        return True

    consumer = Consumer(gw, make_config(handler, max_in_flight=1, handler_timeout=0.2))
    t = run_in_background(consumer)
    try:
        assert wait_for(lambda: len(gw.released) >= 1)
        time.sleep(0.5)
        # The first handler is past its deadline but still running
        assert len(peak) == 1
        assert wait_for(lambda: len(peak) >= 2)
    finally:
        gate.set()
        consumer.stop()
        t.join(timeout=5)

    assert max(peak) == 1


def test_restart_after_stop_consumes_again():
    gw = InMemoryGateway(["orders"])
    seen = []

    def handler(message):
        seen.append(message.content)
        return True

    consumer = Consumer(gw, make_config(handler))
    for body in ("first", "second"):
        gw.send("orders", body)
        t = run_in_background(consumer)
        try:
            assert wait_for(lambda: gw.pending("orders") == 0)
        finally:
            consumer.stop()
            t.join(timeout=5)
        assert not t.is_alive()

    assert seen == ["first", "second"]
    assert consumer.error is None


def test_start_while_running_raises():
    gw = InMemoryGateway(["orders"])
    consumer = Consumer(gw, make_config(lambda m: True))
    t = run_in_background(consumer)
    try:
        assert wait_for(lambda: consumer._loops and consumer._loops[0].is_alive())
        with pytest.raises(ConsumerError):
            consumer.start()
    finally:
        consumer.stop()
        t.join(timeout=5)


def test_stop_before_start_does_not_consume():
    gw = MagicMock()
    consumer = Consumer(gw, make_config(lambda m: True))
    consumer.stop()

    consumer.start()

    gw.resolve_address.assert_not_called()
    gw.receive_batch.assert_not_called()


def test_receive_error_is_fatal():
    gw = MagicMock()
    gw.resolve_address.return_value = "A"
    gw.receive_batch.side_effect = ReceiveError("boom", address="A")
    consumer = Consumer(gw, make_config(lambda m: True))

    with pytest.raises(ReceiveError):
        consumer.start()
    assert consumer.stopped
    assert isinstance(consumer.error, ReceiveError)


def test_receive_retries_before_giving_up():
    gw = MagicMock()
    gw.resolve_address.return_value = "A"
    calls = []

    def receive(*args):
        calls.append(args)
        if len(calls) == 1:
            raise ReceiveError("transient", address="A")
        consumer.stop()
        return []

    gw.receive_batch.side_effect = receive
    consumer = Consumer(gw, make_config(lambda m: True, receive_retries=2))

    consumer.start()

    assert len(calls) == 2
    assert calls[0] == ("A", 10, 1, 30)
    assert consumer.error is None


def test_fatal_ack_error_stops_consumer():
    class FailingAck(InMemoryGateway):
        def acknowledge(self, address, ack_token):
            raise AcknowledgeError("denied", address=address)

    gw = FailingAck(["orders"])
    gw.send("orders", "x")
    consumer = Consumer(gw, make_config(lambda m: True))

    with pytest.raises(AcknowledgeError):
        consumer.start()


# ---------- coordination ----------

def test_single_queue_resolves_exact_name():
    gw = MagicMock()
    gw.resolve_address.return_value = "A"
    consumer = Consumer(gw, make_config(lambda m: True))

    assert consumer.addresses() == ["A"]
    gw.resolve_address.assert_called_once_with("orders")
    gw.list_addresses.assert_not_called()


def test_prefix_with_no_matches_starts_nothing():
    gw = MagicMock()
    gw.list_addresses.return_value = []
    consumer = Consumer(gw, make_config(lambda m: True, queue_name="audit-", prefix_based=True))

    consumer.start()

    gw.list_addresses.assert_called_once_with("audit-")
    gw.receive_batch.assert_not_called()
    assert consumer.error is None


def test_prefix_runs_one_loop_per_matching_queue():
    gw = InMemoryGateway(["audit-a", "audit-b", "other"])
    gw.send("audit-a", "a")
    gw.send("audit-b", "b")
    gw.send("other", "untouched")
    seen = []

    def handler(message):
        seen.append(message.content)
        return True

    consumer = Consumer(gw, make_config(handler, queue_name="audit-", prefix_based=True))
    t = run_in_background(consumer)
    try:
        assert wait_for(lambda: gw.pending("audit-a") == 0 and gw.pending("audit-b") == 0)
    finally:
        consumer.stop()
        t.join(timeout=5)

    assert sorted(seen) == ["a", "b"]
    assert gw.pending("other") == 1
    acked_addresses = {address for address, _ in gw.acknowledged}
    assert acked_addresses == {gw.address_for("audit-a"), gw.address_for("audit-b")}
