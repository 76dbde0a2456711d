"""
Consumer: the consumption loop and the multi-queue coordinator.

Per queue address one poll thread runs:

    Idle -> Receiving (long-poll) -> Dispatching (one thread per message) -> Idle

Each dispatch thread is self-contained: normalize -> handler -> acknowledge on True,
release (visibility 0) on False. The poll thread never waits for dispatches before
issuing the next receive, and nothing is ordered across or within batches.

Gateway failures are fatal to the consumer: the failing thread records the error,
the consumer stops polling every address, and start() re-raises it. Acknowledge/release
failures can be downgraded to log-only with ack_failure="log".
"""

from __future__ import annotations

import random
import threading
from typing import List, Optional

from .config import ACK_FAILURE_LOG, ConsumerConfig
from .errors import ConfigurationError, ConsumerError, GatewayError
from .gateway import QueueGateway, queue_name_from_address
from .heartbeat import visibility_heartbeat
from .logging import StructuredLogger, get_logger
from .message import NormalizedMessage, RawMessage, normalize


class _Slot:
    """One max_in_flight permit, shared by a dispatch and any handler thread it abandons."""

    def __init__(self, semaphore: threading.BoundedSemaphore):
        self._semaphore = semaphore
        self._holders = 1
        self._lock = threading.Lock()

    def share(self) -> None:
        with self._lock:
            self._holders += 1

    def release(self) -> None:
        with self._lock:
            self._holders -= 1
            last = self._holders == 0
        if last:
            self._semaphore.release()


class Consumer:
    """
    Consumes one queue, or every queue matching a name prefix.

    Example:
        consumer = Consumer(SQSGateway(region="us-east-1"), ConsumerConfig("orders", handle_order))
        consumer.start()  # blocks
    """

    def __init__(self, gateway: QueueGateway, config: ConsumerConfig, logger: Optional[StructuredLogger] = None):
        if config is None:
            raise ConfigurationError("config is required")
        if not config.queue_name:
            raise ConfigurationError("queue_name is required")
        if gateway is None:
            raise ConfigurationError("gateway is required")

        self.gateway = gateway
        self.config = config
        self.set_logger(logger or get_logger("consumer"))

        self._stop = threading.Event()
        self._errors: List[BaseException] = []
        self._errors_lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(config.max_in_flight) if config.max_in_flight else None
        self._loops: List[threading.Thread] = []

    def __repr__(self) -> str:
        mode = "prefix" if self.config.prefix_based else "queue"
        return f"Consumer({mode}={self.config.queue_name!r})"

    def set_logger(self, logger: StructuredLogger) -> None:
        self.logger = logger
        self.log = logger.bind(consumer=self.config.label)

    # ------------------------------------------------------------------------
    # STATE
    # ------------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self.config.label

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    @property
    def error(self) -> Optional[BaseException]:
        """First fatal error, if any."""
        with self._errors_lock:
            return self._errors[0] if self._errors else None

    def stop(self) -> None:
        """Ask every poll loop to exit after its current receive. In-flight dispatches finish on their own."""
        self._stop.set()

    # ------------------------------------------------------------------------
    # COORDINATION
    # ------------------------------------------------------------------------

    def addresses(self) -> List[str]:
        """Resolve the queue address(es) once. Prefix mode may legitimately return []."""
        if self.config.prefix_based:
            found = list(self.gateway.list_addresses(self.config.queue_name))
            self.log.info("Discovered queues", {"prefix": self.config.queue_name, "count": len(found)})
            return found
        return [self.gateway.resolve_address(self.config.queue_name)]

    def start(self) -> None:
        """
        Start one poll loop per address and block until they all stop.

        May be called again after a previous start() has returned; a stop() issued
        before the first start() makes it return without consuming.

        Raises:
            ConsumerError: start() is already running
            GatewayError: address resolution/discovery failed, or a loop/dispatch hit a fatal error
        """
        if self._loops:
            if any(t.is_alive() for t in self._loops):
                raise ConsumerError(f"consumer {self.name} is already running")
            self._stop.clear()
            self._loops = []
            with self._errors_lock:
                self._errors.clear()
        elif self._stop.is_set():
            self.log.info("Stopped before start; not consuming")
            return

        addresses = self.addresses()
        if not addresses:
            self.log.warning("No queues matched; nothing to consume", {"prefix": self.config.queue_name})
            return

        for address in addresses:
            t = threading.Thread(
                target=self._run_loop,
                args=(address,),
                name=f"poll-{queue_name_from_address(address)}",
                daemon=True,
            )
            t.start()
            self._loops.append(t)

        try:
            while any(t.is_alive() for t in self._loops):
                for t in self._loops:
                    t.join(timeout=0.5)
        except KeyboardInterrupt:
            self.log.info("Graceful shutdown (Ctrl+C)")
            self.stop()
            raise

        err = self.error
        if err is not None:
            raise err

    run = start

    def _run_loop(self, address: str) -> None:
        try:
            self.poll(address)
        except Exception as e:
            self._fail(e, address)

    def _fail(self, error: BaseException, address: str) -> None:
        with self._errors_lock:
            self._errors.append(error)
        self.log.error(error, {"queue_url": address, "context": "fatal"})
        self._stop.set()

    # ------------------------------------------------------------------------
    # CONSUMPTION LOOP
    # ------------------------------------------------------------------------

    def poll(self, address: str) -> None:
        """Receive and dispatch until stopped. Gateway errors propagate."""
        queue = queue_name_from_address(address)
        log = self.log.bind(queue=queue)

        while not self._stop.is_set():
            log.debug(f"polling messages from queue {queue}")
            messages = self.receive(address)
            if not messages:
                continue

            log.log("received %d messages from queue %s", len(messages), queue)
            for raw in messages:
                if self.dispatch(address, raw) is None:
                    break

    def receive(self, address: str) -> List[RawMessage]:
        """receive_batch, with up to config.receive_retries jittered backoff retries."""
        delay = 0.25
        attempt = 0
        while True:
            try:
                return self.gateway.receive_batch(
                    address,
                    self.config.max_messages,
                    self.config.wait_seconds,
                    self.config.visibility_timeout,
                )
            except GatewayError as e:
                attempt += 1
                if attempt > self.config.receive_retries:
                    raise
                self.log.warning("Receive failed; retrying", {
                    "queue_url": address,
                    "attempt": attempt,
                    "error": str(e),
                })
                if self._stop.wait(delay + random.uniform(0, 0.25)):
                    return []
                delay = min(delay * 2, 5.0)

    def dispatch(self, address: str, raw: RawMessage) -> Optional[threading.Thread]:
        """
        Hand one message to its own thread and return immediately.
        With max_in_flight set this blocks until a slot frees up; returns None if the
        consumer stops while waiting (the message reappears after its visibility timeout).
        """
        slot = None
        if self._slots is not None:
            while not self._slots.acquire(timeout=0.5):
                if self._stop.is_set():
                    return None
            slot = _Slot(self._slots)

        t = threading.Thread(
            target=self._dispatch,
            args=(address, raw, slot),
            name=f"dispatch-{raw.message_id[:12]}",
            daemon=True,
        )
        t.start()
        return t

    def _dispatch(self, address: str, raw: RawMessage, slot: Optional[_Slot] = None) -> None:
        try:
            self.process_message(address, raw, slot=slot)
        except Exception as e:
            self._fail(e, address)
        finally:
            if slot is not None:
                slot.release()

    # ------------------------------------------------------------------------
    # PER-MESSAGE WORK
    # ------------------------------------------------------------------------

    def process_message(self, address: str, raw: RawMessage, slot: Optional[_Slot] = None) -> bool:
        """
        Normalize, run the handler, then acknowledge (True) or release (False). Returns the verdict.

        slot is the dispatch's max_in_flight permit; a handler abandoned at its deadline
        keeps it until the handler thread actually returns.
        """
        message = normalize(raw)
        log = self.log.bind(queue=queue_name_from_address(address), message_id=message.id)

        verdict = self._invoke(address, message, log, slot)

        if verdict:
            if self._settle(self.gateway.acknowledge, address, message, log):
                log.log("message handled ID: %s", message.id)
        else:
            if self._settle(self.gateway.release, address, message, log):
                log.log("failed to handle message with ID: %s", message.id)
        return verdict

    def _settle(self, operation, address: str, message: NormalizedMessage, log: StructuredLogger) -> bool:
        try:
            operation(address, message.ack_token)
            return True
        except GatewayError as e:
            if self.config.ack_failure == ACK_FAILURE_LOG:
                log.error(e, {"context": e.operation})
                return False
            raise

    def _invoke(
        self,
        address: str,
        message: NormalizedMessage,
        log: StructuredLogger,
        slot: Optional[_Slot] = None,
    ) -> bool:
        with visibility_heartbeat(
            self.gateway,
            address,
            message.ack_token,
            base_timeout=self.config.visibility_timeout,
            heartbeat_every=self.config.heartbeat_seconds,
            logger=log,
        ):
            if self.config.handler_timeout is None:
                return self._call_handler(message, log)
            return self._call_with_deadline(message, log, slot)

    def _call_handler(self, message: NormalizedMessage, log: StructuredLogger) -> bool:
        try:
            return bool(self.config.handler(message))
        except Exception as e:
            # A raising handler is a failed handler: release for redelivery
            log.error(e, {"context": "handler"})
            return False

    def _call_with_deadline(
        self,
        message: NormalizedMessage,
        log: StructuredLogger,
        slot: Optional[_Slot] = None,
    ) -> bool:
        outcome = {}

        def target():
            try:
                outcome["verdict"] = self._call_handler(message, log)
            finally:
                if slot is not None:
                    slot.release()

        if slot is not None:
            slot.share()
        t = threading.Thread(target=target, name=f"handler-{message.id[:12]}", daemon=True)
        t.start()
        t.join(self.config.handler_timeout)
        if t.is_alive():
            # The thread can't be killed; it is abandoned and the message released
            log.warning("Handler exceeded deadline; releasing message", {"timeout": self.config.handler_timeout})
            return False
        return outcome.get("verdict", False)


__all__ = ["Consumer"]
