"""
In-process queue backend.

Satisfies the QueueGateway protocol with SQS-like semantics (long-poll, visibility
timeout, receipt handles that change on every receive) so consumers can run without
AWS, and so tests can assert exactly which acknowledge/release calls were made.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .errors import (
    AcknowledgeError,
    AddressResolutionError,
    ReleaseError,
    VisibilityError,
)
from .message import RawMessage

ADDRESS_SCHEME = "memory://"
RECEIPT_HANDLE_INVALID = "ReceiptHandleIsInvalid"


@dataclass
class _Entry:
    message_id: str
    body: str
    attributes: Dict[str, str]
    visible_at: float = 0.0
    receipt_handle: Optional[str] = None
    receive_count: int = 0
    sent_at: float = field(default_factory=time.time)


class InMemoryGateway:
    """Thread-safe in-memory QueueGateway."""

    def __init__(self, queues: Optional[List[str]] = None):
        self._cond = threading.Condition()
        self._queues: Dict[str, List[_Entry]] = {}
        self._deleted: set = set()
        self.acknowledged: List[Tuple[str, str]] = []
        self.released: List[Tuple[str, str]] = []
        self.extended: List[Tuple[str, str, int]] = []
        for name in queues or []:
            self.create_queue(name)

    # ------------------------------------------------------------------------
    # Test/local helpers
    # ------------------------------------------------------------------------

    @staticmethod
    def address_for(name: str) -> str:
        return f"{ADDRESS_SCHEME}{name}"

    def create_queue(self, name: str) -> str:
        with self._cond:
            self._queues.setdefault(self.address_for(name), [])
        return self.address_for(name)

    def send(self, name: str, body: str, attributes: Optional[Dict[str, str]] = None) -> str:
        """Enqueue a message (creates the queue if needed). Returns its message id."""
        address = self.create_queue(name)
        message_id = uuid.uuid4().hex
        with self._cond:
            self._queues[address].append(_Entry(message_id=message_id, body=body, attributes=dict(attributes or {})))
            self._cond.notify_all()
        return message_id

    def pending(self, name: str) -> int:
        """Messages still on the queue (visible or in flight)."""
        with self._cond:
            return len(self._queues.get(self.address_for(name), []))

    # ------------------------------------------------------------------------
    # QueueGateway
    # ------------------------------------------------------------------------

    def resolve_address(self, name: str) -> str:
        address = self.address_for(name)
        with self._cond:
            if address not in self._queues:
                raise AddressResolutionError(f"queue does not exist: {name}", address=name)
        return address

    def list_addresses(self, prefix: str) -> List[str]:
        start = self.address_for(prefix)
        with self._cond:
            return sorted(a for a in self._queues if a.startswith(start))

    def receive_batch(
        self,
        address: str,
        max_count: int = 10,
        wait_seconds: int = 20,
        visibility_seconds: int = 30,
    ) -> List[RawMessage]:
        deadline = time.monotonic() + max(0, wait_seconds)
        with self._cond:
            if address not in self._queues:
                raise AddressResolutionError("queue does not exist", address=address)
            while True:
                now = time.time()
                visible = [e for e in self._queues[address] if e.visible_at <= now]
                remaining = deadline - time.monotonic()
                if visible or remaining <= 0:
                    break
                self._cond.wait(timeout=min(remaining, 0.1))

            batch: List[RawMessage] = []
            for entry in visible[: max(1, max_count)]:
                entry.receipt_handle = uuid.uuid4().hex
                entry.receive_count += 1
                entry.visible_at = now + visibility_seconds
                batch.append(RawMessage(
                    message_id=entry.message_id,
                    receipt_handle=entry.receipt_handle,
                    body=entry.body,
                    attributes=entry.attributes,
                    system_attributes={
                        "ApproximateReceiveCount": str(entry.receive_count),
                        "SentTimestamp": str(int(entry.sent_at * 1000)),
                    },
                ))
            return batch

    def _find(self, address: str, ack_token: str) -> Optional[_Entry]:
        for entry in self._queues.get(address, []):
            if entry.receipt_handle == ack_token:
                return entry
        return None

    def acknowledge(self, address: str, ack_token: str) -> None:
        with self._cond:
            self.acknowledged.append((address, ack_token))
            entry = self._find(address, ack_token)
            if entry is None:
                if ack_token in self._deleted:
                    return
                raise AcknowledgeError("unknown receipt handle", address=address, code=RECEIPT_HANDLE_INVALID)
            self._queues[address].remove(entry)
            self._deleted.add(ack_token)

    def release(self, address: str, ack_token: str) -> None:
        with self._cond:
            self.released.append((address, ack_token))
            entry = self._find(address, ack_token)
            if entry is None:
                raise ReleaseError("unknown receipt handle", address=address, code=RECEIPT_HANDLE_INVALID)
            entry.visible_at = 0.0
            self._cond.notify_all()

    def extend_visibility(self, address: str, ack_token: str, seconds: int) -> None:
        with self._cond:
            self.extended.append((address, ack_token, seconds))
            entry = self._find(address, ack_token)
            if entry is None:
                raise VisibilityError("unknown receipt handle", address=address, code=RECEIPT_HANDLE_INVALID)
            entry.visible_at = time.time() + seconds


__all__ = ["InMemoryGateway", "ADDRESS_SCHEME"]
