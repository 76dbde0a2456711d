"""
Queue gateway: the five (plus one) queue operations the consumer needs.

Modular design:
- QueueGateway protocol: capability interface the Consumer depends on
- SQSGateway class: boto3 adapter for Amazon SQS
- Other backends (InMemoryGateway, test doubles) satisfy the protocol without inheriting

No retry happens here beyond botocore's own transport retries. Every failure is
translated into the errors.py taxonomy and left for the consumer to decide on.
"""

from __future__ import annotations

import uuid
from typing import List, Optional, Protocol, runtime_checkable

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .errors import (
    AcknowledgeError,
    AddressResolutionError,
    DiscoveryError,
    ReceiveError,
    ReleaseError,
    VisibilityError,
)
from .logging import get_logger
from .message import RawMessage


# ============================================================================
# CONSTANTS
# ============================================================================

SQS_MAX_MESSAGES = 10
SQS_MAX_WAIT = 20
SQS_MAX_VISIBILITY = 43_200  # 12h hard SQS limit

NON_EXISTENT_QUEUE_CODES = {
    "AWS.SimpleQueueService.NonExistentQueue",
    "QueueDoesNotExist",
}

_TRANSPORT_ERRORS = (ClientError, BotoCoreError)


def _err_code(e: Exception) -> str:
    if isinstance(e, ClientError):
        return e.response.get("Error", {}).get("Code", "")
    return ""


def queue_name_from_address(address: str) -> str:
    """Last path segment of a queue URL (used for logging)."""
    return address.rstrip("/").split("/")[-1]


# ============================================================================
# CAPABILITY INTERFACE
# ============================================================================

@runtime_checkable
class QueueGateway(Protocol):
    def resolve_address(self, name: str) -> str:
        ...

    def list_addresses(self, prefix: str) -> List[str]:
        ...

    def receive_batch(
        self,
        address: str,
        max_count: int,
        wait_seconds: int,
        visibility_seconds: int,
    ) -> List[RawMessage]:
        ...

    def acknowledge(self, address: str, ack_token: str) -> None:
        ...

    def release(self, address: str, ack_token: str) -> None:
        ...

    def extend_visibility(self, address: str, ack_token: str, seconds: int) -> None:
        ...


# ============================================================================
# SQS ADAPTER
# ============================================================================

class SQSGateway:
    """
    QueueGateway backed by Amazon SQS through boto3.

    The boto3 client is created lazily and shared by every loop and dispatch
    thread of every consumer that holds this gateway (boto3 clients are thread-safe).
    """

    def __init__(
        self,
        sqs_client=None,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        logger=None,
    ):
        """
        Args:
            sqs_client: boto3 SQS client (if None, creates default)
            region: AWS region (used if creating default client)
            endpoint_url: custom endpoint, e.g. LocalStack/ElasticMQ
            logger: StructuredLogger instance (if None, creates default)
        """
        self._sqs = sqs_client
        self._region = region
        self._endpoint_url = endpoint_url
        self.logger = logger or get_logger("gateway")

    @property
    def sqs(self):
        """Lazy-load SQS client with long-polling config."""
        if self._sqs is None:
            self._sqs = boto3.client(
                "sqs",
                region_name=self._region,
                endpoint_url=self._endpoint_url,
                config=Config(
                    retries={"max_attempts": 6, "mode": "standard"},
                    read_timeout=70,     # > 20s long-poll
                    connect_timeout=3,
                    max_pool_connections=50,
                ),
            )
        return self._sqs

    # ------------------------------------------------------------------------
    # ADDRESSES
    # ------------------------------------------------------------------------

    def resolve_address(self, name: str) -> str:
        """Queue name -> queue URL."""
        if not isinstance(name, str) or not name.strip():
            raise AddressResolutionError("resolve_address: queue name required")
        try:
            resp = self.sqs.get_queue_url(QueueName=name)
        except _TRANSPORT_ERRORS as e:
            if _err_code(e) in NON_EXISTENT_QUEUE_CODES:
                raise AddressResolutionError(f"queue does not exist: {name}", address=name, cause=e) from e
            raise AddressResolutionError(f"failed to resolve queue: {name}", address=name, cause=e) from e

        url = resp.get("QueueUrl")
        if not url:
            raise AddressResolutionError(f"no QueueUrl returned for {name}", address=name)
        self.logger.debug("Resolved queue", {"queue": name, "queue_url": url})
        return url

    def list_addresses(self, prefix: str) -> List[str]:
        """All queue URLs whose name starts with prefix. Empty list if none."""
        urls: List[str] = []
        token = None
        try:
            while True:
                params = {"QueueNamePrefix": prefix}
                if token:
                    params["NextToken"] = token
                resp = self.sqs.list_queues(**params)
                urls.extend(resp.get("QueueUrls", []))
                token = resp.get("NextToken")
                if not token:
                    break
        except _TRANSPORT_ERRORS as e:
            raise DiscoveryError(f"failed to list queues with prefix {prefix!r}", address=prefix, cause=e) from e

        self.logger.debug("Listed queues", {"prefix": prefix, "count": len(urls)})
        return urls

    # ------------------------------------------------------------------------
    # RECEIVING
    # ------------------------------------------------------------------------

    def receive_batch(
        self,
        address: str,
        max_count: int = SQS_MAX_MESSAGES,
        wait_seconds: int = SQS_MAX_WAIT,
        visibility_seconds: int = 30,
    ) -> List[RawMessage]:
        """Long-poll the queue and return 0..max_count messages (max_count capped at 10)."""
        params = {
            "QueueUrl": address,
            "MaxNumberOfMessages": max(1, min(int(max_count), SQS_MAX_MESSAGES)),
            "WaitTimeSeconds": max(0, min(int(wait_seconds), SQS_MAX_WAIT)),
            "VisibilityTimeout": max(0, min(int(visibility_seconds), SQS_MAX_VISIBILITY)),
            "MessageAttributeNames": ["All"],
            "AttributeNames": ["ApproximateReceiveCount", "SentTimestamp"],
            "ReceiveRequestAttemptId": uuid.uuid4().hex,
        }
        try:
            resp = self.sqs.receive_message(**params)
        except _TRANSPORT_ERRORS as e:
            raise ReceiveError("failed to receive messages", address=address, cause=e) from e

        messages: List[RawMessage] = []
        for raw in resp.get("Messages", []):
            try:
                messages.append(RawMessage.from_sqs(raw))
            except ValueError as e:
                # Without a receipt handle the message can't be acked or released
                self.logger.warning("Dropping malformed SQS message", {
                    "queue_url": address,
                    "message_id": raw.get("MessageId") if isinstance(raw, dict) else None,
                    "error": str(e),
                })
        return messages

    # ------------------------------------------------------------------------
    # ACKNOWLEDGEMENT & VISIBILITY
    # ------------------------------------------------------------------------

    def acknowledge(self, address: str, ack_token: str) -> None:
        """ACK message: permanently remove from queue. Deleting twice is not an error."""
        if not isinstance(ack_token, str) or not ack_token.strip():
            raise AcknowledgeError("acknowledge: ack_token required", address=address)
        try:
            self.sqs.delete_message(QueueUrl=address, ReceiptHandle=ack_token)
        except _TRANSPORT_ERRORS as e:
            raise AcknowledgeError("failed to delete message", address=address, cause=e) from e

    def release(self, address: str, ack_token: str) -> None:
        """Make the message visible again right away (visibility timeout 0)."""
        if not isinstance(ack_token, str) or not ack_token.strip():
            raise ReleaseError("release: ack_token required", address=address)
        try:
            self.sqs.change_message_visibility(
                QueueUrl=address,
                ReceiptHandle=ack_token,
                VisibilityTimeout=0,
            )
        except _TRANSPORT_ERRORS as e:
            raise ReleaseError("failed to release message", address=address, cause=e) from e

    def extend_visibility(self, address: str, ack_token: str, seconds: int) -> None:
        """Extend (or shorten) message invisibility."""
        if not isinstance(ack_token, str) or not ack_token.strip():
            raise VisibilityError("extend_visibility: ack_token required", address=address)
        if not isinstance(seconds, int) or seconds < 0:
            raise VisibilityError("extend_visibility: seconds must be non-negative int", address=address)
        try:
            self.sqs.change_message_visibility(
                QueueUrl=address,
                ReceiptHandle=ack_token,
                VisibilityTimeout=min(seconds, SQS_MAX_VISIBILITY),
            )
        except _TRANSPORT_ERRORS as e:
            raise VisibilityError("failed to change visibility", address=address, cause=e) from e


__all__ = [
    "QueueGateway",
    "SQSGateway",
    "queue_name_from_address",
    "SQS_MAX_MESSAGES",
    "SQS_MAX_WAIT",
    "SQS_MAX_VISIBILITY",
]
