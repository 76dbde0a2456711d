"""
Exception taxonomy for the consumer engine.

- ConfigurationError: bad settings, raised at construction (process must not start)
- GatewayError and subclasses: queue service failures, fatal to a consumer by default
- Envelope parse problems never raise; the normalizer falls back to the raw body
"""

from __future__ import annotations

from typing import Optional


class ConsumerError(Exception):
    """Base class for every error raised by sqs_consumer."""


class ConfigurationError(ConsumerError, ValueError):
    """Invalid consumer configuration (e.g. empty queue name)."""


class HandlerLoadError(ConfigurationError):
    """A handler import path could not be resolved to a callable."""


# ============================================================================
# GATEWAY ERRORS
# ============================================================================

RECEIPT_INVALID_CODES = {"ReceiptHandleIsInvalid", "InvalidParameterValue", "MessageNotInflight"}


class GatewayError(ConsumerError):
    """
    A queue operation failed.

    Carries the queue address (or name/prefix) the call targeted, the
    underlying exception, if any, and the service error code. The code is
    taken from a botocore ClientError cause when not given explicitly.
    """

    operation = "gateway"

    def __init__(
        self,
        message: str,
        address: Optional[str] = None,
        cause: Optional[BaseException] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.address = address
        self.cause = cause
        if code is None:
            response = getattr(cause, "response", None)
            if isinstance(response, dict):
                code = response.get("Error", {}).get("Code") or None
        self.code = code

    def __str__(self) -> str:
        base = super().__str__()
        if self.address:
            base = f"{base} (address={self.address})"
        if self.cause is not None:
            base = f"{base}: {type(self.cause).__name__}: {self.cause}"
        return base


class AddressResolutionError(GatewayError):
    operation = "resolve_address"


class DiscoveryError(GatewayError):
    operation = "list_addresses"


class ReceiveError(GatewayError):
    operation = "receive_batch"


class AcknowledgeError(GatewayError):
    operation = "acknowledge"


class ReleaseError(GatewayError):
    operation = "release"


class VisibilityError(GatewayError):
    operation = "extend_visibility"


def is_receipt_invalid(e: BaseException) -> bool:
    """True if the error means the receipt handle is gone (message deleted or expired)."""
    return getattr(e, "code", None) in RECEIPT_INVALID_CODES


__all__ = [
    "RECEIPT_INVALID_CODES",
    "is_receipt_invalid",
    "ConsumerError",
    "ConfigurationError",
    "HandlerLoadError",
    "GatewayError",
    "AddressResolutionError",
    "DiscoveryError",
    "ReceiveError",
    "AcknowledgeError",
    "ReleaseError",
    "VisibilityError",
]
