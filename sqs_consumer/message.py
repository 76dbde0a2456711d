"""
Envelope normalization.

A message reaches the queue one of two ways:
- sent directly to SQS: the body is the payload, attributes are SQS message attributes
- fanned out through an SNS topic: the body is a JSON notification envelope whose
  "Message" field holds the payload and "MessageAttributes" holds {Type, Value} pairs

There is no protocol flag telling the two apart. Detection is structural sniffing:
a body that decodes to a JSON object with a non-empty string "Message" (and, if present,
a well-formed "MessageAttributes" object) is treated as an SNS envelope. Everything else,
including unparsable bodies, is passed to the handler verbatim.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

ORIGIN_SQS = "SQS"
ORIGIN_SNS = "SNS"

# SNS/SQS attribute data types we know about. Anything else is kept as-is.
KNOWN_ATTRIBUTE_TYPES = {"String", "Number", "Binary", "String.Array"}


def _frozen(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


# ============================================================================
# RAW MESSAGE (as delivered by a gateway)
# ============================================================================

@dataclass(frozen=True)
class RawMessage:
    """One delivered message. Immutable once received."""
    message_id: str
    receipt_handle: str
    body: str
    attributes: Mapping[str, str] = field(default_factory=dict)
    system_attributes: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "attributes", _frozen(self.attributes))
        object.__setattr__(self, "system_attributes", _frozen(self.system_attributes))

    @classmethod
    def from_sqs(cls, raw: Dict[str, Any]) -> "RawMessage":
        """Build from one entry of a boto3 receive_message response."""
        if not isinstance(raw, dict):
            raise ValueError("from_sqs: expected dict")
        try:
            receipt_handle = raw["ReceiptHandle"]
        except KeyError as e:
            raise ValueError("from_sqs: missing ReceiptHandle") from e

        attributes: Dict[str, str] = {}
        for name, value in (raw.get("MessageAttributes") or {}).items():
            # Binary-only attributes have no StringValue; they are out of scope
            if isinstance(value, dict) and isinstance(value.get("StringValue"), str):
                attributes[name] = value["StringValue"]

        system = {k: str(v) for k, v in (raw.get("Attributes") or {}).items()}

        body = raw.get("Body")
        return cls(
            message_id=raw.get("MessageId", ""),
            receipt_handle=receipt_handle,
            body=body if isinstance(body, str) else "",
            attributes=attributes,
            system_attributes=system,
        )

    @property
    def receive_count(self) -> int:
        try:
            return int(self.system_attributes.get("ApproximateReceiveCount", 1))
        except (TypeError, ValueError):
            return 1


# ============================================================================
# SNS ENVELOPE
# ============================================================================

@dataclass(frozen=True)
class Attribute:
    """Tagged SNS message attribute."""
    type: str
    value: str

    @property
    def is_known_type(self) -> bool:
        return self.type in KNOWN_ATTRIBUTE_TYPES

    @classmethod
    def from_envelope(cls, raw: Any) -> Optional["Attribute"]:
        """Parse one {Type, Value} entry. None if the entry is not an object."""
        if not isinstance(raw, dict):
            return None
        type_ = raw.get("Type", "String")
        value = raw.get("Value", "")
        if not isinstance(type_, str):
            type_ = str(type_)
        if value is None:
            value = ""
        elif not isinstance(value, str):
            # Unsupported shapes survive as their JSON text
            value = json.dumps(value)
        return cls(type=type_, value=value)


@dataclass(frozen=True)
class NotificationEnvelope:
    message: str
    attributes: Mapping[str, Attribute] = field(default_factory=dict)
    topic_arn: Optional[str] = None
    notification_id: Optional[str] = None
    type: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "attributes", _frozen(self.attributes))

    @classmethod
    def parse(cls, body: str) -> Optional["NotificationEnvelope"]:
        """Return the envelope if body looks like one, else None. Never raises."""
        try:
            parsed = json.loads(body)
        except (TypeError, ValueError, RecursionError):
            return None
        if not isinstance(parsed, dict):
            return None

        inner = parsed.get("Message")
        if not isinstance(inner, str) or not inner:
            return None

        raw_attrs = parsed.get("MessageAttributes")
        if raw_attrs is None:
            raw_attrs = {}
        if not isinstance(raw_attrs, dict):
            return None

        attributes: Dict[str, Attribute] = {}
        for name, raw in raw_attrs.items():
            attr = Attribute.from_envelope(raw)
            if attr is None:
                return None
            attributes[name] = attr

        def _opt(key: str) -> Optional[str]:
            v = parsed.get(key)
            return v if isinstance(v, str) else None

        return cls(
            message=inner,
            attributes=attributes,
            topic_arn=_opt("TopicArn"),
            notification_id=_opt("MessageId"),
            type=_opt("Type"),
        )


# ============================================================================
# NORMALIZED MESSAGE (what handlers see)
# ============================================================================

@dataclass(frozen=True)
class NormalizedMessage:
    content: str
    attributes: Mapping[str, str]
    id: str
    ack_token: str
    origin: str = ORIGIN_SQS
    system_attributes: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "attributes", _frozen(self.attributes))
        object.__setattr__(self, "system_attributes", _frozen(self.system_attributes))

    def json(self) -> Any:
        """Decode content as JSON. Raises ValueError if it isn't."""
        return json.loads(self.content)

    @property
    def from_notification(self) -> bool:
        return self.origin == ORIGIN_SNS


def normalize(raw: RawMessage) -> NormalizedMessage:
    """Unwrap an SNS envelope if present; otherwise pass the body through."""
    envelope = NotificationEnvelope.parse(raw.body)

    if envelope is not None:
        return NormalizedMessage(
            content=envelope.message,
            attributes={name: attr.value for name, attr in envelope.attributes.items()},
            id=raw.message_id,
            ack_token=raw.receipt_handle,
            origin=ORIGIN_SNS,
            system_attributes=raw.system_attributes,
        )

    return NormalizedMessage(
        content=raw.body,
        attributes=raw.attributes,
        id=raw.message_id,
        ack_token=raw.receipt_handle,
        origin=ORIGIN_SQS,
        system_attributes=raw.system_attributes,
    )


__all__ = [
    "ORIGIN_SQS",
    "ORIGIN_SNS",
    "KNOWN_ATTRIBUTE_TYPES",
    "RawMessage",
    "Attribute",
    "NotificationEnvelope",
    "NormalizedMessage",
    "normalize",
]
