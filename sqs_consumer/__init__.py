"""Concurrent SQS/SNS consumer: batch receive, per-message dispatch, ack or release."""

from .config import AppConfig, AWSConfig, ConsumerConfig, LoggingConfig, load_config
from .consumer import Consumer
from .errors import (
    AcknowledgeError,
    AddressResolutionError,
    ConfigurationError,
    ConsumerError,
    DiscoveryError,
    GatewayError,
    HandlerLoadError,
    ReceiveError,
    ReleaseError,
    VisibilityError,
    is_receipt_invalid,
)
from .gateway import QueueGateway, SQSGateway
from .hooks import Handler, MessageHandler, load_handler
from .local import InMemoryGateway
from .logging import StructuredLogger, get_logger
from .message import Attribute, NormalizedMessage, NotificationEnvelope, RawMessage, normalize
from .runner import ConsumerRunner, build_consumers

__version__ = "0.1.0"
