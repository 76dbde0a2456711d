"""
Configuration loader.
Merges a YAML file + environment variables into typed config objects.
Consumers, the gateway and the runner all read from these - single source of truth.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import ConfigurationError
from .gateway import SQS_MAX_MESSAGES, SQS_MAX_VISIBILITY, SQS_MAX_WAIT
from .hooks import Handler, load_handler
from .logging import LEVELS


# ============================================================================
# DEFAULTS
# ============================================================================

DEFAULT_MAX_MESSAGES = 10
DEFAULT_WAIT_SECONDS = 20
DEFAULT_VISIBILITY_TIMEOUT = 30
DEFAULT_REGION = "us-east-1"
DEFAULT_CONFIG_PATH = os.path.join("config", "default.yaml")

ACK_FAILURE_FATAL = "fatal"
ACK_FAILURE_LOG = "log"
ACK_FAILURE_POLICIES = {ACK_FAILURE_FATAL, ACK_FAILURE_LOG}


# ============================================================================
# CONFIG SCHEMA
# ============================================================================

@dataclass(frozen=True)
class ConsumerConfig:
    """
    One consumer: which queue(s) to read and what to do with each message.
    Immutable; invalid values raise ConfigurationError at construction.
    """
    queue_name: str                     # exact name, or prefix when prefix_based
    handler: Handler
    prefix_based: bool = False
    max_messages: int = DEFAULT_MAX_MESSAGES
    wait_seconds: int = DEFAULT_WAIT_SECONDS
    visibility_timeout: int = DEFAULT_VISIBILITY_TIMEOUT
    name: Optional[str] = None          # label for logs; defaults to queue_name

    # Hardening (None/0 keeps the plain unbounded, fail-fast behavior)
    max_in_flight: Optional[int] = None
    handler_timeout: Optional[float] = None
    heartbeat_seconds: Optional[int] = None
    receive_retries: int = 0
    ack_failure: str = ACK_FAILURE_FATAL

    def __post_init__(self):
        if not isinstance(self.queue_name, str) or not self.queue_name.strip():
            raise ConfigurationError("queue_name is required")
        if not callable(self.handler):
            raise ConfigurationError(f"handler for {self.queue_name} must be callable")
        if not 1 <= self.max_messages <= SQS_MAX_MESSAGES:
            raise ConfigurationError(f"max_messages must be 1-{SQS_MAX_MESSAGES}, got {self.max_messages}")
        if not 0 <= self.wait_seconds <= SQS_MAX_WAIT:
            raise ConfigurationError(f"wait_seconds must be 0-{SQS_MAX_WAIT}, got {self.wait_seconds}")
        if not 0 <= self.visibility_timeout <= SQS_MAX_VISIBILITY:
            raise ConfigurationError(f"visibility_timeout must be 0-{SQS_MAX_VISIBILITY}, got {self.visibility_timeout}")
        if self.max_in_flight is not None and self.max_in_flight < 1:
            raise ConfigurationError("max_in_flight must be >= 1")
        if self.handler_timeout is not None and self.handler_timeout <= 0:
            raise ConfigurationError("handler_timeout must be > 0")
        if self.heartbeat_seconds is not None and self.heartbeat_seconds < 1:
            raise ConfigurationError("heartbeat_seconds must be >= 1")
        if self.receive_retries < 0:
            raise ConfigurationError("receive_retries must be >= 0")
        if self.ack_failure not in ACK_FAILURE_POLICIES:
            raise ConfigurationError(f"ack_failure must be one of {sorted(ACK_FAILURE_POLICIES)}")

    @property
    def label(self) -> str:
        return self.name or self.queue_name


@dataclass(frozen=True)
class AWSConfig:
    """Where the queue service lives. Credentials come from the boto3 chain."""
    region: str = DEFAULT_REGION
    endpoint_url: Optional[str] = None  # LocalStack/ElasticMQ


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"

    def __post_init__(self):
        if self.level.upper() not in LEVELS:
            raise ConfigurationError(f"Invalid log level: {self.level}")


@dataclass(frozen=True)
class AppConfig:
    """Complete process configuration."""
    aws: AWSConfig = field(default_factory=AWSConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    consumers: List[ConsumerConfig] = field(default_factory=list)


# ============================================================================
# ENVIRONMENT VARIABLE NAMES
# ============================================================================

CONFIG_PATH_ENV = "SQS_CONSUMER_CONFIG"

# env var -> (section, key)
ENV_OVERRIDES = {
    "AWS_REGION": ("aws", "region"),
    "AWS_ENDPOINT_URL": ("aws", "endpoint_url"),
    "LOG_LEVEL": ("logging", "level"),
}


# ============================================================================
# LOADING FUNCTIONS
# ============================================================================

def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    Main entry point.
    Load the YAML file, then overlay environment variables.

    Config file selection priority:
    1. Explicit path parameter
    2. SQS_CONSUMER_CONFIG environment variable
    3. config/default.yaml (relative to the working directory)

    Args:
        path: Path to YAML config file
        env: Environment mapping (default: os.environ)

    Returns:
        Complete AppConfig object

    Raises:
        ConfigurationError if the file is missing, invalid, or describes a bad consumer
    """
    env = os.environ if env is None else env
    path = path or env.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH

    if not os.path.exists(path):
        raise ConfigurationError(f"Missing config file at {path}")

    raw = merge_configs(load_yaml_file(path), load_env_vars(env))
    return parse_app_config(raw)


def load_env_vars(env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Read the env vars that override file settings.

    Returns:
        Nested dict shaped like the YAML file, only keys that are set
    """
    env = os.environ if env is None else env
    out: Dict[str, Any] = {}
    for var, (section, key) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            out.setdefault(section, {})[key] = value
    return out


def load_yaml_file(filepath: str) -> Dict[str, Any]:
    """
    Parse single YAML file.
    Return empty dict if file doesn't exist (not an error).

    Raises:
        ConfigurationError if file exists but is invalid YAML or not a mapping
    """
    if not os.path.exists(filepath):
        return {}
    try:
        with open(filepath, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {filepath}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config root must be a mapping: {filepath}")
    return data


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep merge multiple config dicts.
    Later configs override earlier ones.

    Example:
        base = {"aws": {"region": "us-east-1"}}
        override = {"aws": {"region": "eu-west-1"}}
        result = merge_configs(base, override)
        # {"aws": {"region": "eu-west-1"}}
    """
    result: Dict[str, Any] = {}
    for config in configs:
        for key, value in (config or {}).items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = merge_configs(result[key], value)
            else:
                result[key] = value
    return result


def parse_consumer_config(raw: Dict[str, Any]) -> ConsumerConfig:
    """
    Convert one raw consumer entry to ConsumerConfig.
    "handler" may be a dotted import path or a callable. Null values fall back to defaults.
    """
    if not isinstance(raw, dict):
        raise ConfigurationError(f"consumer entry must be a mapping, got {type(raw).__name__}")

    allowed = {f.name for f in fields(ConsumerConfig)}
    unknown = set(raw) - allowed
    if unknown:
        raise ConfigurationError(f"Unknown consumer keys: {', '.join(sorted(unknown))}")

    values = {k: v for k, v in raw.items() if v is not None}
    handler = values.get("handler")
    if isinstance(handler, str):
        values["handler"] = load_handler(handler)
    elif handler is None:
        raise ConfigurationError(f"handler is required for consumer {raw.get('queue_name')!r}")

    try:
        return ConsumerConfig(**values)
    except TypeError as e:
        raise ConfigurationError(f"Invalid consumer config: {e}") from e


def parse_app_config(raw: Dict[str, Any]) -> AppConfig:
    aws_raw = {k: v for k, v in (raw.get("aws") or {}).items() if v is not None}
    log_raw = {k: v for k, v in (raw.get("logging") or {}).items() if v is not None}
    consumers_raw = raw.get("consumers") or []
    if not isinstance(consumers_raw, list):
        raise ConfigurationError("consumers must be a list")

    try:
        aws = AWSConfig(**aws_raw)
        logging_cfg = LoggingConfig(**log_raw)
    except TypeError as e:
        raise ConfigurationError(f"Invalid config section: {e}") from e

    return AppConfig(
        aws=aws,
        logging=logging_cfg,
        consumers=[parse_consumer_config(c) for c in consumers_raw],
    )


__all__ = [
    "ConsumerConfig",
    "AWSConfig",
    "LoggingConfig",
    "AppConfig",
    "load_config",
    "load_env_vars",
    "load_yaml_file",
    "merge_configs",
    "parse_consumer_config",
    "parse_app_config",
    "ACK_FAILURE_FATAL",
    "ACK_FAILURE_LOG",
    "DEFAULT_REGION",
]
