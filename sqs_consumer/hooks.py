from __future__ import annotations

import importlib
import inspect
from typing import Any, Callable

from .errors import HandlerLoadError
from .message import NormalizedMessage

# True -> acknowledge (delete), False -> release for immediate redelivery
Handler = Callable[[NormalizedMessage], bool]


class MessageHandler:
    """
    Services implement ONLY:
      - handle(message) -> bool

    Instances are called from many dispatch threads at once and may see the same
    logical message more than once (at-least-once delivery), so handle() must be
    thread-safe and idempotent.
    """

    def handle(self, message: NormalizedMessage) -> bool:
        raise NotImplementedError

    def __call__(self, message: NormalizedMessage) -> bool:
        return self.handle(message)


def load_handler(path: str) -> Handler:
    """
    Resolve "package.module.attr" (or "package.module:attr") to a handler.

    attr may be a function, a MessageHandler instance, or a class that is
    instantiated with no arguments.
    """
    if not isinstance(path, str) or not path.strip():
        raise HandlerLoadError("handler path required")

    if ":" in path:
        mod, attr = path.split(":", 1)
    elif "." in path:
        mod, attr = path.rsplit(".", 1)
    else:
        raise HandlerLoadError(f"handler path must be module.attr: {path}")

    try:
        target: Any = getattr(importlib.import_module(mod), attr)
    except (ImportError, AttributeError) as e:
        raise HandlerLoadError(f"cannot load handler {path}: {e}") from e

    if inspect.isclass(target):
        target = target()
    if not callable(target):
        raise HandlerLoadError(f"handler {path} is not callable")
    return target


__all__ = ["Handler", "MessageHandler", "load_handler"]
