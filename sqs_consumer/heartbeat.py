"""
Visibility heartbeat: keep a message hidden while its handler is still working.

Best-effort: failures are logged, never raised. Stops on its own once the receipt
handle is no longer valid (message acked/released elsewhere).
"""

from __future__ import annotations

import random
import threading
from contextlib import contextmanager
from typing import Optional

from .errors import GatewayError, is_receipt_invalid
from .gateway import SQS_MAX_VISIBILITY
from .logging import get_logger


def extend_visibility_loop(
    gateway,
    address: str,
    ack_token: str,
    base_timeout: int,
    heartbeat_every: int,
    stop: threading.Event,
    logger=None,
) -> None:
    """Extend visibility to base_timeout every ~heartbeat_every seconds until stop is set."""
    log = logger or get_logger("heartbeat")

    base_timeout = max(1, min(int(base_timeout), SQS_MAX_VISIBILITY))
    heartbeat_every = max(1, int(heartbeat_every))

    # Heartbeat must fire before the window lapses
    if heartbeat_every >= base_timeout:
        heartbeat_every = max(1, base_timeout // 2)

    while True:
        jitter = heartbeat_every * random.uniform(-0.10, 0.10)
        if stop.wait(max(1.0, heartbeat_every + jitter)):
            return
        try:
            gateway.extend_visibility(address, ack_token, base_timeout)
            log.debug("Extended visibility", {"timeout": base_timeout})
        except GatewayError as e:
            if is_receipt_invalid(e):
                log.debug("Receipt handle invalid (stopping heartbeat)")
                return
            log.warning("Visibility extension error", {"error": str(e)})
        except Exception as e:
            log.warning("Visibility extension error", {"error": str(e)})


@contextmanager
def visibility_heartbeat(
    gateway,
    address: str,
    ack_token: str,
    base_timeout: int,
    heartbeat_every: Optional[int],
    logger=None,
):
    """
    Maintain visibility for the duration of a block. No-op when heartbeat_every is falsy.

    Example:
        with visibility_heartbeat(gateway, url, token, base_timeout=120, heartbeat_every=45):
            verdict = handler(message)
    """
    if not heartbeat_every:
        yield
        return

    stop = threading.Event()
    t = threading.Thread(
        target=extend_visibility_loop,
        args=(gateway, address, ack_token, base_timeout, heartbeat_every, stop, logger),
        name="heartbeat",
        daemon=True,
    )
    t.start()
    try:
        yield
    finally:
        stop.set()
        t.join(timeout=2)


__all__ = ["extend_visibility_loop", "visibility_heartbeat"]
