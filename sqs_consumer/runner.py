import argparse
import os
import sys
import threading
from typing import Dict, List, Optional

from .config import AppConfig, load_config
from .consumer import Consumer
from .errors import ConfigurationError
from .gateway import SQSGateway
from .logging import StructuredLogger, get_logger


# ==========================================================
# Registry
# ==========================================================

class ConsumerRunner:
    """
    Runs a set of independently configured consumers, each on its own thread.

    A consumer that dies with a fatal error is logged and left dead; the others
    keep running. run() blocks until every consumer has stopped.
    """

    def __init__(self, consumers: List[Consumer], logger: Optional[StructuredLogger] = None):
        self.consumers = list(consumers)
        self.logger = logger or get_logger("runner")
        self.failures: Dict[str, BaseException] = {}
        self._lock = threading.Lock()

    def _run_one(self, consumer: Consumer) -> None:
        try:
            consumer.start()
            self.logger.info("Consumer stopped", {"consumer": consumer.name})
        except Exception as e:
            with self._lock:
                self.failures[consumer.name] = e
            self.logger.error(e, {"context": "consumer", "consumer": consumer.name})

    def stop(self) -> None:
        for consumer in self.consumers:
            consumer.stop()

    def run(self) -> Dict[str, BaseException]:
        """Start every consumer and block. Returns {consumer name: fatal error} once all have stopped."""
        threads = []
        for consumer in self.consumers:
            t = threading.Thread(target=self._run_one, args=(consumer,), name=f"consumer-{consumer.name}", daemon=True)
            t.start()
            threads.append(t)
        self.logger.info("Started consumers", {"count": len(threads)})

        try:
            while any(t.is_alive() for t in threads):
                for t in threads:
                    t.join(timeout=0.5)
        except KeyboardInterrupt:
            self.logger.info("Graceful shutdown (Ctrl+C)")
            self.stop()

        return dict(self.failures)


# ==========================================================
# Wiring
# ==========================================================

def build_consumers(app_config: AppConfig, gateway=None, logger: Optional[StructuredLogger] = None) -> List[Consumer]:
    """One Consumer per configured entry, all sharing a single gateway (one boto3 client per process)."""
    if gateway is None:
        gateway = SQSGateway(region=app_config.aws.region, endpoint_url=app_config.aws.endpoint_url)
    return [Consumer(gateway, cfg, logger=logger) for cfg in app_config.consumers]


# ==========================================================
# Entrypoint
# ==========================================================

def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="sqs-consumer", description="Consume SQS queues with configured handlers.")
    parser.add_argument("--config", "-c", help="YAML config file (default: $SQS_CONSUMER_CONFIG or config/default.yaml)")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR (overrides config)")
    parser.add_argument(
        "--handlers-path",
        action="append",
        default=[],
        help="Directory to search for handler modules, can be used multiple times (default: cwd)",
    )
    args = parser.parse_args(argv)

    # Handler import paths in the config are resolved against these directories
    for path in args.handlers_path or [os.getcwd()]:
        if os.path.isdir(path) and path not in sys.path:
            sys.path.insert(0, path)

    logger = get_logger("runner", level=args.log_level)
    try:
        app_config = load_config(args.config)
    except ConfigurationError as e:
        logger.error(e, {"context": "config"})
        return 2

    level = args.log_level or app_config.logging.level
    logger.set_level(level)
    for name in ("consumer", "gateway", "heartbeat"):
        get_logger(name, level=level)

    if not app_config.consumers:
        logger.error("No consumers configured")
        return 2

    logger.info("Starting consumers", {
        "region": app_config.aws.region,
        "consumers": [c.label for c in app_config.consumers],
    })
    runner = ConsumerRunner(build_consumers(app_config), logger=logger)
    failures = runner.run()
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
