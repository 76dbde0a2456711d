# service/handlers.py
from sqs_consumer.hooks import MessageHandler
from sqs_consumer.logging import get_logger

logger = get_logger("service")


def log_and_ack(message):
    """Log the message and acknowledge it."""
    logger.info("Processing message", {
        "message_id": message.id,
        "origin": message.origin,
        "attributes": dict(message.attributes),
    })
    return True


class JsonOrderHandler(MessageHandler):
    """Acknowledge JSON objects that carry an order_id; release everything else."""

    def handle(self, message):
        try:
            payload = message.json()
        except ValueError:
            logger.warning("Unparsable content (releasing)", {"message_id": message.id})
            return False

        if not isinstance(payload, dict) or "order_id" not in payload:
            return False

        # Do your work here - the consumer acks/releases based on the return value
        logger.info("Order received", {"order_id": payload["order_id"], "message_id": message.id})
        return True
