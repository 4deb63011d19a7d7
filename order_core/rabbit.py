import logging
import time

import pika
from pika.exceptions import AMQPError

from .config import get_settings

logger = logging.getLogger(__name__)


def connect_with_retry(component: str, max_wait_sec: int = 60):
    """Open a channel on the events exchange, backing off until RabbitMQ answers."""
    settings = get_settings()
    params = pika.URLParameters(settings.RABBITMQ_URL)
    params.heartbeat = 30
    params.blocked_connection_timeout = 300

    attempt = 0
    while True:
        try:
            conn = pika.BlockingConnection(params)
            ch = conn.channel()
            ch.exchange_declare(exchange=settings.EVENTS_EXCHANGE, exchange_type="direct", durable=True)
            return conn, ch
        except AMQPError as e:
            attempt += 1
            sleep = min(2 ** attempt, max_wait_sec)
            logger.warning("[%s] RabbitMQ connect failed (%s); retrying in %ss", component, e, sleep)
            time.sleep(sleep)
