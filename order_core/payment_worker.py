import json
import logging
import time

from sqlalchemy.exc import SQLAlchemyError

from . import payments
from .config import get_settings
from .database import SessionLocal, session_scope
from .errors import OrderCoreError
from .rabbit import connect_with_retry

logger = logging.getLogger(__name__)

GATEWAY_RESULT_KEY = "payment.gateway_result"


def handle_gateway_result(evt: dict, session_factory=SessionLocal) -> bool | None:
    """
    Apply one gateway verdict in its own transaction.

    True when applied, False when the message can never be applied (logged,
    then acked so it cannot wedge the queue). None when the store failed,
    e.g. a lock timeout or a dropped connection; the message should be
    redelivered.
    """
    reference = evt.get("payment_reference")
    outcome = evt.get("outcome")
    logger.info("[payment-worker] processing reference=%s outcome=%s", reference, outcome)

    if not reference or not outcome:
        logger.warning("[payment-worker] malformed message: %s", evt)
        return False

    try:
        with session_scope(session_factory) as db:
            payments.confirm(db, reference, outcome)
    except OrderCoreError as e:
        logger.warning("[payment-worker] rejected reference=%s: %s", reference, e)
        return False
    except SQLAlchemyError as e:
        logger.error("[payment-worker] store error reference=%s: %s; requeueing", reference, e)
        return None
    return True


def on_message(ch, method, props, body):
    try:
        evt = json.loads(body.decode())
    except ValueError:
        logger.warning("[payment-worker] dropping non-JSON message: %r", body[:200])
        evt = None

    if isinstance(evt, dict) and handle_gateway_result(evt) is None:
        ch.basic_nack(delivery_tag=method.delivery_tag, requeue=True)
        return
    ch.basic_ack(delivery_tag=method.delivery_tag)


def consume_forever():
    settings = get_settings()
    while True:
        conn = None
        try:
            conn, ch = connect_with_retry("payment-worker")
            qname = settings.GATEWAY_RESULT_QUEUE
            ch.queue_declare(queue=qname, durable=True)
            ch.queue_bind(queue=qname, exchange=settings.EVENTS_EXCHANGE, routing_key=GATEWAY_RESULT_KEY)

            logger.info("[payment-worker] listening on %s ...", GATEWAY_RESULT_KEY)
            ch.basic_qos(prefetch_count=10)
            ch.basic_consume(queue=qname, on_message_callback=on_message)
            ch.start_consuming()
        except Exception:
            logger.exception("[payment-worker] consuming error; reconnecting...")
            if conn is not None and conn.is_open:
                conn.close()
            time.sleep(2)


if __name__ == "__main__":
    logging.basicConfig(level=get_settings().LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    consume_forever()
