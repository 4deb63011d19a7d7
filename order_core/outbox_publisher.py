import json
import logging
import time
from datetime import datetime, timezone

import pika
from pika.exceptions import AMQPError
from sqlalchemy import select, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from .config import get_settings
from .database import SessionLocal
from .models import EventOutbox
from .rabbit import connect_with_retry

logger = logging.getLogger(__name__)


def wait_for_db(session_factory=SessionLocal, max_wait_sec: int = 60):
    attempt = 0
    while True:
        try:
            with session_factory() as db:
                db.execute(text("select 1"))
            return
        except OperationalError as e:
            attempt += 1
            sleep = min(2 ** attempt, max_wait_sec)
            logger.warning("[publisher] DB connect failed (%s); retrying in %ss", e, sleep)
            time.sleep(sleep)


def publish(channel, event_type: str, payload: dict, exchange: str | None = None):
    body = json.dumps(payload, default=str).encode("utf-8")
    channel.basic_publish(
        exchange=exchange or get_settings().EVENTS_EXCHANGE,
        routing_key=event_type,
        body=body,
        properties=pika.BasicProperties(
            content_type="application/json",
            delivery_mode=2,  # persistent
        ),
    )


def publish_batch(channel, rows, now: datetime | None = None) -> int:
    """
    Publish outbox rows in id order and mark each as it goes out.

    Stops at the first failure; that row and the ones after it stay NEW and
    are picked up again on the next poll, preserving order.
    """
    published = 0
    for row in rows:
        try:
            publish(channel, row.event_type, {"event_id": str(row.event_id), **row.payload})
        except AMQPError as e:
            logger.warning("[publisher] publish failed id=%s: %s; will retry on next loop", row.id, e)
            raise
        row.status = "PUBLISHED"
        row.published_at = now or datetime.now(timezone.utc)
        published += 1
    return published


def relay_once(channel, session_factory=SessionLocal, batch_size: int | None = None) -> int:
    batch_size = batch_size or get_settings().OUTBOX_BATCH_SIZE
    with session_factory() as db:
        rows = db.execute(
            select(EventOutbox)
            .where(EventOutbox.status == "NEW")
            .order_by(EventOutbox.id)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        ).scalars().all()
        if not rows:
            db.rollback()
            return 0
        try:
            count = publish_batch(channel, rows)
        finally:
            # rows already on the wire must not be sent twice
            db.commit()
        return count


def loop():
    settings = get_settings()
    conn, channel = connect_with_retry("publisher")
    logger.info("[publisher] connected to RabbitMQ")

    wait_for_db()
    logger.info("[publisher] connected to DB")

    while True:
        try:
            count = relay_once(channel)
            if count:
                logger.info("[publisher] published %s events", count)
        except AMQPError as e:
            logger.error("[publisher] loop error: %s; reconnecting", e)
            for closable in (channel, conn):
                try:
                    closable.close()
                except AMQPError:
                    pass
            conn, channel = connect_with_retry("publisher")
        except SQLAlchemyError as e:
            logger.error("[publisher] DB error: %s; retrying on next loop", e)
        time.sleep(settings.OUTBOX_POLL_SEC)


if __name__ == "__main__":
    logging.basicConfig(level=get_settings().LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    loop()
