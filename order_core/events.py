from sqlalchemy.orm import Session

from .models import EventOutbox


def emit(db: Session, event_type: str, payload: dict) -> EventOutbox:
    """Queue an event in the outbox; it is published only if this transaction commits."""
    row = EventOutbox(event_type=event_type, payload=payload)
    db.add(row)
    return row
