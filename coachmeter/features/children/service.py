"""
Child directory (beneficiary identity lookup).
- register_child(child_id, name, now=...)
- get_child(child_id)
- child_exists(child_id)
"""

from datetime import datetime
from typing import Optional
from sqlalchemy import select, insert, update

from coachmeter.core.clock import ensure_utc
from coachmeter.core.database import get_db_session, children
from coachmeter.core.errors import ValidationError
from coachmeter.models.child import Child


def get_child(child_id: str) -> Optional[Child]:
    with get_db_session() as session:
        row = session.execute(select(children).where(children.c.id == child_id)).first()
        if not row:
            return None
        return Child(id=row.id, name=row.name, created_at=ensure_utc(row.created_at))


def child_exists(child_id: str) -> bool:
    with get_db_session() as session:
        return session.execute(
            select(children.c.id).where(children.c.id == child_id)
        ).first() is not None


def register_child(child_id: str, name: str, *, now: datetime) -> Child:
    """Create the child, or refresh its display name if it already exists."""
    if not child_id or not child_id.strip():
        raise ValidationError("child_id is required")
    if not name or not name.strip():
        raise ValidationError("Child name is required")

    now = ensure_utc(now)
    with get_db_session() as session:
        existing = session.execute(select(children).where(children.c.id == child_id)).first()
        if existing:
            session.execute(
                update(children).where(children.c.id == child_id).values(name=name.strip())
            )
            return Child(id=child_id, name=name.strip(), created_at=ensure_utc(existing.created_at))

        session.execute(insert(children).values(id=child_id, name=name.strip(), created_at=now))
    return Child(id=child_id, name=name.strip(), created_at=now)
