"""
Idempotent insert helpers.

Overlapping invocations are tolerated, not prevented: every durable write is
an INSERT ... ON CONFLICT DO NOTHING keyed by natural identity, so the losing
writer's insert is a no-op instead of an error.
"""
from typing import Any, Dict, Optional, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def _insert_for(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model.__table__)
    if dialect == "sqlite":
        return sqlite.insert(model.__table__)
    raise NotImplementedError(f"insert-if-absent is not supported on {dialect}")


def insert_if_absent(
    db: Session,
    model,
    values: Dict[str, Any],
    conflict_columns: Optional[Sequence[str]] = None,
) -> bool:
    """
    Insert one row unless it conflicts with an existing one.

    With no conflict_columns any unique violation is ignored.

    Returns:
        True if this call created the row
    """
    stmt = _insert_for(db, model).values(**values)
    if conflict_columns:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
    else:
        stmt = stmt.on_conflict_do_nothing()
    result = db.execute(stmt)
    return result.rowcount == 1
