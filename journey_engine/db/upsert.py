from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session


def insert_ignoring_conflicts(db: Session, model: Any, values: dict[str, Any], *, index_elements: list[str]) -> int:
    """INSERT ... ON CONFLICT DO NOTHING; returns the number of rows written (0 or 1)."""
    bind = db.get_bind()
    if bind.dialect.name == "postgresql":
        stmt = pg_insert(model).values(**values)
    else:
        stmt = sqlite_insert(model).values(**values)
    result = db.execute(stmt.on_conflict_do_nothing(index_elements=index_elements))
    return int(result.rowcount or 0)
