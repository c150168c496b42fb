"""
Database Helper Utilities

Provides:
- Database dialect detection (PostgreSQL vs SQLite)
- Row locking on PostgreSQL
- Upsert by natural key
"""

import logging
from typing import Any, Dict, Optional, Tuple, Type, TypeVar
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_postgres(db: Session) -> bool:
    """Check if the database is PostgreSQL"""
    try:
        return db.bind.dialect.name == 'postgresql'
    except AttributeError:
        return False


def find_by_key(db: Session, model: Type[T], key: Dict[str, Any], lock: bool = False) -> Optional[T]:
    """
    Find one row by its natural key.

    With lock=True the row is locked FOR UPDATE on PostgreSQL so concurrent
    upserts of the same key serialize; SQLite ignores the lock.
    """
    query = db.query(model).filter_by(**key)
    if lock and is_postgres(db):
        query = query.with_for_update()
    return query.first()


def upsert_by_key(
    db: Session,
    model: Type[T],
    key: Dict[str, Any],
    values: Dict[str, Any]
) -> Tuple[T, bool]:
    """
    Update the row matching `key` with `values`, or insert it.

    Does not commit. Returns (instance, created).

    Example:
        rate, created = upsert_by_key(
            db, DailyRate,
            {"hotel_id": h, "room_type_id": r, "rate_plan_id": "", "date": d},
            {"rate": 100}
        )
    """
    instance = find_by_key(db, model, key, lock=True)
    if instance is not None:
        for name, value in values.items():
            setattr(instance, name, value)
        return instance, False

    instance = model(**key, **values)
    db.add(instance)
    db.flush()
    return instance, True
