"""
Keyed persistence helpers.

Every record with a natural key (attempt+question, response, candidate+session)
is written through upsert(): one code path for create and update, so repeated
finalize/correction runs converge instead of duplicating rows.

NO GLOBAL LOCKS here - the unique constraints decide races.
"""
import logging
from typing import Any, Dict, Tuple, Type, TypeVar

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from exam_results.errors import PersistenceError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")


async def _select_by_key(db: AsyncSession, model: Type[ModelT], key: Dict[str, Any]):
    conditions = [getattr(model, column) == value for column, value in key.items()]
    result = await db.execute(select(model).where(and_(*conditions)))
    return result.scalar_one_or_none()


async def upsert(
    db: AsyncSession,
    model: Type[ModelT],
    key: Dict[str, Any],
    values: Dict[str, Any],
    overwrite: bool = True
) -> Tuple[ModelT, bool]:
    """
    Insert-or-update a row identified by its natural key.

    Args:
        db: Database session
        model: ORM class with a unique constraint over the key columns
        key: Natural key column -> value
        values: Columns to write
        overwrite: When False an existing row is returned untouched

    Returns:
        Tuple of (row, created)

    Raises:
        PersistenceError: If the write fails for any reason other than a lost race
    """
    try:
        existing = await _select_by_key(db, model, key)
        if existing is not None:
            if overwrite:
                for column, value in values.items():
                    setattr(existing, column, value)
                await db.flush()
            return existing, False

        row = model(**key, **values)
        try:
            async with db.begin_nested():
                db.add(row)
        except IntegrityError:
            # Race condition: another writer inserted the same key
            logger.info(f"Concurrent insert on {model.__tablename__} {key}; applying to existing row")
            existing = await _select_by_key(db, model, key)
            if existing is None:
                raise
            if overwrite:
                for column, value in values.items():
                    setattr(existing, column, value)
                await db.flush()
            return existing, False

        return row, True

    except SQLAlchemyError as e:
        logger.error(f"Upsert failed on {model.__tablename__} {key}: {type(e).__name__}: {e}")
        raise PersistenceError(
            f"Failed to write {model.__tablename__}",
            details={"table": model.__tablename__, "key": key}
        ) from e


async def commit_or_raise(db: AsyncSession, context: str, details: Dict[str, Any] = None):
    """Commit the session; on failure roll back and raise PersistenceError."""
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Commit failed during {context}: {type(e).__name__}: {e}")
        raise PersistenceError(f"Failed to persist {context}", details=details) from e
