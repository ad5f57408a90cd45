from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import StoreError


async def safe_commit(session, error_message: str = "Database error"):
    """Commit, rolling back and re-raising driver errors as StoreError."""
    try:
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        raise StoreError(error_message) from e
