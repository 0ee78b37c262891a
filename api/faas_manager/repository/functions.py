import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.errors import StorageError
from ..models.function import Function

logger = logging.getLogger(__name__)


class SQLAlchemyFunctionStore:
    """
    Keyed repository for Function records.

    Every call runs in its own session and returns detached instances, so the
    lifecycle manager can hold a record across backend calls without keeping a
    transaction open. Database failures surface as StorageError.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, action: str) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error while trying to {action}: {str(e)}")
            raise StorageError(f"failed to {action}: {e}") from e
        finally:
            db.close()

    def get(self, function_id: str) -> Optional[Function]:
        with self._session(f"load function '{function_id}'") as db:
            return db.query(Function).filter(Function.id == function_id).first()

    def list_all(self) -> List[Function]:
        with self._session("list functions") as db:
            return db.query(Function).order_by(Function.created_at, Function.id).all()

    def list_by_status(self, status: str) -> List[Function]:
        with self._session(f"list {status} functions") as db:
            return (
                db.query(Function)
                .filter(Function.status == status)
                .order_by(Function.created_at, Function.id)
                .all()
            )

    def upsert(self, fn: Function) -> Function:
        with self._session(f"save function '{fn.id}'") as db:
            merged = db.merge(fn)
            db.commit()
            return merged

    def delete(self, function_id: str) -> bool:
        with self._session(f"delete function '{function_id}'") as db:
            deleted = db.query(Function).filter(Function.id == function_id).delete()
            db.commit()
            return deleted > 0
