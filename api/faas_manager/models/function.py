import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String

from ..database.database import Base


class FunctionStatus(str, enum.Enum):
    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


def _utcnow():
    return datetime.now(timezone.utc)


class Function(Base):
    __tablename__ = "functions"

    id = Column(String(32), primary_key=True)
    name = Column(String, nullable=False)
    handler_reference = Column(String, nullable=False)
    code_location = Column(String, nullable=False)  # never exposed over HTTP
    backend_handle = Column(String, nullable=False, default="")  # container id or deployment name
    endpoint = Column(String, nullable=False, default="")  # host:port, only valid while running
    status = Column(String, nullable=False, index=True, default=FunctionStatus.CREATING.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def is_running(self) -> bool:
        return self.status == FunctionStatus.RUNNING.value and bool(self.endpoint)

    def __repr__(self):
        return f"<Function id={self.id} name={self.name} status={self.status}>"
