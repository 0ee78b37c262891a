from datetime import datetime
from typing import Any

from pydantic import BaseModel


class FunctionOut(BaseModel):
    id: str
    name: str
    handler_reference: str
    backend_handle: str
    endpoint: str
    status: str
    created_at: datetime

    class Config:
        from_attributes = True


class FunctionExecutionRequest(BaseModel):
    payload: str


class FunctionExecutionResult(BaseModel):
    result: Any = None
