import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, Response, UploadFile, status

from ..core.errors import (
    FunctionBusyError,
    FunctionError,
    NotFoundError,
    ValidationError,
)
from ..manager.lifecycle import LifecycleManager
from ..schemas.function import FunctionExecutionRequest, FunctionExecutionResult, FunctionOut

# Configure logging
logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/functions",
    tags=["functions"]
)


def get_manager(request: Request) -> LifecycleManager:
    return request.app.state.manager


def default_handler_reference(function_name: str) -> str:
    return f"function.handler.{function_name}"


def _http_error(e: FunctionError, action: str) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, FunctionBusyError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    logger.error(f"Error trying to {action}: {str(e)}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@router.post("", response_model=FunctionOut, status_code=status.HTTP_201_CREATED)
def create_function(
    python_file: Optional[UploadFile] = File(None),
    function_name: Optional[str] = Form(None),
    handler: Optional[str] = Form(None),
    manager: LifecycleManager = Depends(get_manager),
):
    """Upload handler code and start a worker for it."""
    if python_file is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="missing 'python_file' in form")
    if not function_name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="missing 'function_name' in form")

    code = python_file.file.read()
    handler_reference = handler or default_handler_reference(function_name)
    try:
        return manager.add_function(function_name, handler_reference, code)
    except FunctionError as e:
        raise _http_error(e, "add function")


@router.get("", response_model=List[FunctionOut])
def list_functions(manager: LifecycleManager = Depends(get_manager)):
    try:
        return manager.list_functions()
    except FunctionError as e:
        raise _http_error(e, "list functions")


@router.get("/{function_id}", response_model=FunctionOut)
def get_function(function_id: str, manager: LifecycleManager = Depends(get_manager)):
    try:
        return manager.get_function(function_id)
    except FunctionError as e:
        raise _http_error(e, "get function")


@router.post("/{function_id}/execute", response_model=FunctionExecutionResult)
def execute_function(
    function_id: str,
    request: FunctionExecutionRequest,
    manager: LifecycleManager = Depends(get_manager),
):
    """Send the payload to the function's worker and return its result."""
    try:
        result = manager.execute_function(function_id, request.payload)
    except FunctionError as e:
        raise _http_error(e, f"execute function {function_id}")
    return {"result": result}


@router.delete("/{function_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_function(function_id: str, manager: LifecycleManager = Depends(get_manager)):
    try:
        manager.remove_function(function_id)
    except FunctionError as e:
        raise _http_error(e, f"remove function {function_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
