from typing import Optional


class FunctionError(Exception):
    pass


class ValidationError(FunctionError):
    pass


class NotFoundError(FunctionError):
    def __init__(self, function_id: str):
        super().__init__(f"function '{function_id}' not found")
        self.function_id = function_id


class ProvisionError(FunctionError):
    def __init__(self, message: str, function_id: Optional[str] = None):
        super().__init__(message)
        self.function_id = function_id


class TeardownError(FunctionError):
    pass


class NotRunningError(FunctionError):
    def __init__(self, function_id: str, status: Optional[str] = None):
        super().__init__(f"function '{function_id}' is not in a running state (status: {status})")
        self.function_id = function_id
        self.status = status


class ExecutionError(FunctionError):
    """Worker could not be reached, or answered with something other than a result."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        if status_code is not None:
            message = f"{message}: {status_code} - {body}"
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class StorageError(FunctionError):
    pass


class FunctionBusyError(FunctionError):
    def __init__(self, function_id: str):
        super().__init__(f"function '{function_id}' is locked by another operation")
        self.function_id = function_id
