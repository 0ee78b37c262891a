import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional

from ..core.errors import (
    NotFoundError,
    NotRunningError,
    ProvisionError,
    StorageError,
    TeardownError,
    ValidationError,
)
from ..models.function import Function, FunctionStatus
from ..orchestrators.base import Orchestrator
from .locks import LocalFunctionLocks
from .proxy import ExecutionProxy

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    function_id: str
    ok: bool
    error: Optional[str] = None


def new_function_id() -> str:
    return uuid.uuid4().hex[:16]


class LifecycleManager:
    """
    Drives functions through creating -> running | error, and running -> stopped
    when a restart fails.

    This is the only place that talks to the orchestrator and writes function
    records in the same operation. Mutating sequences for one function id hold
    that id's lock exclusively; invocations hold it shared.
    """

    def __init__(
        self,
        store,
        code_storage,
        orchestrator: Orchestrator,
        proxy: Optional[ExecutionProxy] = None,
        locks=None,
        provision_timeout: Optional[float] = None,
        execution_timeout: Optional[float] = None,
    ):
        self.store = store
        self.code_storage = code_storage
        self.orchestrator = orchestrator
        self.proxy = proxy or ExecutionProxy(timeout=execution_timeout)
        self.locks = locks or LocalFunctionLocks()
        self.provision_timeout = provision_timeout
        self.execution_timeout = execution_timeout

    def add_function(self, name: str, handler_reference: str, code: bytes) -> Function:
        if not name:
            raise ValidationError("missing function name")
        if not handler_reference:
            raise ValidationError("missing handler reference")
        if code is None:
            raise ValidationError("missing handler code")

        function_id = new_function_id()
        with self.locks.hold(function_id):
            code_location = self.code_storage.save(function_id, code)

            fn = Function(
                id=function_id,
                name=name,
                handler_reference=handler_reference,
                code_location=code_location,
                backend_handle="",
                endpoint="",
                status=FunctionStatus.CREATING.value,
                created_at=datetime.now(timezone.utc),
            )
            fn = self.store.upsert(fn)
            logger.info(f"Created function record {function_id} ({name}), provisioning worker")

            try:
                result = self.orchestrator.provision(
                    function_id, code_location, handler_reference, timeout=self.provision_timeout)
            except Exception as e:
                # Record and code stay behind for inspection
                logger.error(f"Failed to provision worker for function {function_id}: {str(e)}")
                if isinstance(e, ProvisionError):
                    error = e
                    error.function_id = function_id
                else:
                    error = ProvisionError(f"start worker: {e}", function_id)
                    error.__cause__ = e

                fn.status = FunctionStatus.ERROR.value
                fn.endpoint = ""
                try:
                    self.store.upsert(fn)
                except StorageError as save_error:
                    # error keeps the storage failure as its context
                    logger.error(f"Failed to record error status for function {function_id}: {str(save_error)}")
                    raise error
                raise error

            fn.backend_handle = result.backend_handle
            fn.endpoint = result.endpoint
            fn.status = FunctionStatus.RUNNING.value
            try:
                fn = self.store.upsert(fn)
            except StorageError:
                logger.error(f"Failed to save worker details for function {function_id}, tearing the worker down")
                self._teardown_quietly(function_id, result.backend_handle)
                raise

        logger.info(f"Function {function_id} is running at {fn.endpoint}")
        return fn

    def get_function(self, function_id: str) -> Function:
        fn = self.store.get(function_id)
        if fn is None:
            raise NotFoundError(function_id)
        return fn

    def list_functions(self) -> List[Function]:
        return self.store.list_all()

    def execute_function(self, function_id: str, payload: str, timeout: Optional[float] = None) -> Any:
        # Shared hold for the whole call: invocations run side by side, while
        # remove and restart wait until no request is using the endpoint
        with self.locks.share(function_id):
            fn = self.get_function(function_id)
            if not fn.is_running:
                raise NotRunningError(function_id, fn.status)

            return self.proxy.invoke(
                fn.endpoint, payload, timeout=timeout if timeout is not None else self.execution_timeout)

    def remove_function(self, function_id: str):
        with self.locks.hold(function_id):
            fn = self.get_function(function_id)

            try:
                self.orchestrator.teardown(fn.backend_handle, timeout=self.provision_timeout)
            except TeardownError as e:
                logger.warning(f"Failed to tear down worker for function {function_id}, proceeding with cleanup: {str(e)}")

            try:
                self.code_storage.delete(fn.code_location)
            except StorageError as e:
                logger.error(f"Failed to delete code for function {function_id}: {str(e)}")

            # An orphaned record would hide a live worker, so this one is fatal
            self.store.delete(function_id)

        logger.info(f"Function {function_id} removed successfully")

    def restart_running_functions(self) -> List[ReconcileOutcome]:
        """Re-provision every function recorded as running by a previous process.

        Only the initial query can raise; per-function failures mark that
        function stopped and are reported in the returned outcomes.
        """
        logger.info("Restarting any previously running functions...")
        running = self.store.list_by_status(FunctionStatus.RUNNING.value)

        outcomes = []
        for fn in running:
            outcomes.append(self._restart_one(fn.id))

        failed = [o for o in outcomes if not o.ok]
        logger.info(f"Restart finished: {len(outcomes) - len(failed)} running, {len(failed)} failed")
        return outcomes

    def cleanup_all_functions(self) -> List[ReconcileOutcome]:
        """Tear down every running worker at shutdown. Records are left untouched."""
        logger.info("Cleaning up all function workers")
        running = self.store.list_by_status(FunctionStatus.RUNNING.value)

        outcomes = []
        for fn in running:
            try:
                self.orchestrator.teardown(fn.backend_handle, timeout=self.provision_timeout)
                outcomes.append(ReconcileOutcome(fn.id, True))
            except Exception as e:
                logger.error(f"Failed during cleanup of function {fn.id}: {str(e)}")
                outcomes.append(ReconcileOutcome(fn.id, False, str(e)))
        return outcomes

    def _restart_one(self, function_id: str) -> ReconcileOutcome:
        try:
            with self.locks.hold(function_id):
                # Re-read under the lock; the record may have been removed meanwhile
                fn = self.store.get(function_id)
                if fn is None or fn.status != FunctionStatus.RUNNING.value:
                    logger.info(f"Function {function_id} is no longer running, skipping restart")
                    return ReconcileOutcome(function_id, True)

                logger.info(f"Restarting function {function_id}")
                error = None
                result = None
                try:
                    result = self.orchestrator.provision(
                        fn.id, fn.code_location, fn.handler_reference, timeout=self.provision_timeout)
                    fn.backend_handle = result.backend_handle
                    fn.endpoint = result.endpoint
                except Exception as e:
                    logger.error(f"Failed to restart worker for function {function_id}: {str(e)}")
                    error = str(e)
                    fn.status = FunctionStatus.STOPPED.value
                    fn.endpoint = ""

                try:
                    self.store.upsert(fn)
                except StorageError:
                    if result is not None:
                        logger.error(f"Failed to save new worker details for function {function_id}, tearing the worker down")
                        self._teardown_quietly(function_id, result.backend_handle)
                    raise
                return ReconcileOutcome(function_id, error is None, error)
        except Exception as e:
            logger.error(f"Failed to update function {function_id} on restart: {str(e)}")
            return ReconcileOutcome(function_id, False, str(e))

    def _teardown_quietly(self, function_id: str, backend_handle: str):
        try:
            self.orchestrator.teardown(backend_handle, timeout=self.provision_timeout)
        except TeardownError as e:
            logger.error(f"Failed to tear down worker for function {function_id}: {str(e)}")
