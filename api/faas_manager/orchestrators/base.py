from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

WORKER_NAME_PREFIX = "faas-worker-"
HANDLER_ENV_VAR = "HANDLER_FUNCTION"


@dataclass(frozen=True)
class ProvisionResult:
    backend_handle: str
    endpoint: str


def worker_name(function_id: str) -> str:
    return WORKER_NAME_PREFIX + function_id


class Orchestrator(ABC):
    """
    Provisions and tears down the resources backing one function worker.

    provision() must be safe to call again for a function whose previous
    attempt failed or whose resources belong to a previous process instance.
    teardown() must be idempotent: an empty handle or resources that are
    already gone count as success.
    """

    name = "base"

    @abstractmethod
    def provision(
        self,
        function_id: str,
        code_location: str,
        handler_reference: str,
        timeout: Optional[float] = None,
    ) -> ProvisionResult:
        """Create the worker and return its handle and reachable endpoint.

        Raises ProvisionError on any backend failure.
        """

    @abstractmethod
    def teardown(self, backend_handle: str, timeout: Optional[float] = None):
        """Remove everything provision() created for the handle.

        Raises TeardownError only for unexpected backend errors.
        """
