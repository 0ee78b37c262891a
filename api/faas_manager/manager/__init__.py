from .lifecycle import LifecycleManager, ReconcileOutcome
from .locks import LocalFunctionLocks, RedisFunctionLocks
from .proxy import ExecutionProxy

__all__ = [
    "LifecycleManager",
    "ReconcileOutcome",
    "LocalFunctionLocks",
    "RedisFunctionLocks",
    "ExecutionProxy",
]
