import json
import threading
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from faas_manager.core.errors import ProvisionError, TeardownError
from faas_manager.database.database import create_db_engine, init_db, make_session_factory
from faas_manager.manager.lifecycle import LifecycleManager
from faas_manager.manager.proxy import ExecutionProxy
from faas_manager.models.function import Function, FunctionStatus
from faas_manager.orchestrators.base import Orchestrator, ProvisionResult
from faas_manager.repository.functions import SQLAlchemyFunctionStore
from faas_manager.storage.code_storage import LocalCodeStorage


class FakeOrchestrator(Orchestrator):
    """Backend stand-in that hands out a fresh endpoint per provisioning."""

    name = "fake"

    def __init__(self):
        self.fail_all = False
        self.fail_ids = set()
        self.teardown_fail_handles = set()
        self.endpoint_factory = None
        self.provisioned = []
        self.torn_down = []
        self.live = {}
        self._counter = 0

    def provision(self, function_id, code_location, handler_reference, timeout=None):
        self.provisioned.append((function_id, code_location, handler_reference))
        if self.fail_all or function_id in self.fail_ids:
            raise ProvisionError("backend refused to start worker", function_id)

        self._counter += 1
        handle = f"worker-{function_id}-{self._counter}"
        if self.endpoint_factory is not None:
            endpoint = self.endpoint_factory(function_id)
        else:
            endpoint = f"127.0.0.1:{20000 + self._counter}"
        self.live[handle] = function_id
        return ProvisionResult(backend_handle=handle, endpoint=endpoint)

    def teardown(self, backend_handle, timeout=None):
        self.torn_down.append(backend_handle)
        if not backend_handle:
            return
        if backend_handle in self.teardown_fail_handles:
            raise TeardownError(f"backend could not remove {backend_handle}")
        self.live.pop(backend_handle, None)


class WorkerHandler(BaseHTTPRequestHandler):
    def do_POST(self):
        raw = self.rfile.read(int(self.headers.get("Content-Length", 0)))
        self.server.received.append({
            "path": self.path,
            "content_type": self.headers.get("Content-Type"),
            "body": raw,
        })

        mode = self.server.mode
        if mode == "echo":
            payload = json.loads(raw)["payload"]
            status, body = 200, json.dumps({"result": json.loads(payload)})
        elif mode == "raw":
            status, body = 200, json.dumps({"result": json.loads(raw)["payload"]})
        elif mode == "fail":
            status, body = 500, "handler raised ZeroDivisionError"
        elif mode == "garbage":
            status, body = 200, "<html>not json</html>"
        else:
            status, body = 200, json.dumps({"output": "missing result"})

        encoded = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        self.wfile.write(encoded)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def worker():
    """A local HTTP worker; set worker.mode to echo, raw, fail, garbage or no-result."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), WorkerHandler)
    server.mode = "echo"
    server.received = []
    server.endpoint = f"127.0.0.1:{server.server_address[1]}"
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return SQLAlchemyFunctionStore(make_session_factory(engine))


@pytest.fixture
def code_storage(tmp_path):
    return LocalCodeStorage(str(tmp_path / "functions"))


@pytest.fixture
def orchestrator():
    return FakeOrchestrator()


@pytest.fixture
def manager(store, code_storage, orchestrator):
    return LifecycleManager(
        store=store,
        code_storage=code_storage,
        orchestrator=orchestrator,
        proxy=ExecutionProxy(timeout=5),
        provision_timeout=10,
        execution_timeout=5,
    )


@pytest.fixture
def make_record(store, code_storage):
    """Insert a function record directly, bypassing the manager."""
    counter = {"n": 0}

    def _make(status=FunctionStatus.RUNNING.value, endpoint="127.0.0.1:9", backend_handle=None, name="fn"):
        counter["n"] += 1
        function_id = f"{counter['n']:016x}"
        fn = Function(
            id=function_id,
            name=name,
            handler_reference=f"handler.{name}",
            code_location=code_storage.save(function_id, b"def fn(p): return p\n"),
            backend_handle=backend_handle if backend_handle is not None else f"old-{function_id}",
            endpoint=endpoint,
            status=status,
            created_at=datetime(2025, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=counter["n"]),
        )
        return store.upsert(fn)

    return _make
