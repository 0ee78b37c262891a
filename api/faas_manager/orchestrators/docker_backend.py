import logging
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional

import docker
import requests
from docker.errors import DockerException, ImageNotFound, NotFound
from docker.utils import parse_repository_tag

from ..core.config import Settings
from ..core.errors import ProvisionError, TeardownError
from .base import HANDLER_ENV_VAR, Orchestrator, ProvisionResult, worker_name

logger = logging.getLogger(__name__)

FUNCTION_ID_LABEL = "faas.function-id"

# Failures the docker SDK can raise on API errors, lost connections or timeouts
BACKEND_ERRORS = (DockerException, requests.exceptions.RequestException)


def get_docker_client(settings: Settings) -> docker.DockerClient:
    """Connect to the Docker daemon described by the environment (DOCKER_HOST etc.)."""
    client = docker.from_env(timeout=settings.DOCKER_TIMEOUT)
    client.ping()
    logger.info("Connected to Docker daemon")
    return client


class DockerOrchestrator(Orchestrator):
    """
    Runs each function as a single worker container on one Docker daemon.

    The container is named after the function id, so a stale container from an
    earlier attempt or process can always be found and replaced. docker-py only
    has a client-wide request timeout, so a per-call timeout is applied to
    client.api.timeout while the call runs. Overlapping calls use the largest
    timeout in flight, and DOCKER_TIMEOUT comes back once none is left.
    """

    name = "docker"

    def __init__(self, client: docker.DockerClient, settings: Settings):
        self.client = client
        self._timeout_guard = threading.Lock()
        self._active_timeouts: List[float] = []
        self._default_timeout = None
        self.image = settings.WORKER_IMAGE
        self.worker_port = settings.WORKER_PORT
        self.code_mount = settings.WORKER_CODE_MOUNT
        self.worker_host = settings.WORKER_HOST
        self.auth_config = None

        if settings.REGISTRY_USER and settings.REGISTRY_PASS:
            self.auth_config = {
                "username": settings.REGISTRY_USER,
                "password": settings.REGISTRY_PASS,
            }
            if settings.REGISTRY_URL:
                self.auth_config["serveraddress"] = settings.REGISTRY_URL
            logger.info(f"Configured registry authentication for {settings.REGISTRY_URL or 'default registry'}")

    @property
    def port_key(self) -> str:
        return f"{self.worker_port}/tcp"

    def provision(self, function_id, code_location, handler_reference, timeout=None) -> ProvisionResult:
        with self._request_timeout(timeout):
            return self._provision(function_id, code_location, handler_reference)

    def _provision(self, function_id, code_location, handler_reference) -> ProvisionResult:
        name = worker_name(function_id)

        try:
            self._ensure_image()
            self._remove_stale_container(name)
        except BACKEND_ERRORS as e:
            raise ProvisionError(f"prepare worker container {name}: {e}", function_id) from e

        try:
            container = self.client.containers.create(
                self.image,
                name=name,
                detach=True,
                environment={HANDLER_ENV_VAR: handler_reference},
                labels={FUNCTION_ID_LABEL: function_id},
                ports={self.port_key: None},
                volumes={code_location: {"bind": self.code_mount, "mode": "ro"}},
            )
        except BACKEND_ERRORS as e:
            raise ProvisionError(f"docker create {name}: {e}", function_id) from e

        try:
            container.start()
            container.reload()
            host_port = self._host_port(container)
        except (ProvisionError, *BACKEND_ERRORS) as e:
            logger.error(f"Worker container {name} failed to start, removing it: {str(e)}")
            self._discard(container)
            if isinstance(e, ProvisionError):
                e.function_id = function_id
                raise
            raise ProvisionError(f"docker start {name}: {e}", function_id) from e

        logger.info(f"Worker container {container.id} started for function {function_id} on host port {host_port}")
        return ProvisionResult(backend_handle=container.id, endpoint=f"{self.worker_host}:{host_port}")

    def teardown(self, backend_handle, timeout=None):
        if not backend_handle:
            return
        logger.info(f"Stopping and removing container {backend_handle}")
        try:
            with self._request_timeout(timeout):
                container = self.client.containers.get(backend_handle)
                container.remove(force=True, v=True)
        except NotFound:
            logger.debug(f"Container {backend_handle} already gone")
        except BACKEND_ERRORS as e:
            raise TeardownError(f"remove container {backend_handle}: {e}") from e

    @contextmanager
    def _request_timeout(self, timeout: Optional[float]) -> Iterator[None]:
        if timeout is None:
            yield
            return

        api = self.client.api
        with self._timeout_guard:
            if not self._active_timeouts:
                self._default_timeout = api.timeout
            self._active_timeouts.append(timeout)
            api.timeout = max(self._active_timeouts)
        try:
            yield
        finally:
            with self._timeout_guard:
                self._active_timeouts.remove(timeout)
                api.timeout = max(self._active_timeouts) if self._active_timeouts else self._default_timeout

    def _ensure_image(self):
        try:
            self.client.images.get(self.image)
            return
        except ImageNotFound:
            pass

        repository, tag = parse_repository_tag(self.image)
        logger.info(f"Pulling image {self.image} from registry")
        self.client.images.pull(repository, tag=tag, auth_config=self.auth_config)

    def _remove_stale_container(self, name: str):
        try:
            stale = self.client.containers.get(name)
        except NotFound:
            return
        logger.info(f"Removing stale container {name}")
        try:
            stale.remove(force=True, v=True)
        except NotFound:
            pass

    def _host_port(self, container) -> int:
        ports = container.attrs.get("NetworkSettings", {}).get("Ports") or {}
        for binding in ports.get(self.port_key) or []:
            if binding.get("HostPort"):
                return int(binding["HostPort"])
        raise ProvisionError(f"container {container.name} has no host port bound for {self.port_key}")

    def _discard(self, container):
        try:
            container.remove(force=True, v=True)
        except BACKEND_ERRORS as e:
            logger.warning(f"Failed to remove container {container.id} after a failed start: {str(e)}")
