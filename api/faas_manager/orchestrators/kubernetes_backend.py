import base64
import logging
from typing import Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from ..core.config import Settings
from ..core.errors import ProvisionError, StorageError, TeardownError
from ..storage.code_storage import HANDLER_FILENAME
from .base import (
    HANDLER_ENV_VAR,
    WORKER_NAME_PREFIX,
    Orchestrator,
    ProvisionResult,
    worker_name,
)

logger = logging.getLogger(__name__)

APP_NAME = "faas-worker"
SERVICE_PORT = 80
CODE_VOLUME = "handler-volume"

# Autoscaling policy applied when K8S_AUTOSCALING_ENABLED is set
MIN_REPLICAS = 1
CPU_UTILIZATION_TARGET = 70
MEMORY_UTILIZATION_TARGET = 80
SCALE_UP_WINDOW_SECONDS = 0
SCALE_DOWN_WINDOW_SECONDS = 300

# API errors plus connection failures and timeouts from the underlying pool
BACKEND_ERRORS = (ApiException, urllib3.exceptions.HTTPError)


def load_kubernetes_config(settings: Settings):
    """Use the kubeconfig file when one is configured, otherwise the in-cluster service account."""
    if settings.KUBE_CONFIG_PATH:
        config.load_kube_config(config_file=settings.KUBE_CONFIG_PATH)
        logger.info(f"Loaded Kubernetes configuration from {settings.KUBE_CONFIG_PATH}")
    else:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")


def service_name(function_id: str) -> str:
    return f"service-{function_id}"


def config_map_name(function_id: str) -> str:
    return f"handler-code-{function_id}"


def autoscaler_name(function_id: str) -> str:
    return f"hpa-{function_id}"


def function_id_from_handle(backend_handle: str) -> str:
    if not backend_handle.startswith(WORKER_NAME_PREFIX) or len(backend_handle) == len(WORKER_NAME_PREFIX):
        raise TeardownError(f"'{backend_handle}' is not a worker deployment name")
    return backend_handle[len(WORKER_NAME_PREFIX):]


class KubernetesOrchestrator(Orchestrator):
    """
    Runs each function as a Deployment in a fixed namespace.

    Per function it creates a ConfigMap holding the handler code, a one-replica
    Deployment mounting it, a NodePort Service in front of the pods and,
    optionally, a HorizontalPodAutoscaler. All names are derived from the
    function id, and the deployment name is the backend handle.
    """

    name = "kubernetes"

    def __init__(
        self,
        settings: Settings,
        code_storage,
        core_v1: Optional[client.CoreV1Api] = None,
        apps_v1: Optional[client.AppsV1Api] = None,
        autoscaling_v2: Optional[client.AutoscalingV2Api] = None,
    ):
        self.code_storage = code_storage
        self.core_v1 = core_v1 or client.CoreV1Api()
        self.apps_v1 = apps_v1 or client.AppsV1Api()
        self.autoscaling_v2 = autoscaling_v2 or client.AutoscalingV2Api()

        self.namespace = settings.K8S_NAMESPACE
        self.node_host = settings.K8S_NODE_HOST
        self.image = settings.WORKER_IMAGE
        self.worker_port = settings.WORKER_PORT
        self.code_mount = settings.WORKER_CODE_MOUNT
        self.service_account = settings.K8S_SERVICE_ACCOUNT
        self.image_pull_secret = settings.K8S_IMAGE_PULL_SECRET
        self.autoscaling_enabled = settings.K8S_AUTOSCALING_ENABLED
        self.max_replicas = settings.K8S_MAX_REPLICAS
        self.cpu_request = settings.K8S_CPU_REQUEST
        self.memory_request = settings.K8S_MEMORY_REQUEST

    def provision(self, function_id, code_location, handler_reference, timeout=None) -> ProvisionResult:
        try:
            code = self.code_storage.load(code_location)
        except StorageError as e:
            raise ProvisionError(f"read handler code: {e}", function_id) from e

        deployment_name = worker_name(function_id)
        try:
            self._create_config_map(function_id, code, timeout)
            self._create_deployment(function_id, handler_reference, timeout)
            node_port = self._create_service(function_id, timeout)
            if self.autoscaling_enabled:
                self._create_autoscaler(function_id, timeout)
        except (ProvisionError, *BACKEND_ERRORS) as e:
            logger.error(f"Failed to provision deployment {deployment_name}, removing partial resources: {str(e)}")
            self._delete_resources(function_id, timeout, surface_errors=False)
            if isinstance(e, ProvisionError):
                e.function_id = function_id
                raise
            raise ProvisionError(f"create kubernetes resources for {deployment_name}: {e}", function_id) from e

        logger.info(f"Created kubernetes deployment {deployment_name} and service on node port {node_port}")
        return ProvisionResult(backend_handle=deployment_name, endpoint=f"{self.node_host}:{node_port}")

    def teardown(self, backend_handle, timeout=None):
        if not backend_handle:
            return
        function_id = function_id_from_handle(backend_handle)
        self._delete_resources(function_id, timeout, surface_errors=True)
        logger.info(f"Deleted kubernetes resources for {backend_handle}")

    def _labels(self, function_id: str) -> dict:
        return {"app": APP_NAME, "func": function_id}

    def _metadata(self, name: str, function_id: str) -> client.V1ObjectMeta:
        return client.V1ObjectMeta(name=name, namespace=self.namespace, labels=self._labels(function_id))

    def _accept_existing(self, kind: str, name: str, create):
        try:
            return create()
        except ApiException as e:
            if e.status != 409:
                raise
            logger.info(f"{kind} {name} already exists, keeping it")
            return None

    def _create_config_map(self, function_id: str, code: bytes, timeout):
        name = config_map_name(function_id)
        body = client.V1ConfigMap(metadata=self._metadata(name, function_id))
        try:
            body.data = {HANDLER_FILENAME: code.decode("utf-8")}
        except UnicodeDecodeError:
            body.binary_data = {HANDLER_FILENAME: base64.b64encode(code).decode("ascii")}

        self._accept_existing("ConfigMap", name, lambda: self.core_v1.create_namespaced_config_map(
            namespace=self.namespace, body=body, _request_timeout=timeout))

    def _create_deployment(self, function_id: str, handler_reference: str, timeout):
        name = worker_name(function_id)
        labels = self._labels(function_id)

        container = client.V1Container(
            name=APP_NAME,
            image=self.image,
            env=[client.V1EnvVar(name=HANDLER_ENV_VAR, value=handler_reference)],
            ports=[client.V1ContainerPort(container_port=self.worker_port)],
            resources=client.V1ResourceRequirements(
                requests={"cpu": self.cpu_request, "memory": self.memory_request}
            ),
            volume_mounts=[client.V1VolumeMount(name=CODE_VOLUME, mount_path=self.code_mount)],
        )
        pod_spec = client.V1PodSpec(
            containers=[container],
            volumes=[client.V1Volume(
                name=CODE_VOLUME,
                config_map=client.V1ConfigMapVolumeSource(name=config_map_name(function_id)),
            )],
        )
        if self.service_account:
            pod_spec.service_account_name = self.service_account
        if self.image_pull_secret:
            pod_spec.image_pull_secrets = [client.V1LocalObjectReference(name=self.image_pull_secret)]

        body = client.V1Deployment(
            api_version="apps/v1",
            kind="Deployment",
            metadata=self._metadata(name, function_id),
            spec=client.V1DeploymentSpec(
                replicas=1,
                selector=client.V1LabelSelector(match_labels=labels),
                template=client.V1PodTemplateSpec(
                    metadata=client.V1ObjectMeta(labels=labels),
                    spec=pod_spec,
                ),
            ),
        )
        self._accept_existing("Deployment", name, lambda: self.apps_v1.create_namespaced_deployment(
            namespace=self.namespace, body=body, _request_timeout=timeout))

    def _create_service(self, function_id: str, timeout) -> int:
        name = service_name(function_id)
        body = client.V1Service(
            api_version="v1",
            kind="Service",
            metadata=self._metadata(name, function_id),
            spec=client.V1ServiceSpec(
                type="NodePort",
                selector=self._labels(function_id),
                ports=[client.V1ServicePort(port=SERVICE_PORT, target_port=self.worker_port)],
            ),
        )
        service = self._accept_existing("Service", name, lambda: self.core_v1.create_namespaced_service(
            namespace=self.namespace, body=body, _request_timeout=timeout))
        if service is None:
            service = self.core_v1.read_namespaced_service(
                name=name, namespace=self.namespace, _request_timeout=timeout)

        ports = service.spec.ports or []
        if not ports or not ports[0].node_port:
            raise ProvisionError(f"service {name} has no node port assigned")
        return int(ports[0].node_port)

    def _create_autoscaler(self, function_id: str, timeout):
        name = autoscaler_name(function_id)

        def utilization(resource: str, target: int) -> client.V2MetricSpec:
            return client.V2MetricSpec(
                type="Resource",
                resource=client.V2ResourceMetricSource(
                    name=resource,
                    target=client.V2MetricTarget(type="Utilization", average_utilization=target),
                ),
            )

        body = client.V2HorizontalPodAutoscaler(
            api_version="autoscaling/v2",
            kind="HorizontalPodAutoscaler",
            metadata=self._metadata(name, function_id),
            spec=client.V2HorizontalPodAutoscalerSpec(
                scale_target_ref=client.V2CrossVersionObjectReference(
                    api_version="apps/v1", kind="Deployment", name=worker_name(function_id)),
                min_replicas=MIN_REPLICAS,
                max_replicas=self.max_replicas,
                metrics=[
                    utilization("cpu", CPU_UTILIZATION_TARGET),
                    utilization("memory", MEMORY_UTILIZATION_TARGET),
                ],
                behavior=client.V2HorizontalPodAutoscalerBehavior(
                    # React to load immediately, shed replicas slowly
                    scale_up=client.V2HPAScalingRules(
                        stabilization_window_seconds=SCALE_UP_WINDOW_SECONDS,
                        policies=[client.V2HPAScalingPolicy(type="Percent", value=100, period_seconds=15)],
                    ),
                    scale_down=client.V2HPAScalingRules(
                        stabilization_window_seconds=SCALE_DOWN_WINDOW_SECONDS,
                        policies=[client.V2HPAScalingPolicy(type="Pods", value=1, period_seconds=60)],
                    ),
                ),
            ),
        )
        self._accept_existing("HorizontalPodAutoscaler", name,
                              lambda: self.autoscaling_v2.create_namespaced_horizontal_pod_autoscaler(
                                  namespace=self.namespace, body=body, _request_timeout=timeout))

    def _delete_resources(self, function_id: str, timeout, surface_errors: bool):
        """Delete autoscaler, deployment, service and config map, in that order.

        Missing objects are skipped. Only a failed deployment deletion is raised,
        and only when surface_errors is set; everything else is logged.
        """
        self._delete_quietly("HorizontalPodAutoscaler", autoscaler_name(function_id),
                             self.autoscaling_v2.delete_namespaced_horizontal_pod_autoscaler, timeout)

        deployment = worker_name(function_id)
        try:
            self.apps_v1.delete_namespaced_deployment(
                name=deployment,
                namespace=self.namespace,
                body=client.V1DeleteOptions(propagation_policy="Foreground"),
                _request_timeout=timeout,
            )
        except BACKEND_ERRORS as e:
            if not _is_not_found(e):
                if surface_errors:
                    raise TeardownError(f"delete deployment {deployment}: {e}") from e
                logger.warning(f"Failed to delete deployment {deployment}: {str(e)}")

        self._delete_quietly("Service", service_name(function_id),
                             self.core_v1.delete_namespaced_service, timeout)
        self._delete_quietly("ConfigMap", config_map_name(function_id),
                             self.core_v1.delete_namespaced_config_map, timeout)

    def _delete_quietly(self, kind: str, name: str, delete, timeout):
        try:
            delete(name=name, namespace=self.namespace, _request_timeout=timeout)
        except BACKEND_ERRORS as e:
            if not _is_not_found(e):
                logger.warning(f"Failed to delete {kind} {name}: {str(e)}")


def _is_not_found(error: Exception) -> bool:
    return isinstance(error, ApiException) and error.status == 404
