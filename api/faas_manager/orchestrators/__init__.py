import logging

from ..core.config import DEPLOYMENT_ENV_KUBERNETES, Settings
from .base import Orchestrator, ProvisionResult

logger = logging.getLogger(__name__)

__all__ = ["Orchestrator", "ProvisionResult", "build_orchestrator"]


def build_orchestrator(settings: Settings, code_storage) -> Orchestrator:
    """Pick the backend once, from DEPLOYMENT_ENV, for the lifetime of the process."""
    logger.info(f"Initializing {settings.DEPLOYMENT_ENV} orchestrator")
    if settings.DEPLOYMENT_ENV == DEPLOYMENT_ENV_KUBERNETES:
        from .kubernetes_backend import KubernetesOrchestrator, load_kubernetes_config

        load_kubernetes_config(settings)
        return KubernetesOrchestrator(settings, code_storage)

    from .docker_backend import DockerOrchestrator, get_docker_client

    return DockerOrchestrator(get_docker_client(settings), settings)
