from unittest.mock import MagicMock, patch

import pytest

from faas_manager.core import config as config_module
from faas_manager.core.config import Settings, get_settings
from faas_manager.orchestrators import build_orchestrator
from faas_manager.orchestrators.docker_backend import DockerOrchestrator
from faas_manager.orchestrators.kubernetes_backend import KubernetesOrchestrator
from faas_manager.storage.code_storage import LocalCodeStorage


@pytest.mark.parametrize("value, expected", [
    ("docker", "docker"),
    ("kubernetes", "kubernetes"),
    (" Kubernetes ", "kubernetes"),
    ("", "docker"),
    ("nomad", "docker"),
])
def test_deployment_env_normalization(value, expected):
    assert Settings(DEPLOYMENT_ENV=value).DEPLOYMENT_ENV == expected


def test_settings_are_built_on_demand():
    assert not hasattr(config_module, "settings")
    assert get_settings() is get_settings()


def test_build_docker_orchestrator(tmp_path):
    client = MagicMock()
    with patch("faas_manager.orchestrators.docker_backend.get_docker_client", return_value=client) as get_client:
        orchestrator = build_orchestrator(Settings(DEPLOYMENT_ENV="docker"), LocalCodeStorage(str(tmp_path)))

    assert isinstance(orchestrator, DockerOrchestrator)
    assert orchestrator.name == "docker"
    assert orchestrator.client is client
    get_client.assert_called_once()


def test_build_kubernetes_orchestrator(tmp_path):
    settings = Settings(DEPLOYMENT_ENV="kubernetes", K8S_NAMESPACE="functions")
    with patch("faas_manager.orchestrators.kubernetes_backend.load_kubernetes_config") as load_config:
        orchestrator = build_orchestrator(settings, LocalCodeStorage(str(tmp_path)))

    assert isinstance(orchestrator, KubernetesOrchestrator)
    assert orchestrator.name == "kubernetes"
    assert orchestrator.namespace == "functions"
    load_config.assert_called_once_with(settings)


def test_load_kubernetes_config_prefers_kubeconfig_file():
    from faas_manager.orchestrators.kubernetes_backend import load_kubernetes_config

    with patch("faas_manager.orchestrators.kubernetes_backend.config") as kube_config:
        load_kubernetes_config(Settings(KUBE_CONFIG_PATH="/etc/faas/kubeconfig"))
        kube_config.load_kube_config.assert_called_once_with(config_file="/etc/faas/kubeconfig")
        kube_config.load_incluster_config.assert_not_called()

    with patch("faas_manager.orchestrators.kubernetes_backend.config") as kube_config:
        load_kubernetes_config(Settings(KUBE_CONFIG_PATH=None))
        kube_config.load_incluster_config.assert_called_once()
