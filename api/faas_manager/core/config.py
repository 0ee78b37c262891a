import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings

# Load environment variables from .env file
load_dotenv()

DEPLOYMENT_ENV_DOCKER = "docker"
DEPLOYMENT_ENV_KUBERNETES = "kubernetes"

# Get database config from environment
POSTGRES_USER = os.getenv("POSTGRES_USER", "postgres")
POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
POSTGRES_SERVER = os.getenv("POSTGRES_SERVER", "localhost")
POSTGRES_PORT = os.getenv("POSTGRES_PORT", "5432")
POSTGRES_DB = os.getenv("POSTGRES_DB", "faasdb")

DB_URI = f"postgresql://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{POSTGRES_SERVER}:{POSTGRES_PORT}/{POSTGRES_DB}"


class Settings(BaseSettings):
    """
    Settings for the function manager service.
    """
    # API settings
    PROJECT_NAME: str = "FaaS Manager"
    VERSION: str = "1.0.0"
    LISTEN_HOST: str = "0.0.0.0"
    LISTEN_PORT: int = 8080
    LOG_LEVEL: str = "INFO"

    # docker or kubernetes
    DEPLOYMENT_ENV: str = DEPLOYMENT_ENV_DOCKER

    # Database settings
    SQLALCHEMY_DATABASE_URI: str = os.getenv("DATABASE_URL", DB_URI)

    # Uploaded handler code lives under <FUNCTION_STORAGE_DIR>/<function id>/
    FUNCTION_STORAGE_DIR: str = "/tmp/faas_functions"

    # Worker container settings
    WORKER_IMAGE: str = "worker-faas:latest"
    WORKER_PORT: int = 8000
    WORKER_CODE_MOUNT: str = "/app/function"
    WORKER_HOST: str = "localhost"

    # Registry credentials used when the worker image has to be pulled
    REGISTRY_URL: Optional[str] = None
    REGISTRY_USER: Optional[str] = None
    REGISTRY_PASS: Optional[str] = None

    # Docker settings
    DOCKER_TIMEOUT: int = 120

    # Kubernetes settings
    KUBE_CONFIG_PATH: Optional[str] = None
    K8S_NAMESPACE: str = "faas"
    K8S_NODE_HOST: str = "localhost"
    K8S_SERVICE_ACCOUNT: Optional[str] = None
    K8S_IMAGE_PULL_SECRET: Optional[str] = None
    K8S_AUTOSCALING_ENABLED: bool = False
    K8S_MAX_REPLICAS: int = 5
    K8S_CPU_REQUEST: str = "100m"
    K8S_MEMORY_REQUEST: str = "128Mi"

    # Timeouts in seconds
    PROVISION_TIMEOUT: float = 120
    EXECUTION_TIMEOUT: float = 30

    # Per-function locking; Redis is only needed when several managers share a database
    REDIS_URL: Optional[str] = None
    LOCK_TIMEOUT: float = 300
    LOCK_BLOCKING_TIMEOUT: float = 30

    @field_validator("DEPLOYMENT_ENV")
    @classmethod
    def normalize_deployment_env(cls, value: str) -> str:
        # Unknown values fall back to the single-container backend
        if value.strip().lower() == DEPLOYMENT_ENV_KUBERNETES:
            return DEPLOYMENT_ENV_KUBERNETES
        return DEPLOYMENT_ENV_DOCKER

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()

