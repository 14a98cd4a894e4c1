"""
Configuration settings for the node rollout orchestrator.
"""
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional


class Settings(BaseSettings):
    """Application settings from environment variables."""

    # Application
    APP_NAME: str = Field(default="node-rollout-orchestrator", description="Application name")
    APP_ENV: str = Field(default="dev", description="Environment: dev|staging|prod")

    # HTTP Configuration
    HTTP_PORT: int = Field(default=8002, description="Service port")

    # Kubernetes Configuration
    K8S_CONTEXT: Optional[str] = Field(default=None, description="Kubernetes context")
    K8S_IN_CLUSTER: bool = Field(default=False, description="Running in cluster")
    CRD_GROUP: str = Field(default="fleet.nodeops.io", description="API group of the rollout resources")
    CRD_VERSION: str = Field(default="v1alpha1", description="API version of the rollout resources")

    # Drain Configuration
    EVICTION_GRACE_PERIOD_SECS: int = Field(default=300, ge=0, description="Max wait before force-removing a pod")
    FORCE_DELETE_TIMEOUT_SECS: int = Field(default=60, ge=0, description="Max wait for force-removed pods to disappear")
    POD_POLL_INTERVAL_SECS: float = Field(default=2.0, gt=0, description="Interval between pod drain checks")

    # Controller Configuration
    ROLLOUT_MAX_AGE_SECS: int = Field(default=7 * 24 * 3600, ge=0, description="Age after which a finished rollout is deleted")
    RESYNC_PERIOD_SECS: float = Field(default=30.0, gt=0, description="Interval between full reconcile passes")
    REQUEUE_AFTER_SECS: float = Field(default=10.0, ge=0, description="Backoff before a deferred object is retried")
    CONTROLLERS_ENABLED: bool = Field(default=True, description="Start the reconcile loop with the HTTP service")

    # Service Configuration
    LOG_LEVEL: str = Field(default="info", description="Log level: info|debug|warning")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
