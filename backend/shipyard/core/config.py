"""
Application configuration using Pydantic Settings.
"""
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Worker settings."""

    # Application
    APP_NAME: str = "Shipyard"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "info"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str

    # Container runtime
    DOCKER_HOST: str = "unix:///var/run/docker.sock"
    DOCKER_API_VERSION: str = "v1.43"
    DOCKER_TIMEOUT: float = Field(default=60.0, gt=0)
    DOCKER_BUILD_TIMEOUT: float = Field(default=1800.0, gt=0)

    # Routing
    BASE_DOMAIN: str = "localhost"
    PROXY_NETWORK: str = "mvp-network"
    CERT_RESOLVER: str = "letsencrypt"
    # Contract with user applications: they must listen on this port
    CONTAINER_PORT: int = Field(default=8080, ge=1, le=65535)

    # Repository checkout
    WORK_DIR: str = "/tmp/mvp-deployments"
    CLEANUP_WORKSPACES: bool = True
    GIT_CLONE_TIMEOUT: int = Field(default=600, gt=0)
    BUILD_DESCRIPTOR: str = "Dockerfile"

    # Images
    IMAGE_NAMESPACE: str = "mvp"

    # Engine loop
    BUILD_LOCK_NAME: str = "build"
    LOCK_RETRY_INTERVAL: float = Field(default=1.0, gt=0)
    POLL_INTERVAL: float = Field(default=2.0, gt=0)

    # Runtime logs
    RUNTIME_LOG_TAIL: int = Field(default=500, gt=0)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    def get_log_level(self) -> str:
        """Normalize LOG_LEVEL for the logging module."""
        return self.LOG_LEVEL.strip().upper()


settings = Settings()
