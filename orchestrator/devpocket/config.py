from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    # Security - MUST be set via environment
    secret_key: str = ""

    # Database - PostgreSQL in production, sqlite+aiosqlite in tests
    database_url: str

    # JWT Configuration (tokens are issued by the auth service, verified here)
    algorithm: str = "HS256"

    # Encryption key for stored kubeconfigs (base64 encoded Fernet key)
    # If not provided, derived from secret_key
    # Generate a new key: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    kubeconfig_encryption_key: str = ""

    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # CORS Configuration
    # Comma-separated list of allowed origins for REST requests
    cors_origins: str = ""

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    # ==========================================================================
    # Kubernetes Settings
    # ==========================================================================
    # Service account mount used to detect in-cluster execution
    k8s_service_account_dir: str = "/var/run/secrets/kubernetes.io/serviceaccount"

    # Name of the workspace container inside every environment pod
    k8s_container_name: str = "devpocket"
    k8s_ssh_port: int = 22

    # StorageClass for workspace PVCs (empty = cluster default)
    k8s_storage_class: Optional[str] = None
    k8s_pvc_access_mode: str = "ReadWriteOnce"

    # Retry policy for cluster calls (linear backoff: base_delay * attempt)
    k8s_retry_max_attempts: int = 3
    k8s_retry_base_delay_ms: int = 1000

    # Exec stream timeout for terminal input
    k8s_exec_timeout_seconds: int = 60

    # Delay between stop and start when restarting an environment
    restart_delay_seconds: float = 2.0

    # Default number of log lines returned by the logs endpoint/channel
    logs_default_tail_lines: int = 100

    # ==========================================================================
    # WebSocket Settings
    # ==========================================================================
    ws_heartbeat_interval: float = 30.0  # Seconds between heartbeat sweeps
    ws_max_connections_per_user: int = 10

    class Config:
        # For Docker Compose: environment variables are passed directly
        # For native development: looks for .env in parent directory (project root)
        env_file = "../.env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False  # Allow lowercase env vars to match uppercase field names


@lru_cache()
def get_settings():
    return Settings()
