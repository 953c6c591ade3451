# reconcile_engine/config.py

from typing import Dict, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Reconcile engine configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="RECONCILE_",
        case_sensitive=False,
        extra="ignore"
    )

    # IaC tree: <iac_root>/<iac_dirname>/<scope>/<stack>/<file>
    iac_root: str = "/data"
    iac_dirname: str = "docker-compose"

    # Scratch base for decrypted staging; empty prefers /dev/shm
    builds_dir: str = ""

    # External tools
    sops_binary: str = "sops"
    docker_binary: str = "docker"
    sops_age_recipients: str = ""
    sops_timeout: float = 30.0
    apply_timeout: float = 1800.0

    # Env default for auto-devops when no override is set (None = unset)
    devops_apply: Optional[bool] = None

    # Seconds to wait for another deploy of the same stack; 0 rejects with Conflict
    deploy_lock_timeout: float = 0.0

    drift_poll_interval: float = 30.0

    # Host served by the local Docker daemon; empty means this machine's hostname
    local_host: str = ""
    # host -> runtime agent URL, e.g. {"node-2": "http://10.0.1.12:9000"}
    runtime_agents: Dict[str, str] = {}
    # host -> DOCKER_HOST used by `docker compose` for that host
    docker_hosts: Dict[str, str] = {}

    # Logging
    log_level: str = "info"
    log_format: str = "text"

    @property
    def iac_base(self) -> str:
        return f"{self.iac_root.rstrip('/')}/{self.iac_dirname}"


settings = EngineSettings()
