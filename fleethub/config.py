from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_IDENTITY_SIGNING_KEY = "change-me-fleethub-identity-signing-key"
_PROD_ENV_NAMES = {"prod", "production"}


class Settings(BaseSettings):
    app_name: str = Field(default="FleetHub")
    app_env: str = Field(default="dev")
    app_version: str = Field(default="0.1.0")
    app_mode: str = Field(default="hub")

    database_url: str = Field(default="")

    log_level: str = Field(default="INFO")
    log_file: str = Field(default="data/fleethub.log")
    log_db_queries: bool = Field(default=False)
    log_db_query_params: bool = Field(default=False)
    log_sql_max_length: int = Field(default=400)

    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8000)
    metrics_enabled: bool = Field(default=True)

    hub_api_server_url: str = Field(default="http://127.0.0.1:8000")
    hub_canonical_namespace: str = Field(default="fleethub-system")
    hub_agent_role_name: str = Field(default="fleethub-agent")
    hub_pki_dir: str = Field(default="data/pki")
    hub_identity_signing_key: str = Field(default=DEFAULT_IDENTITY_SIGNING_KEY)
    hub_identity_token_ttl_seconds: int = Field(default=31536000, ge=60)
    hub_default_stale_seconds: int = Field(default=30, ge=1)
    hub_default_disconnect_seconds: int = Field(default=120, ge=1)
    hub_sync_interval_seconds: float = Field(default=30.0, gt=0)
    hub_reconcile_workers: int = Field(default=4, ge=1, le=64)
    hub_backoff_base_seconds: float = Field(default=0.5, gt=0)
    hub_backoff_max_seconds: float = Field(default=60.0, gt=0)
    hub_token_sync_interval_seconds: float = Field(default=2.0, gt=0)
    hub_runtime_enable: bool = Field(default=True)
    agent_manifest_path: str = Field(default="ops/agent/agent.yaml")

    agent_bootstrap_dir: str = Field(default="/etc/fleethub/hub-cluster")
    agent_heartbeat_interval_seconds: float = Field(default=5.0, gt=0)
    agent_image: str = Field(default="ghcr.io/fleethub/agent:latest")
    agent_cluster_name: str = Field(default="")
    agent_cluster_version: str = Field(default="")
    agent_node_count_command: str = Field(default="")
    agent_static_node_count: int = Field(default=1, ge=0)
    agent_conflict_retries: int = Field(default=3, ge=1, le=20)
    agent_request_timeout_seconds: int = Field(default=10, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="FLEETHUB_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_settings(self) -> "Settings":
        mode = self.app_mode.strip().lower()
        if mode not in {"hub", "agent"}:
            raise ValueError("FLEETHUB_APP_MODE must be 'hub' or 'agent'.")
        if mode == "hub" and not self.database_url:
            raise ValueError("FLEETHUB_DATABASE_URL must be set in .env or environment variables.")
        if self.hub_default_disconnect_seconds <= self.hub_default_stale_seconds:
            raise ValueError(
                "FLEETHUB_HUB_DEFAULT_DISCONNECT_SECONDS must be greater than "
                "FLEETHUB_HUB_DEFAULT_STALE_SECONDS."
            )
        if mode == "hub" and self.app_env.strip().lower() in _PROD_ENV_NAMES:
            issues: list[str] = []
            if self.hub_identity_signing_key == DEFAULT_IDENTITY_SIGNING_KEY:
                issues.append(
                    "FLEETHUB_HUB_IDENTITY_SIGNING_KEY must not use the default placeholder in production."
                )
            if len(self.hub_identity_signing_key) < 32:
                issues.append(
                    "FLEETHUB_HUB_IDENTITY_SIGNING_KEY must be at least 32 characters in production."
                )
            if issues:
                raise ValueError(" ".join(issues))
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
