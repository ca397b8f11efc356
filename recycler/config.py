"""
Configuration management for the IIS App Pool Recycler.
Loads service settings from environment variables and the deployment
trust config from its INI file.
"""

import configparser
from pathlib import Path
from typing import Literal, Optional, Union

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import DeploymentConfigError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "IIS App Pool Recycler"
    app_version: str = "2.0.0"
    debug: bool = False

    # API Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # Inventory
    # "appcmd" drives IIS through appcmd.exe, "static" reads a JSON fixture
    inventory_backend: Literal["appcmd", "static"] = "appcmd"
    inventory_file: Optional[str] = None
    appcmd_path: str = r"C:\Windows\System32\inetsrv\appcmd.exe"

    # IIS host: "localhost" runs appcmd in-process, anything else goes over SSH
    iis_host: str = "localhost"
    iis_ssh_user: str = "Administrator"
    iis_ssh_key_path: str = "/app/ssh_key"
    iis_ssh_port: int = 22
    ssh_connection_timeout: int = 10
    command_execution_timeout: int = 60

    # Remediation
    recycle_cooldown_seconds: int = 60

    # Deployment webhook
    deploy_config_path: str = "config.ini"
    deploy_script_path: str = "deploy-webhook.bat"
    deploy_output_log: str = "deployment-output.log"
    deploy_spawn_timeout_seconds: float = 5.0

    # Audit
    audit_log_path: str = "webhook.log"
    deployment_audit_log_path: str = "webhook-deployment.log"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Only JSON and console renderers are wired up."""
        normalized = v.strip().lower()
        if normalized not in ("json", "console"):
            raise ValueError(f"log_format must be 'json' or 'console', got: {v}")
        return normalized

    @field_validator('ssh_connection_timeout', 'command_execution_timeout', 'deploy_spawn_timeout_seconds')
    @classmethod
    def validate_positive_timeout(cls, v: Union[int, float]) -> Union[int, float]:
        if v <= 0:
            raise ValueError(f"timeouts must be positive, got: {v}")
        return v

    @field_validator('recycle_cooldown_seconds')
    @classmethod
    def validate_cooldown(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"recycle_cooldown_seconds must be >= 0, got: {v}")
        return v


class TrustConfig(BaseModel):
    """Shared secret and deploy target for the source-control webhook."""
    secret: str
    repository: str = ""
    branch: str = "main"

    @property
    def target_ref(self) -> str:
        return f"refs/heads/{self.branch}"


TRUST_CONFIG_SECTION = "github"


def load_trust_config(path: Union[str, Path]) -> TrustConfig:
    """
    Load the deployment trust config from an INI file.

    Keys may live in a [github] section or at the top of the file
    (before any section header).

    Args:
        path: Location of the INI file

    Returns:
        Validated TrustConfig

    Raises:
        DeploymentConfigError: File missing, unparseable, or secret empty
    """
    config_path = Path(path)
    if not config_path.is_file():
        raise DeploymentConfigError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(default_section="__top__", interpolation=None)
    try:
        text = config_path.read_text(encoding="utf-8")
        # Section-less files are common for this config; give them a header
        parser.read_string(f"[__top__]\n{text}")
    except (OSError, UnicodeDecodeError, configparser.Error) as e:
        raise DeploymentConfigError(f"Failed to parse configuration file: {e}") from e

    if parser.has_section(TRUST_CONFIG_SECTION):
        values = dict(parser.items(TRUST_CONFIG_SECTION))
    else:
        values = dict(parser.defaults())

    values = {key: value.strip().strip('"').strip("'") for key, value in values.items()}

    if not values.get("secret"):
        raise DeploymentConfigError("Webhook secret not configured")

    return TrustConfig(
        secret=values["secret"],
        repository=values.get("repository", ""),
        branch=values.get("branch") or "main",
    )


# Global settings instance
settings = Settings()
