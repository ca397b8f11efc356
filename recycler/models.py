"""
Pydantic models for request/response validation and data structures.
"""

from pydantic import BaseModel, Field, model_validator
from typing import List, Optional
from datetime import datetime
from enum import Enum


# Uptime Kuma heartbeat status codes
HEALTH_DOWN = 0
HEALTH_UNKNOWN = -1


class Binding(BaseModel):
    """
    One IIS site binding.

    binding_information is the raw "ip:port:host" specifier. It is kept
    verbatim so malformed entries can be skipped at match time rather than
    rejected when the inventory is read.
    """
    protocol: str
    binding_information: str
    host: str = ""


class Site(BaseModel):
    """IIS site with its bindings and the app pool of its root application."""
    name: str
    id: int
    state: str = "Unknown"
    app_pool_name: str = ""
    bindings: List[Binding] = []


class AppPool(BaseModel):
    """IIS application pool, identified by name."""
    name: str
    state: str = "Unknown"


class RecycleRequest(BaseModel):
    """Manual recycle request. Either url or app_pool_name selects the target."""
    url: Optional[str] = None
    app_pool_name: Optional[str] = Field(default=None, alias="appPoolName")

    model_config = {"populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def accept_process_group_alias(cls, data):
        # processGroupName is accepted as a synonym for appPoolName
        if isinstance(data, dict) and "processGroupName" in data and "appPoolName" not in data:
            data = {**data, "appPoolName": data["processGroupName"]}
        return data

    def has_target(self) -> bool:
        return bool(self.url) or bool(self.app_pool_name)


class HeartbeatEvent(BaseModel):
    """Monitor URL and health code extracted from a monitoring webhook."""
    monitor_url: str
    health_code: int = HEALTH_UNKNOWN

    @property
    def is_down(self) -> bool:
        return self.health_code == HEALTH_DOWN


class HeartbeatAction(str, Enum):
    """What the heartbeat pipeline did with an event."""
    NO_ACTION = "no_action"
    RECYCLED = "recycled"
    RECYCLE_FAILED = "recycle_failed"
    NOT_FOUND = "not_found"
    DEBOUNCED = "debounced"
    INVALID_URL = "invalid_url"


class HeartbeatResult(BaseModel):
    """Outcome of handling one heartbeat webhook."""
    url: str
    status: int
    action: HeartbeatAction
    app_pool: Optional[str] = None


class CommitInfo(BaseModel):
    """Commit metadata reported back for a triggered deployment."""
    id: str = ""
    message: str = "No commit message"
    author: str = "Unknown author"

    @property
    def short_id(self) -> str:
        return self.id[:7]


class DeployEvent(BaseModel):
    """Push event fields the deployment trigger cares about."""
    repository_full_name: str = "unknown"
    ref: str = "unknown"
    commits: List[CommitInfo] = []
    head_commit: Optional[CommitInfo] = None

    @property
    def last_commit(self) -> CommitInfo:
        if self.commits:
            return self.commits[-1]
        return self.head_commit or CommitInfo()


class DeployOutcome(str, Enum):
    """Terminal outcomes of the deployment trigger."""
    TRIGGERED = "triggered"
    SKIPPED_REPO_MISMATCH = "skipped_repo_mismatch"
    SKIPPED_BRANCH_MISMATCH = "skipped_branch_mismatch"
    UNAUTHORIZED = "unauthorized"
    MALFORMED_PAYLOAD = "malformed_payload"


class DeployResult(BaseModel):
    """Result of processing one push webhook."""
    outcome: DeployOutcome
    repository: Optional[str] = None
    branch: Optional[str] = None
    commit: Optional[CommitInfo] = None
    reason: Optional[str] = None


class ServerInfo(BaseModel):
    """Collaborator availability reported by the health endpoint."""
    python_version: str
    deployment_script: str
    config_file: str
    last_deployment: str


class HealthCheckResponse(BaseModel):
    """Health check endpoint response."""
    status: str
    service: str
    version: str
    timestamp: datetime
    server_info: ServerInfo
