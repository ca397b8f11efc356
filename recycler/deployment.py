"""
Deployment trigger for source-control push webhooks.

A push is acted on only when its HMAC-SHA256 signature verifies against the
shared secret and it targets the configured repository and branch. The
deployment script is then started in the background; the webhook response
never waits for it to finish.
"""

import asyncio
import hashlib
import hmac
import json
import os
import subprocess
import structlog
from pathlib import Path
from typing import List, Optional, Set, Union

from . import metrics
from .audit import AuditLog
from .config import Settings, load_trust_config
from .errors import DeploymentConfigError, DeploymentSpawnError, MalformedPayloadError
from .models import CommitInfo, DeployEvent, DeployOutcome, DeployResult

logger = structlog.get_logger()

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, body: bytes) -> str:
    """GitHub-style X-Hub-Signature-256 value for a body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(secret: str, body: bytes, signature_header: Optional[str]) -> bool:
    """Constant-time comparison of the provided signature with the expected one."""
    if not signature_header:
        return False
    expected = compute_signature(secret, body)
    return hmac.compare_digest(expected.encode("utf-8"), signature_header.strip().encode("utf-8"))


def _commit_from(data) -> Optional[CommitInfo]:
    if not isinstance(data, dict):
        return None
    author = data.get("author")
    author_name = author.get("name") if isinstance(author, dict) else None
    return CommitInfo(
        id=str(data.get("id") or ""),
        message=str(data.get("message") or "No commit message"),
        author=str(author_name or "Unknown author"),
    )


def parse_push_event(body: bytes) -> DeployEvent:
    """
    Parse a push webhook body.

    Missing repository or ref fields become "unknown" so they fail the
    target match instead of the parse.

    Raises:
        MalformedPayloadError: Body is not a JSON object
    """
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedPayloadError(f"Failed to parse JSON payload: {e}") from e

    if not isinstance(data, dict) or not data:
        raise MalformedPayloadError("Failed to parse JSON payload")

    repository = data.get("repository")
    full_name = repository.get("full_name") if isinstance(repository, dict) else None
    commits = data.get("commits") if isinstance(data.get("commits"), list) else []

    return DeployEvent(
        repository_full_name=str(full_name or "unknown"),
        ref=str(data.get("ref") or "unknown"),
        commits=[commit for commit in (_commit_from(item) for item in commits) if commit],
        head_commit=_commit_from(data.get("head_commit")),
    )


class DeploymentLauncher:
    """Starts the deployment script detached from the request."""

    def __init__(self, spawn_timeout_seconds: float = 5.0, audit: Optional[AuditLog] = None):
        self.spawn_timeout_seconds = spawn_timeout_seconds
        self.audit = audit
        self.logger = logger.bind(component="deployment_launcher")
        self._reapers: Set[asyncio.Task] = set()

    @staticmethod
    def build_command(script: Path) -> List[str]:
        suffix = script.suffix.lower()
        if suffix in (".bat", ".cmd"):
            return ["cmd.exe", "/c", str(script)]
        if suffix == ".ps1":
            return ["powershell.exe", "-NoProfile", "-ExecutionPolicy", "Bypass", "-File", str(script)]
        return [str(script)]

    async def launch(self, script: Path, output_log: Path) -> int:
        """
        Spawn the script with output appended to output_log.

        Only the spawn is bounded by the timeout; the process itself runs on.

        Returns:
            PID of the spawned process

        Raises:
            DeploymentSpawnError: Spawn failed or timed out
        """
        command = self.build_command(script)
        if os.name == "nt":
            detach = {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
        else:
            detach = {"start_new_session": True}

        try:
            with open(output_log, "ab") as output:
                proc = await asyncio.wait_for(
                    asyncio.create_subprocess_exec(
                        *command,
                        cwd=str(script.parent),
                        stdin=asyncio.subprocess.DEVNULL,
                        stdout=output,
                        stderr=asyncio.subprocess.STDOUT,
                        **detach
                    ),
                    timeout=self.spawn_timeout_seconds
                )
        except asyncio.TimeoutError as e:
            raise DeploymentSpawnError(
                f"Deployment script did not start within {self.spawn_timeout_seconds}s"
            ) from e
        except OSError as e:
            raise DeploymentSpawnError(f"Failed to start deployment script: {e}") from e

        self.logger.info("deployment_script_spawned", pid=proc.pid, command=command)

        task = asyncio.create_task(self._reap(proc, script))
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)
        return proc.pid

    async def _reap(self, proc: asyncio.subprocess.Process, script: Path):
        exit_code = await proc.wait()
        level = "info" if exit_code == 0 else "error"
        self.logger.info("deployment_script_exited", pid=proc.pid, exit_code=exit_code)
        if self.audit is not None:
            self.audit.record(
                "deployment_script_exited",
                level=level,
                pid=proc.pid,
                exit_code=exit_code,
                script=str(script)
            )


class DeploymentTriggerEngine:
    """Verifies push webhooks and triggers the deployment script."""

    def __init__(
        self,
        config_path: Union[str, Path],
        script_path: Union[str, Path],
        output_log: Union[str, Path],
        launcher: DeploymentLauncher,
        audit: Optional[AuditLog] = None,
    ):
        self.config_path = Path(config_path)
        self.script_path = Path(script_path)
        self.output_log = Path(output_log)
        self.launcher = launcher
        self.audit = audit
        self.logger = logger.bind(component="deployment_trigger")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        launcher: DeploymentLauncher,
        audit: Optional[AuditLog] = None
    ) -> "DeploymentTriggerEngine":
        return cls(
            config_path=settings.deploy_config_path,
            script_path=settings.deploy_script_path,
            output_log=settings.deploy_output_log,
            launcher=launcher,
            audit=audit,
        )

    async def process(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        remote_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> DeployResult:
        """
        Run a push webhook through signature, repository and branch checks.

        Args:
            raw_body: Request body exactly as received
            signature_header: X-Hub-Signature-256 value
            remote_ip: Caller address for the audit log
            user_agent: Caller user agent for the audit log

        Returns:
            DeployResult; the body is never parsed when the outcome is UNAUTHORIZED

        Raises:
            DeploymentConfigError: Trust config or deployment script missing
            DeploymentSpawnError: Deployment script failed to start
        """
        caller = {"remote_ip": remote_ip, "user_agent": user_agent}
        self._audit(
            "deploy_webhook_received",
            "info",
            signature_prefix=(signature_header or "")[:20],
            **caller
        )

        trust = load_trust_config(self.config_path)

        if not verify_signature(trust.secret, raw_body, signature_header):
            self._audit("signature_invalid", "warning", **caller)
            return self._finish(DeployResult(outcome=DeployOutcome.UNAUTHORIZED, reason="invalid_signature"))

        self._audit("signature_verified", "info", **caller)

        try:
            event = parse_push_event(raw_body)
        except MalformedPayloadError as e:
            self._audit("payload_malformed", "error", error=str(e), **caller)
            return self._finish(DeployResult(outcome=DeployOutcome.MALFORMED_PAYLOAD, reason=str(e)))

        self._audit(
            "push_event_parsed",
            "info",
            repository=event.repository_full_name,
            ref=event.ref,
            commits=len(event.commits),
            **caller
        )

        if event.repository_full_name != trust.repository:
            self._audit(
                "repository_mismatch",
                "info",
                expected=trust.repository,
                received=event.repository_full_name,
                **caller
            )
            return self._finish(DeployResult(
                outcome=DeployOutcome.SKIPPED_REPO_MISMATCH,
                repository=event.repository_full_name,
                branch=trust.branch,
                reason="Repository mismatch, skipping deployment"
            ))

        if event.ref != trust.target_ref:
            self._audit(
                "branch_mismatch",
                "info",
                expected=trust.target_ref,
                received=event.ref,
                **caller
            )
            return self._finish(DeployResult(
                outcome=DeployOutcome.SKIPPED_BRANCH_MISMATCH,
                repository=event.repository_full_name,
                branch=trust.branch,
                reason="Not target branch, skipping deployment"
            ))

        commit = event.last_commit
        self._audit(
            "deployment_conditions_met",
            "info",
            commit=commit.short_id,
            commit_message=commit.message,
            author=commit.author,
            **caller
        )

        if not self.script_path.is_file():
            raise DeploymentConfigError(f"Deployment script not found: {self.script_path}")

        pid = await self.launcher.launch(self.script_path.resolve(), self.output_log)

        self._audit(
            "deployment_triggered",
            "deploy",
            repository=event.repository_full_name,
            branch=trust.branch,
            commit=commit.short_id,
            pid=pid,
            **caller
        )
        return self._finish(DeployResult(
            outcome=DeployOutcome.TRIGGERED,
            repository=event.repository_full_name,
            branch=trust.branch,
            commit=commit
        ))

    def _finish(self, result: DeployResult) -> DeployResult:
        metrics.record_deploy_outcome(result.outcome.value)
        self.logger.info(
            "deploy_webhook_processed",
            outcome=result.outcome.value,
            repository=result.repository
        )
        return result

    def _audit(self, event: str, level: str, **fields):
        if self.audit is not None:
            self.audit.record(event, level=level, **fields)
