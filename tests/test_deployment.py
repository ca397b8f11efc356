"""
Tests for push webhook verification and the deployment trigger.
"""

import asyncio
import hashlib
import hmac
import json
import os
import stat
from pathlib import Path

import pytest

from recycler import deployment
from recycler.deployment import (
    DeploymentLauncher,
    DeploymentTriggerEngine,
    compute_signature,
    parse_push_event,
    verify_signature,
)
from recycler.errors import DeploymentConfigError, DeploymentSpawnError, MalformedPayloadError
from recycler.models import DeployOutcome


def push_body(repository="acme/web-portal", ref="refs/heads/main", commits=None):
    if commits is None:
        commits = [
            {"id": "1111111aaaa", "message": "Fix typo", "author": {"name": "Sam Doe"}},
            {"id": "abcdef1234567890", "message": "Bump version", "author": {"name": "Alex Roe"}},
        ]
    return json.dumps({
        "ref": ref,
        "repository": {"full_name": repository},
        "commits": commits,
    }).encode("utf-8")


@pytest.fixture
def engine(trust_config_file, deploy_script, launcher, audit, tmp_path):
    return DeploymentTriggerEngine(
        config_path=trust_config_file,
        script_path=deploy_script,
        output_log=tmp_path / "deployment-output.log",
        launcher=launcher,
        audit=audit,
    )


class TestSignature:
    """Test HMAC-SHA256 signature handling."""

    def test_known_signature(self):
        expected = "sha256=" + hmac.new(b"s", b"b", hashlib.sha256).hexdigest()
        assert compute_signature("s", b"b") == expected
        assert verify_signature("s", b"b", expected) is True

    def test_mutated_body_rejected(self):
        signature = compute_signature("s", b"b")
        mutated = bytes([b"b"[0] ^ 0x01])
        assert verify_signature("s", mutated, signature) is False

    def test_mutated_signature_rejected(self):
        signature = compute_signature("s", b"b")
        last = signature[-1]
        flipped = signature[:-1] + ("0" if last != "0" else "1")
        assert verify_signature("s", b"b", flipped) is False

    @pytest.mark.parametrize("header", [None, "", "sha1=abc", "sha256=", "sha256=ünïcode"])
    def test_bad_headers_rejected(self, header):
        assert verify_signature("s", b"b", header) is False


class TestPushParsing:
    """Test push event parsing."""

    def test_parse(self):
        event = parse_push_event(push_body())
        assert event.repository_full_name == "acme/web-portal"
        assert event.ref == "refs/heads/main"
        assert event.last_commit.short_id == "abcdef1"
        assert event.last_commit.author == "Alex Roe"

    def test_missing_fields_become_unknown(self):
        event = parse_push_event(b'{"zen": "Keep it logically awesome."}')
        assert event.repository_full_name == "unknown"
        assert event.ref == "unknown"
        assert event.last_commit.message == "No commit message"

    def test_head_commit_used_without_commit_list(self):
        body = json.dumps({
            "ref": "refs/heads/main",
            "repository": {"full_name": "acme/web-portal"},
            "commits": [],
            "head_commit": {"id": "feedbeef00", "message": "Merge", "author": {"name": "Bot"}},
        }).encode()
        assert parse_push_event(body).last_commit.short_id == "feedbee"

    @pytest.mark.parametrize("body", [b"", b"not json", b"[]", b"{}", b"\xff\xfe"])
    def test_malformed(self, body):
        with pytest.raises(MalformedPayloadError):
            parse_push_event(body)


class TestDeploymentTrigger:
    """Test the ordered checks of the deployment trigger."""

    @pytest.mark.asyncio
    async def test_triggered(self, engine, launcher, audit, deploy_script):
        body = push_body()
        result = await engine.process(body, compute_signature("s3cret", body), remote_ip="192.0.2.10")

        assert result.outcome == DeployOutcome.TRIGGERED
        assert result.commit.short_id == "abcdef1"
        assert result.commit.message == "Bump version"
        assert result.branch == "main"
        assert launcher.launches[0][0] == deploy_script.resolve()

        deploy_entries = audit.read_entries(deployment=True)
        assert deploy_entries[-1]["event"] == "deployment_triggered"
        assert deploy_entries[-1]["level"] == "DEPLOY"
        assert deploy_entries[-1]["ip"] == "192.0.2.10"

    @pytest.mark.asyncio
    async def test_bad_signature_never_parses(self, engine, launcher, monkeypatch):
        def must_not_parse(body):
            raise AssertionError("body parsed before authentication")

        monkeypatch.setattr(deployment, "parse_push_event", must_not_parse)

        body = push_body()
        result = await engine.process(body, compute_signature("wrong", body))
        assert result.outcome == DeployOutcome.UNAUTHORIZED
        assert launcher.launches == []

    @pytest.mark.asyncio
    async def test_bit_flipped_body_unauthorized(self, engine, launcher):
        body = push_body()
        signature = compute_signature("s3cret", body)
        tampered = bytes([body[0] ^ 0x01]) + body[1:]
        result = await engine.process(tampered, signature)
        assert result.outcome == DeployOutcome.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_repository_mismatch(self, engine, launcher):
        body = push_body(repository="org/other-repo")
        result = await engine.process(body, compute_signature("s3cret", body))
        assert result.outcome == DeployOutcome.SKIPPED_REPO_MISMATCH
        assert launcher.launches == []

    @pytest.mark.asyncio
    async def test_repository_match_is_case_sensitive(self, engine, launcher):
        body = push_body(repository="Acme/Web-Portal")
        result = await engine.process(body, compute_signature("s3cret", body))
        assert result.outcome == DeployOutcome.SKIPPED_REPO_MISMATCH

    @pytest.mark.asyncio
    async def test_branch_mismatch(self, engine, launcher):
        body = push_body(ref="refs/heads/feature-x")
        result = await engine.process(body, compute_signature("s3cret", body))
        assert result.outcome == DeployOutcome.SKIPPED_BRANCH_MISMATCH
        assert launcher.launches == []

    @pytest.mark.asyncio
    async def test_tag_push_is_branch_mismatch(self, engine):
        body = push_body(ref="refs/tags/main")
        result = await engine.process(body, compute_signature("s3cret", body))
        assert result.outcome == DeployOutcome.SKIPPED_BRANCH_MISMATCH

    @pytest.mark.asyncio
    async def test_malformed_signed_body(self, engine, launcher):
        body = b"{not json"
        result = await engine.process(body, compute_signature("s3cret", body))
        assert result.outcome == DeployOutcome.MALFORMED_PAYLOAD
        assert launcher.launches == []

    @pytest.mark.asyncio
    async def test_missing_secret_is_config_error(self, engine, trust_config_file):
        trust_config_file.write_text("repository = acme/web-portal\n", encoding="utf-8")
        body = push_body()
        with pytest.raises(DeploymentConfigError):
            await engine.process(body, compute_signature("", body))

    @pytest.mark.asyncio
    async def test_missing_script_is_config_error(self, engine, launcher, deploy_script):
        deploy_script.unlink()
        body = push_body()
        with pytest.raises(DeploymentConfigError):
            await engine.process(body, compute_signature("s3cret", body))
        assert launcher.launches == []

    @pytest.mark.asyncio
    async def test_missing_script_not_checked_on_skip(self, engine, deploy_script):
        deploy_script.unlink()
        body = push_body(ref="refs/heads/develop")
        result = await engine.process(body, compute_signature("s3cret", body))
        assert result.outcome == DeployOutcome.SKIPPED_BRANCH_MISMATCH


class TestDeploymentLauncher:
    """Test command construction and detached spawning."""

    def test_batch_files_run_through_cmd(self):
        assert DeploymentLauncher.build_command(Path("deploy.bat")) == ["cmd.exe", "/c", "deploy.bat"]

    def test_powershell_scripts(self):
        command = DeploymentLauncher.build_command(Path("deploy.ps1"))
        assert command[0] == "powershell.exe"
        assert command[-1] == "deploy.ps1"

    def test_other_scripts_run_directly(self):
        assert DeploymentLauncher.build_command(Path("/opt/deploy.sh")) == [str(Path("/opt/deploy.sh"))]

    @pytest.mark.asyncio
    @pytest.mark.skipif(os.name == "nt", reason="POSIX shell script")
    async def test_spawn_and_reap(self, tmp_path, audit):
        script = tmp_path / "deploy.sh"
        script.write_text("#!/bin/sh\necho deployed\nexit 3\n", encoding="utf-8")
        script.chmod(script.stat().st_mode | stat.S_IXUSR)
        output_log = tmp_path / "deployment-output.log"

        launcher = DeploymentLauncher(spawn_timeout_seconds=5, audit=audit)
        pid = await launcher.launch(script, output_log)
        assert pid > 0

        await asyncio.wait_for(asyncio.gather(*launcher._reapers), timeout=10)

        assert "deployed" in output_log.read_text(encoding="utf-8")
        exited = [e for e in audit.read_entries() if e["event"] == "deployment_script_exited"]
        assert exited[0]["exit_code"] == 3

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        launcher = DeploymentLauncher(spawn_timeout_seconds=5)
        with pytest.raises(DeploymentSpawnError):
            await launcher.launch(tmp_path / "does-not-exist", tmp_path / "out.log")
