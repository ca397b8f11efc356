"""
Heartbeat webhook handling.

Interprets monitor notifications (Uptime Kuma style) and recycles the app
pool behind a URL that is reported down. Each event is judged on its own;
no monitor history is kept.
"""

import structlog
from typing import Any, Optional, Tuple

from . import metrics
from .audit import AuditLog
from .binding_resolver import lookup_app_pool, normalize_url
from .errors import InvalidUrlError, MalformedPayloadError
from .inventory import InventoryProvider
from .models import HEALTH_UNKNOWN, HeartbeatAction, HeartbeatEvent, HeartbeatResult
from .recycle_orchestrator import RecycleDebouncer, RecycleOrchestrator

logger = structlog.get_logger()


def _nested(payload: dict, section: str, key: str) -> Any:
    value = payload.get(section)
    if isinstance(value, dict):
        return value.get(key)
    return None


def extract_monitor_url(payload: Any) -> Optional[str]:
    """Monitor URL from monitor.url, falling back to a root-level url."""
    if not isinstance(payload, dict):
        return None

    for candidate in (_nested(payload, "monitor", "url"), payload.get("url")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def _as_status(value: Any) -> Optional[int]:
    # bool is an int subclass but never a valid heartbeat status
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def extract_health_code(payload: Any) -> int:
    """
    Heartbeat status from heartbeat.status, falling back to a root-level
    status. Anything missing or non-integer is HEALTH_UNKNOWN.
    """
    if not isinstance(payload, dict):
        return HEALTH_UNKNOWN

    heartbeat = payload.get("heartbeat")
    if isinstance(heartbeat, dict) and "status" in heartbeat:
        status = _as_status(heartbeat["status"])
        return HEALTH_UNKNOWN if status is None else status

    if "status" in payload:
        status = _as_status(payload["status"])
        return HEALTH_UNKNOWN if status is None else status

    return HEALTH_UNKNOWN


def parse_heartbeat(payload: Any) -> HeartbeatEvent:
    """
    Build a HeartbeatEvent from a webhook body.

    Raises:
        MalformedPayloadError: No monitor URL could be extracted
    """
    url = extract_monitor_url(payload)
    if url is None:
        raise MalformedPayloadError("Invalid webhook payload - missing monitor URL")
    return HeartbeatEvent(monitor_url=url, health_code=extract_health_code(payload))


class HeartbeatDecisionEngine:
    """Turns monitor webhooks into app pool recycles."""

    def __init__(
        self,
        provider: InventoryProvider,
        orchestrator: RecycleOrchestrator,
        debouncer: Optional[RecycleDebouncer] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.provider = provider
        self.orchestrator = orchestrator
        self.debouncer = debouncer
        self.audit = audit
        self.logger = logger.bind(component="heartbeat")

    def decide(self, payload: Any) -> Tuple[HeartbeatEvent, bool]:
        """
        Decide whether a webhook warrants remediation.

        Returns:
            The parsed event and whether the monitor reports it down

        Raises:
            MalformedPayloadError: No monitor URL in the payload
        """
        event = parse_heartbeat(payload)
        self.logger.info(
            "heartbeat_received",
            url=event.monitor_url,
            status=event.health_code
        )
        return event, event.is_down

    async def handle(self, payload: Any) -> HeartbeatResult:
        """
        Process one heartbeat webhook end to end.

        Unresolvable URLs, debounced pools and failed recycles are reported
        in the result, never raised, so the sender always gets an
        acknowledgement for a well-formed payload.

        Raises:
            MalformedPayloadError: No monitor URL in the payload
        """
        event, action_warranted = self.decide(payload)

        if not action_warranted:
            self.logger.info(
                "site_up_no_action",
                url=event.monitor_url,
                status=event.health_code
            )
            return self._result(event, HeartbeatAction.NO_ACTION)

        url = normalize_url(event.monitor_url)
        self.logger.warning("site_down_recycling", url=url)
        self._audit("site_down_reported", "warning", url=url, status=event.health_code)

        try:
            app_pool = await lookup_app_pool(self.provider, url)
        except InvalidUrlError as e:
            self.logger.error("heartbeat_url_invalid", url=url, error=str(e))
            return self._result(event, HeartbeatAction.INVALID_URL)

        if app_pool is None:
            self.logger.error("app_pool_not_resolved", url=url)
            self._audit("app_pool_not_resolved", "warning", url=url)
            return self._result(event, HeartbeatAction.NOT_FOUND)

        if self.debouncer is not None and not await self.debouncer.try_acquire(app_pool):
            self.logger.info(
                "recycle_debounced",
                url=url,
                app_pool=app_pool,
                retry_in_seconds=round(self.debouncer.seconds_until_ready(app_pool), 1)
            )
            self._audit("recycle_debounced", "info", url=url, app_pool=app_pool)
            return self._result(event, HeartbeatAction.DEBOUNCED, app_pool)

        success = False
        try:
            success = await self.orchestrator.recycle(app_pool)
        finally:
            if self.debouncer is not None:
                await self.debouncer.release(app_pool, succeeded=success)

        if success:
            self.logger.info("site_down_recycled", url=url, app_pool=app_pool)
            return self._result(event, HeartbeatAction.RECYCLED, app_pool)

        self.logger.error("site_down_recycle_failed", url=url, app_pool=app_pool)
        return self._result(event, HeartbeatAction.RECYCLE_FAILED, app_pool)

    def _result(
        self,
        event: HeartbeatEvent,
        action: HeartbeatAction,
        app_pool: Optional[str] = None
    ) -> HeartbeatResult:
        metrics.record_heartbeat_decision(action.value)
        return HeartbeatResult(
            url=event.monitor_url,
            status=event.health_code,
            action=action,
            app_pool=app_pool
        )

    def _audit(self, event: str, level: str, **fields):
        if self.audit is not None:
            self.audit.record(event, level=level, **fields)
