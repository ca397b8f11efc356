"""
IIS App Pool Recycler - Main FastAPI Application

Receives monitor heartbeats and recycles the IIS app pool serving a site
that is reported down; receives source-control push webhooks and triggers
a redeploy for the tracked repository and branch.
"""

import platform
import structlog
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from contextlib import asynccontextmanager

from .config import Settings, settings
from .audit import AuditLog
from .binding_resolver import lookup_app_pool, normalize_url
from .deployment import DeploymentLauncher, DeploymentTriggerEngine
from .errors import (
    DeploymentConfigError,
    DeploymentSpawnError,
    InvalidUrlError,
    InventoryError,
    MalformedPayloadError,
)
from .heartbeat import HeartbeatDecisionEngine
from .inventory import InventoryProvider, build_inventory_provider
from .models import DeployOutcome, HealthCheckResponse, RecycleRequest, ServerInfo
from .recycle_orchestrator import RecycleDebouncer, RecycleOrchestrator
from . import metrics

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@dataclass
class Services:
    """Components shared by the request handlers."""
    settings: Settings
    inventory: InventoryProvider
    audit: AuditLog
    orchestrator: RecycleOrchestrator
    heartbeat: HeartbeatDecisionEngine
    deployment: DeploymentTriggerEngine


def build_services(
    app_settings: Settings,
    inventory: Optional[InventoryProvider] = None,
    audit: Optional[AuditLog] = None,
    launcher: Optional[DeploymentLauncher] = None,
) -> Services:
    """Wire the service components from settings; any part may be supplied."""
    inventory = inventory or build_inventory_provider(app_settings)
    audit = audit or AuditLog.from_settings(app_settings)
    launcher = launcher or DeploymentLauncher(
        spawn_timeout_seconds=app_settings.deploy_spawn_timeout_seconds,
        audit=audit
    )
    orchestrator = RecycleOrchestrator(inventory, audit)
    return Services(
        settings=app_settings,
        inventory=inventory,
        audit=audit,
        orchestrator=orchestrator,
        heartbeat=HeartbeatDecisionEngine(
            provider=inventory,
            orchestrator=orchestrator,
            debouncer=RecycleDebouncer(app_settings.recycle_cooldown_seconds),
            audit=audit,
        ),
        deployment=DeploymentTriggerEngine.from_settings(app_settings, launcher, audit),
    )


# Initialized in lifespan
services: Optional[Services] = None


def get_services() -> Services:
    if services is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return services


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown."""
    global services

    logger.info(
        "application_starting",
        version=settings.app_version,
        inventory_backend=settings.inventory_backend,
        iis_host=settings.iis_host
    )

    metrics.init_metrics(settings.app_version)
    services = build_services(settings)

    yield

    close = getattr(services.inventory, "close", None)
    if close is not None:
        await close()
    logger.info("application_shutdown")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Recycles IIS app pools from monitor webhooks and triggers deployments from push webhooks",
    lifespan=lifespan
)


def _caller(request: Request) -> dict:
    return {
        "remote_ip": request.client.host if request.client else "unknown",
        "user_agent": request.headers.get("user-agent", "unknown"),
    }


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@app.get("/version")
async def get_version():
    """Get service version information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "python_version": platform.python_version()
    }


@app.get("/metrics")
async def prometheus_metrics():
    """Prometheus metrics endpoint for self-monitoring."""
    return metrics.get_metrics_response()


@app.get("/health", response_model=HealthCheckResponse)
async def health_check(svc: Services = Depends(get_services)):
    """
    Liveness probe.

    Reports whether the deployment script and trust config are present and
    when the last deployment was recorded. Always 200 while the service runs.
    """
    last_deployment = svc.audit.last_deployment_at()
    return HealthCheckResponse(
        status="healthy",
        service=svc.settings.app_name,
        version=svc.settings.app_version,
        timestamp=datetime.now(timezone.utc),
        server_info=ServerInfo(
            python_version=platform.python_version(),
            deployment_script="available" if Path(svc.settings.deploy_script_path).is_file() else "missing",
            config_file="available" if Path(svc.settings.deploy_config_path).is_file() else "missing",
            last_deployment=last_deployment.isoformat() if last_deployment else "never",
        ),
    )


@app.post("/webhook/heartbeat")
async def receive_heartbeat_webhook(request: Request, svc: Services = Depends(get_services)):
    """
    Receive a monitor heartbeat.

    Accepts {monitor: {url}, heartbeat: {status}} or flat {url, status}.
    Status 0 means down and triggers a recycle of the owning app pool.
    """
    metrics.record_webhook("heartbeat")

    try:
        payload = await request.json()
    except ValueError:
        logger.warning("heartbeat_payload_not_json")
        return JSONResponse(status_code=400, content={"error": "Invalid webhook payload - body is not JSON"})

    try:
        result = await svc.heartbeat.handle(payload)
    except MalformedPayloadError as e:
        logger.warning("heartbeat_payload_invalid", error=str(e))
        return JSONResponse(status_code=400, content={"error": str(e)})
    except Exception as e:
        logger.error("heartbeat_processing_failed", error=str(e), exc_info=True)
        svc.audit.record("heartbeat_processing_failed", level="error", error=str(e), **_caller(request))
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error processing webhook"}
        )

    response = {
        "message": "Webhook processed successfully",
        "url": result.url,
        "status": result.status,
        "action": result.action.value,
    }
    if result.app_pool:
        response["appPool"] = result.app_pool
    return response


@app.post("/webhook/deploy")
async def receive_deploy_webhook(request: Request, svc: Services = Depends(get_services)):
    """
    Receive a source-control push webhook.

    The raw body is verified against X-Hub-Signature-256 before it is parsed.
    Repository and branch mismatches are acknowledged with 200 and a reason.
    """
    metrics.record_webhook("deploy")
    raw_body = await request.body()
    caller = _caller(request)

    try:
        result = await svc.deployment.process(
            raw_body,
            request.headers.get("x-hub-signature-256"),
            **caller
        )
    except (DeploymentConfigError, DeploymentSpawnError) as e:
        error = f"Error: {e}"
        svc.audit.record("deploy_webhook_failed", level="error", error=error, **caller)
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": error, "timestamp": _now()}
        )

    if result.outcome == DeployOutcome.UNAUTHORIZED:
        return PlainTextResponse("Unauthorized: Invalid signature", status_code=401)

    if result.outcome == DeployOutcome.MALFORMED_PAYLOAD:
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": f"Error: {result.reason}", "timestamp": _now()}
        )

    if result.outcome in (DeployOutcome.SKIPPED_REPO_MISMATCH, DeployOutcome.SKIPPED_BRANCH_MISMATCH):
        return {
            "status": "skipped",
            "reason": result.outcome.value,
            "message": result.reason,
            "repository": result.repository,
            "branch": result.branch,
            "timestamp": _now(),
        }

    commit = result.commit
    return {
        "status": "success",
        "message": "Deployment triggered successfully",
        "repository": result.repository,
        "branch": result.branch,
        "commit": commit.short_id if commit else "",
        "commit_message": commit.message if commit else None,
        "author": commit.author if commit else None,
        "timestamp": _now(),
    }


@app.post("/recycle")
async def manual_recycle(request: RecycleRequest, svc: Services = Depends(get_services)):
    """
    Recycle an app pool by name, or by a URL one of its sites serves.

    Example:
        POST /recycle {"url": "https://www.example.com"}
        POST /recycle {"appPoolName": "ExamplePool"}
    """
    if not request.has_target():
        raise HTTPException(status_code=400, detail="Either URL or AppPoolName must be provided")

    app_pool_name = request.app_pool_name

    if request.url:
        url = normalize_url(request.url)
        try:
            app_pool_name = await lookup_app_pool(svc.inventory, url)
        except InvalidUrlError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except InventoryError as e:
            logger.error("manual_recycle_lookup_failed", url=url, error=str(e))
            return JSONResponse(status_code=500, content={"error": "Internal server error during recycle"})

        if not app_pool_name:
            raise HTTPException(status_code=404, detail=f"No app pool found for URL: {request.url}")

    success = await svc.orchestrator.recycle(app_pool_name)

    if success:
        return {"message": "App pool recycled successfully", "appPool": app_pool_name}

    return JSONResponse(
        status_code=500,
        content={"error": "Failed to recycle app pool", "appPool": app_pool_name}
    )


@app.get("/sites")
async def get_sites(svc: Services = Depends(get_services)):
    """List IIS sites with bindings and app pools."""
    try:
        async with svc.inventory.open_session() as session:
            sites = await session.list_sites()
    except InventoryError as e:
        logger.error("site_listing_failed", error=str(e))
        return JSONResponse(status_code=500, content={"error": "Internal server error retrieving sites"})
    return [site.model_dump() for site in sites]


@app.get("/app-pools")
async def get_app_pools(svc: Services = Depends(get_services)):
    """List app pool names."""
    try:
        async with svc.inventory.open_session() as session:
            pools = await session.list_app_pools()
    except InventoryError as e:
        logger.error("app_pool_listing_failed", error=str(e))
        return JSONResponse(status_code=500, content={"error": "Internal server error retrieving app pools"})
    return [pool.name for pool in pools]


@app.get("/lookup/{url:path}")
async def lookup(url: str, svc: Services = Depends(get_services)):
    """Resolve a URL to its app pool without recycling anything."""
    url = normalize_url(url)

    try:
        app_pool_name = await lookup_app_pool(svc.inventory, url)
    except InvalidUrlError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InventoryError as e:
        logger.error("lookup_failed", url=url, error=str(e))
        return JSONResponse(status_code=500, content={"error": "Internal server error during lookup"})

    if not app_pool_name:
        return JSONResponse(status_code=404, content={"message": "No app pool found for URL", "url": url})

    return {"url": url, "appPool": app_pool_name}


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        error=str(exc),
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.debug else "An error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "recycler.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
