"""
FastAPI Verification API Server

REST endpoints over the verification engine: start a run, poll it, list
its hits, retry it, and look up an application's runs.

Usage:
    uvicorn api.server:app --port 8000
"""

import os
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request, Response, Security
from fastapi.security import APIKeyHeader
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from api.models import (
    StartVerificationRequest,
    RetryVerificationRequest,
    VerificationRunResponse,
    VerificationRunList,
    SourceHitResponse,
    SourceHitList,
    HealthResponse,
    ErrorResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from config_manager import get_config, ConfigManager
from database.connection import DatabaseSessionProvider, get_db_provider
from database.monitoring import check_health
from database.repositories import VerificationRunRepository
from logging_setup import configure_logging
from verification.collaborators import (
    DatabaseAuditSink,
    HttpApplicationGateway,
    HttpNotificationGateway,
    InMemoryApplicationDirectory,
    LogOnlyNotificationGateway,
)
from verification.coordinator import VerificationCoordinator
from verification.notifier import RetryingNotifier
from verification.policy import DatabasePolicySource, PolicyResolver, PolicySnapshot
from verification.scheduler import DelayedTaskScheduler
from verification.sources import default_providers
from verification.worker import RunExecutor

logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")
API_KEY = os.getenv("API_KEY", "")

# Global state
_config: Optional[ConfigManager] = None
_coordinator: Optional[VerificationCoordinator] = None
_scheduler: Optional[DelayedTaskScheduler] = None
_db_provider: Optional[DatabaseSessionProvider] = None
_startup_time: Optional[datetime] = None

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


@dataclass
class Services:
    """Engine components wired from configuration"""
    coordinator: VerificationCoordinator
    scheduler: DelayedTaskScheduler
    notifier: RetryingNotifier


def build_services(config: ConfigManager, db_provider: DatabaseSessionProvider,
                   applications=None, notification_gateway=None) -> Services:
    """Wire the coordinator and its collaborators.

    Collaborator URLs in config select the HTTP gateways; without them the
    in-memory application directory and log-only notifications are used.
    """
    collaborators = config.collaborators
    if applications is None:
        if collaborators.application_service_url:
            applications = HttpApplicationGateway(
                collaborators.application_service_url, collaborators.request_timeout_seconds
            )
        else:
            logger.warning("No application service configured, using in-memory application directory")
            applications = InMemoryApplicationDirectory()
    if notification_gateway is None:
        if collaborators.notification_service_url:
            notification_gateway = HttpNotificationGateway(
                collaborators.notification_service_url, collaborators.request_timeout_seconds
            )
        else:
            notification_gateway = LogOnlyNotificationGateway()

    audit = DatabaseAuditSink(db_provider)
    scheduler = DelayedTaskScheduler(db_provider, config.notifications.poll_interval_seconds)
    notifier = RetryingNotifier(notification_gateway, scheduler, audit, config.notifications)
    resolver = PolicyResolver(
        DatabasePolicySource(db_provider, config.scoring),
        PolicySnapshot.default(config.policy, config.scoring),
    )
    verification = config.verification
    coordinator = VerificationCoordinator(
        db_provider=db_provider,
        policy_resolver=resolver,
        providers=default_providers(verification.required_document_types),
        applications=applications,
        applicants=applications,
        notifier=notifier,
        audit=audit,
        executor=RunExecutor(verification.worker_pool_size),
        provider_timeout_seconds=verification.provider_timeout_seconds,
        max_concurrent_source_calls=verification.max_concurrent_source_calls,
        source_queue_timeout_seconds=verification.source_queue_timeout_seconds,
        stale_run_minutes=verification.stale_run_minutes,
    )
    return Services(coordinator=coordinator, scheduler=scheduler, notifier=notifier)


async def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints.

    If API_KEY environment variable is not set, authentication is disabled.
    """
    if not API_KEY:
        return "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if api_key != API_KEY:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


def get_coordinator() -> VerificationCoordinator:
    """Dependency to get the coordinator instance."""
    if _coordinator is None:
        raise HTTPException(
            status_code=503, detail="Verification engine not initialized. Service is starting up."
        )
    return _coordinator


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


app = FastAPI(
    title="Verification API",
    description="Background verification runs: sanctions, PEP and document checks with risk scoring",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Load configuration, connect the database and start background work."""
    global _config, _coordinator, _scheduler, _db_provider, _startup_time

    _config = get_config(CONFIG_PATH)
    configure_logging(_config.logging)
    logger.info("Starting Verification API (config %s)", CONFIG_PATH)

    _db_provider = get_db_provider()
    _db_provider.init()
    _db_provider.create_tables()

    services = build_services(_config, _db_provider)
    _coordinator = services.coordinator
    _scheduler = services.scheduler
    _scheduler.start()

    resumed = _coordinator.resume_pending_runs()
    _startup_time = datetime.now(timezone.utc)
    logger.info("Verification API ready (%d queued runs resumed)", resumed)


@app.on_event("shutdown")
async def shutdown():
    """Stop background work and release the database."""
    logger.info("Shutting down Verification API...")
    if _scheduler is not None:
        _scheduler.stop()
    if _coordinator is not None:
        _coordinator.shutdown(wait_for_runs=True)
    if _db_provider is not None:
        _db_provider.close()


ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid input"},
    401: {"model": ErrorResponse, "description": "Missing API key"},
    403: {"model": ErrorResponse, "description": "Invalid API key"},
    404: {"model": ErrorResponse, "description": "Not found"},
}


@app.post(
    "/api/v1/verifications",
    status_code=202,
    response_model=VerificationRunResponse,
    responses={**ERROR_RESPONSES, 409: {"model": ErrorResponse, "description": "Active run exists"}},
    summary="Start verification",
    description="Queue a verification run for a paid application; poll the run for its outcome",
)
def start_verification(
    body: StartVerificationRequest,
    request: Request,
    coordinator: VerificationCoordinator = Depends(get_coordinator),
    api_key: str = Depends(verify_api_key),
):
    run = coordinator.start(body.application_id, actor_id=body.actor_id, ip_address=_client_ip(request))
    return VerificationRunResponse.model_validate(run)


@app.get(
    "/api/v1/verifications/{run_id}",
    response_model=VerificationRunResponse,
    responses=ERROR_RESPONSES,
    summary="Get verification run",
)
def get_verification(
    run_id: str,
    coordinator: VerificationCoordinator = Depends(get_coordinator),
    api_key: str = Depends(verify_api_key),
):
    return VerificationRunResponse.model_validate(coordinator.get_run(run_id))


@app.get(
    "/api/v1/verifications/{run_id}/hits",
    response_model=SourceHitList,
    responses=ERROR_RESPONSES,
    summary="List hits of a run",
)
def list_verification_hits(
    run_id: str,
    coordinator: VerificationCoordinator = Depends(get_coordinator),
    api_key: str = Depends(verify_api_key),
):
    run = coordinator.get_run(run_id)
    hits = coordinator.list_hits(run.id)
    return SourceHitList(
        verification_run_id=run.id,
        hits=[SourceHitResponse.model_validate(hit) for hit in hits],
        total=len(hits),
    )


@app.post(
    "/api/v1/verifications/{run_id}/retry",
    status_code=202,
    response_model=VerificationRunResponse,
    responses={**ERROR_RESPONSES, 409: {"model": ErrorResponse, "description": "Run still active"}},
    summary="Retry a finished run",
    description="Deletes the run's hits, resets it to queued and processes it again",
)
def retry_verification(
    run_id: str,
    request: Request,
    body: Optional[RetryVerificationRequest] = Body(default=None),
    coordinator: VerificationCoordinator = Depends(get_coordinator),
    api_key: str = Depends(verify_api_key),
):
    actor_id = body.actor_id if body else None
    run = coordinator.retry(run_id, actor_id=actor_id, ip_address=_client_ip(request))
    return VerificationRunResponse.model_validate(run)


@app.get(
    "/api/v1/applications/{application_id}/verifications",
    response_model=VerificationRunList,
    responses=ERROR_RESPONSES,
    summary="List runs of an application",
)
def list_application_verifications(
    application_id: str,
    coordinator: VerificationCoordinator = Depends(get_coordinator),
    api_key: str = Depends(verify_api_key),
):
    runs = coordinator.list_runs_by_application(application_id)
    return VerificationRunList(
        application_id=application_id,
        runs=[VerificationRunResponse.model_validate(run) for run in runs],
        total=len(runs),
    )


@app.get(
    "/api/v1/applications/{application_id}/verifications/active",
    response_model=VerificationRunResponse,
    responses=ERROR_RESPONSES,
    summary="Get the active run of an application",
)
def get_active_verification(
    application_id: str,
    coordinator: VerificationCoordinator = Depends(get_coordinator),
    api_key: str = Depends(verify_api_key),
):
    run = coordinator.get_active_run(application_id)
    if run is None:
        raise HTTPException(status_code=404, detail="No active verification for this application")
    return VerificationRunResponse.model_validate(run)


@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Database connectivity, run counts and worker backlog",
)
def health_check(config: ConfigManager = Depends(get_config_instance)):
    """Return health status. Always returns HTTP 200."""
    uptime_seconds = None
    if _startup_time:
        uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    if _coordinator is None:
        return HealthResponse(
            status="starting",
            database=False,
            algorithm_version=config.algorithm.version,
            uptime_seconds=uptime_seconds,
        )

    db_provider = _coordinator.db_provider
    try:
        db_health = check_health(db_provider.engine, db_provider.session_factory)
        runs_by_status = {}
        if db_health.healthy:
            with db_provider.session_scope() as session:
                runs_by_status = VerificationRunRepository(session).count_by_status()
        return HealthResponse(
            status="healthy" if db_health.healthy else "degraded",
            database=db_health.healthy,
            database_latency_ms=db_health.latency_ms,
            runs_by_status=runs_by_status,
            pending_runs=_coordinator.executor.pending,
            default_policy_version=_coordinator.policy_resolver.default_policy.version,
            algorithm_version=config.algorithm.version,
            uptime_seconds=uptime_seconds,
            error_message=db_health.error,
        )
    except Exception as e:
        logger.error("Health check failed: %s", e)
        return HealthResponse(
            status="error",
            database=False,
            algorithm_version=config.algorithm.version,
            uptime_seconds=uptime_seconds,
            error_message=str(e),
        )


@app.get("/api/v1/metrics", include_in_schema=False)
def metrics():
    """Prometheus exposition of engine and database metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse

    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
