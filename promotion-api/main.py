import logging
import os
import sys
import uuid
from typing import Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import HTTPException as FastAPIHTTPException, RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auth import get_actor
from config import SETTINGS, ParameterConfigSource
from models import Actor, DecisionRequest, RollbackRequest, Role
from policy import Guardrails, PromotionError
from storage import Storage


HERE = os.path.abspath(os.path.dirname(__file__))
HELM_ADAPTER_CANDIDATES = [
    os.path.join(HERE, "helm-adapter"),
    os.path.join(os.path.dirname(HERE), "helm-adapter"),
]
for candidate in HELM_ADAPTER_CANDIDATES:
    if os.path.isdir(candidate) and candidate not in sys.path:
        sys.path.append(candidate)
        break

from helm_adapter.adapter import HelmExecutorAdapter
from helm_adapter.redaction import redact_text

from blue_green import BlueGreenOrchestrator
from decision import PromotionDecisionEngine
from observability import get_request_id, log_event, request_id_ctx


app = FastAPI(title="Promotion API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
storage = Storage(SETTINGS.db_path)
config_source = ParameterConfigSource(SETTINGS.ssm_prefix)
executor = HelmExecutorAdapter(
    SETTINGS.executor_url,
    SETTINGS.executor_mode,
    request_timeout_seconds=SETTINGS.executor_timeout_seconds,
    header_name=SETTINGS.executor_header_name,
    header_value=SETTINGS.executor_header_value,
    request_id_provider=get_request_id,
)
logger = logging.getLogger("promote.api")
guardrails = Guardrails(storage)

logger.info(
    "config.executor loaded mode=%s url=%s",
    SETTINGS.executor_mode,
    "set" if SETTINGS.executor_url else "missing",
)

if os.getenv("PROMOTE_LAMBDA", "") == "1":
    try:
        from mangum import Mangum

        handler = Mangum(app)
    except Exception:
        handler = None


def error_response(
    status_code: int,
    code: str,
    message: str,
    retryable: Optional[bool] = None,
    details: Optional[dict] = None,
) -> JSONResponse:
    request_id = request_id_ctx.get() or str(uuid.uuid4())
    payload = {
        "code": code,
        "message": message,
        "request_id": request_id,
    }
    if retryable is not None:
        payload["retryable"] = retryable
    if details:
        payload["details"] = details
    return JSONResponse(status_code=status_code, content=payload)


@app.exception_handler(PromotionError)
async def promotion_error_handler(request: Request, exc: PromotionError):
    return error_response(exc.status_code, exc.code, exc.message, getattr(exc, "retryable", None))


@app.exception_handler(FastAPIHTTPException)
async def http_exception_handler(request: Request, exc: FastAPIHTTPException):
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        payload = dict(exc.detail)
        payload["request_id"] = request_id_ctx.get() or str(uuid.uuid4())
        return JSONResponse(status_code=exc.status_code, content=payload)
    return error_response(exc.status_code, "HTTP_ERROR", str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    for error in exc.errors():
        loc = error.get("loc") or ()
        if loc[:2] == ("body", "application"):
            return error_response(400, "APPLICATION_REQUIRED", "application is required")
    return error_response(400, "INVALID_REQUEST", "Invalid request")


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    token = request_id_ctx.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    response.headers["X-Request-Id"] = request_id
    return response


def require_role(actor: Actor, allowed: set, action: str):
    if actor.role in allowed:
        return None
    return error_response(403, "ROLE_FORBIDDEN", f"Role {actor.role.value} cannot {action}")


def can_view(actor: Actor) -> bool:
    return actor.role in {Role.OBSERVER, Role.DELIVERY_OWNER, Role.PLATFORM_ADMIN}


def build_engine() -> PromotionDecisionEngine:
    return PromotionDecisionEngine(
        config_source,
        storage=storage,
        required_tools=SETTINGS.required_quality_tools,
        default_region=SETTINGS.default_region,
    )


def build_orchestrator() -> BlueGreenOrchestrator:
    return BlueGreenOrchestrator.from_settings(executor, storage, guardrails, SETTINGS)


def _trigger_for(actor: Actor, request: DecisionRequest):
    trigger = request.trigger
    if actor.role == Role.CI_PUBLISHER:
        # CI relays the identity of the workflow actor.
        return trigger.to_context()
    bound = trigger.copy(update={"actor": actor.actor_id, "actor_teams": list(actor.teams)})
    return bound.to_context()


def _decide(actor: Actor, request: DecisionRequest):
    return build_engine().decide(
        request.application,
        _trigger_for(actor, request),
        [report.to_result() for report in request.quality_gates],
        image_tag=request.image_tag,
    )


@app.get("/v1/health")
def health():
    return {"status": "ok"}


@app.get("/v1/executor/status")
def executor_status(request: Request, authorization: Optional[str] = Header(None)):
    actor = get_actor(authorization)
    role_error = require_role(actor, {Role.PLATFORM_ADMIN}, "view executor status")
    if role_error:
        return role_error
    try:
        return executor.check_health()
    except Exception as exc:
        log_event("executor_health_failed", outcome="FAILED", summary=redact_text(str(exc)))
        return {"status": "DOWN", "error": "Executor health check failed"}


@app.post("/v1/decisions")
def create_decision(
    payload: DecisionRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
):
    actor = get_actor(authorization)
    role_error = require_role(actor, {Role.CI_PUBLISHER, Role.DELIVERY_OWNER, Role.PLATFORM_ADMIN}, "request decisions")
    if role_error:
        return role_error
    decision = _decide(actor, payload)
    return decision.as_dict()


@app.get("/v1/decisions/{run_id}")
def get_decision(run_id: str, request: Request, authorization: Optional[str] = Header(None)):
    actor = get_actor(authorization)
    if not can_view(actor) and actor.role != Role.CI_PUBLISHER:
        return error_response(403, "ROLE_FORBIDDEN", f"Role {actor.role.value} cannot view decisions")
    decision = storage.get_decision(run_id)
    if not decision:
        return error_response(404, "NOT_FOUND", f"Decision {run_id} not found")
    return decision


@app.post("/v1/rollouts", status_code=201)
def create_rollout(
    payload: DecisionRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
):
    actor = get_actor(authorization)
    role_error = require_role(actor, {Role.CI_PUBLISHER, Role.DELIVERY_OWNER, Role.PLATFORM_ADMIN}, "deploy")
    if role_error:
        return role_error
    guardrails.require_mutations_enabled()
    decision = _decide(actor, payload)
    if not decision.should_deploy:
        return error_response(
            409,
            "PROMOTION_REJECTED",
            decision.final_reason,
            details={"decision": decision.as_dict()},
        )
    try:
        result = build_orchestrator().run(decision)
    except PromotionError as exc:
        log_event(
            "rollout_failed",
            actor_id=actor.actor_id,
            run_id=decision.run_id,
            service_name=decision.application,
            environment=decision.target_environment,
            outcome="FAILED",
            error_code=exc.code,
            summary=exc.message,
        )
        raise
    logger.info(
        "rollout.finished run_id=%s application=%s environment=%s status=%s",
        decision.run_id,
        decision.application,
        decision.target_environment,
        result.status.value,
    )
    return {"decision": decision.as_dict(), "rollout": result.as_dict()}


@app.post("/v1/rollouts/{environment}/{application}/rollback")
def rollback_rollout(
    environment: str,
    application: str,
    payload: RollbackRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
):
    actor = get_actor(authorization)
    role_error = require_role(actor, {Role.DELIVERY_OWNER, Role.PLATFORM_ADMIN}, "rollback")
    if role_error:
        return role_error
    guardrails.require_mutations_enabled()
    result = build_orchestrator().rollback(environment, application, actor.actor_id, payload.reason)
    log_event(
        "rollback_submitted",
        actor_id=actor.actor_id,
        actor_role=actor.role.value,
        service_name=application,
        environment=environment,
        outcome=result.status.value,
        summary=result.reason,
    )
    return result.as_dict()


@app.get("/v1/slots/{environment}/{application}")
def get_slots(
    environment: str,
    application: str,
    request: Request,
    probe: bool = Query(False),
    authorization: Optional[str] = Header(None),
):
    actor = get_actor(authorization)
    if not can_view(actor):
        return error_response(403, "ROLE_FORBIDDEN", f"Role {actor.role.value} cannot view slots")
    slots = build_orchestrator().describe_slots(environment, application, probe=probe)
    return {
        "environment": environment,
        "application": application,
        "slots": [slot.as_dict() for slot in slots],
        "latestRollout": storage.latest_rollout(environment, application),
    }


@app.get("/v1/audit")
def list_audit(
    request: Request,
    application: Optional[str] = Query(None),
    environment: Optional[str] = Query(None),
    run_id: Optional[str] = Query(None),
    requires_review: Optional[bool] = Query(None),
    limit: Optional[int] = Query(200),
    authorization: Optional[str] = Header(None),
):
    actor = get_actor(authorization)
    role_error = require_role(actor, {Role.PLATFORM_ADMIN}, "view audit entries")
    if role_error:
        return role_error
    if limit is None or limit < 1 or limit > 500:
        return error_response(400, "INVALID_REQUEST", "limit must be between 1 and 500")
    return storage.list_audit_entries(
        application=application,
        environment=environment,
        run_id=run_id,
        requires_review=requires_review,
        limit=limit,
    )
