from typing import Optional

from config import SETTINGS


class PromotionError(Exception):
    status_code = 400
    code = "PROMOTION_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code


class ConfigurationError(PromotionError):
    """No environment resolved, or coordinates missing after fallback."""

    status_code = 400
    code = "CONFIGURATION_ERROR"


class AuthorizationError(PromotionError):
    status_code = 403
    code = "AUTHORIZATION_DENIED"

    def __init__(self, message: str, record=None) -> None:
        super().__init__(message)
        self.record = record


class QualityGateFailure(PromotionError):
    status_code = 422
    code = "QUALITY_GATE_FAILED"

    def __init__(self, message: str, verdict=None) -> None:
        super().__init__(message)
        self.verdict = verdict


class DeploymentFailure(PromotionError):
    """Retryable: the previously active slot is still serving traffic."""

    status_code = 503
    code = "DEPLOYMENT_FAILED"
    retryable = True


class HealthCheckTimeout(DeploymentFailure):
    status_code = 504
    code = "HEALTH_CHECK_TIMEOUT"


class TrafficShiftFailure(PromotionError):
    """Rollback could not complete. Requires operator intervention."""

    status_code = 500
    code = "TRAFFIC_SHIFT_FAILED"
    retryable = False


class RolloutLockedError(PromotionError):
    status_code = 409
    code = "ROLLOUT_LOCKED"


class RolloutNotFoundError(PromotionError):
    status_code = 404
    code = "ROLLOUT_NOT_FOUND"


class Guardrails:
    def __init__(self, storage) -> None:
        self.storage = storage

    def require_mutations_enabled(self) -> None:
        if SETTINGS.mutations_disabled:
            raise PromotionError("Mutating operations are disabled", "MUTATIONS_DISABLED", 503)

    def acquire_rollout_lease(self, environment: str, application: str, holder: str) -> None:
        ttl = max(int(SETTINGS.rollout_lease_ttl_seconds), 1)
        if not self.storage.acquire_lease(environment, application, holder, ttl):
            raise RolloutLockedError(f"Another rollout is in progress for {application} in {environment}")

    def release_rollout_lease(self, environment: str, application: str, holder: str) -> None:
        self.storage.release_lease(environment, application, holder)
