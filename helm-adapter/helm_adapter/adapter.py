import json
import logging
import time
from typing import Callable, List, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from helm_adapter.redaction import redact_text, redact_url


def slot_namespace(environment: str, application: str, slot: Optional[str] = None) -> str:
    if slot:
        return f"{environment}-{application}-{slot}"
    return f"{environment}-{application}"


def ingress_name(application: str, canary: bool = False) -> str:
    if canary:
        return f"{application}-ingress-canary"
    return f"{application}-ingress"


class ExecutorError(RuntimeError):
    def __init__(
        self,
        message: str,
        operation: str = "",
        status_code: Optional[int] = None,
        category: str = "UNKNOWN",
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code
        self.category = category
        self.retryable = retryable


class HelmExecutorAdapter:
    """Client for the Helm/kubectl executor that performs applies and traffic shifts.

    ``target`` arguments are plain dicts with ``environment``, ``application``,
    ``cluster``, ``resourceGroup`` and optionally ``region``. In ``dry-run``
    mode nothing is sent; intended actions are logged and health reads report
    a healthy slot.
    """

    def __init__(
        self,
        base_url: str = "",
        mode: str = "http",
        request_timeout_seconds: Optional[float] = None,
        header_name: str = "",
        header_value: str = "",
        request_id_provider: Optional[Callable[[], str]] = None,
    ) -> None:
        self.base_url = base_url
        self.mode = mode
        self.request_timeout_seconds = request_timeout_seconds
        self.header_name = header_name.strip() if header_name else ""
        self.header_value = header_value
        self.request_id_provider = request_id_provider
        self.dry_run_actions: List[dict] = []
        self._logger = logging.getLogger("promote.executor")
        self._obs_logger = logging.getLogger("promote.obs")

    @property
    def dry_run(self) -> bool:
        return self.mode == "dry-run"

    def deploy(self, target: dict, slot: Optional[str], image_tag: str) -> dict:
        namespace = slot_namespace(target["environment"], target["application"], slot)
        body = self._target_body(target)
        body.update({"namespace": namespace, "slot": slot, "imageTag": image_tag, "strategy": "blue_green" if slot else "rolling"})
        if self.dry_run:
            return self._record_dry_run("deploy", body)
        response, _, _ = self._request_json("POST", self._url("/deployments"), body, operation="deploy")
        self._logger.info(
            "executor.deploy environment=%s application=%s namespace=%s image_tag=%s",
            target["environment"],
            target["application"],
            namespace,
            image_tag,
        )
        return response

    def get_health(self, target: dict, slot: Optional[str]) -> dict:
        namespace = slot_namespace(target["environment"], target["application"], slot)
        if self.dry_run:
            self._record_dry_run("get_health", {"namespace": namespace})
            return {"status": "Healthy", "errorRate": 0.0}
        query = urlencode({"cluster": target["cluster"], "resourceGroup": target["resourceGroup"]})
        url = self._url(f"/deployments/{quote(namespace)}/health?{query}")
        response, _, _ = self._request_json("GET", url, operation="get_health")
        status = str(response.get("status") or "Unknown")
        if status.lower() in {"healthy", "up", "ok"}:
            status = "Healthy"
        elif status.lower() in {"unhealthy", "down", "failed"}:
            status = "Unhealthy"
        else:
            status = "Unknown"
        error_rate = response.get("errorRate")
        try:
            error_rate = float(error_rate) if error_rate is not None else None
        except (TypeError, ValueError):
            error_rate = None
        return {"status": status, "errorRate": error_rate}

    def set_canary_weight(self, target: dict, slot: str, weight: int) -> dict:
        body = self._target_body(target)
        body.update(
            {
                "ingress": ingress_name(target["application"], canary=True),
                "namespace": slot_namespace(target["environment"], target["application"], slot),
                "weight": int(weight),
            }
        )
        if self.dry_run:
            return self._record_dry_run("set_canary_weight", body)
        response, _, _ = self._request_json("PUT", self._url("/traffic/canary"), body, operation="set_canary_weight")
        self._logger.info(
            "executor.canary environment=%s application=%s slot=%s weight=%s",
            target["environment"],
            target["application"],
            slot,
            weight,
        )
        return response

    def route_all(self, target: dict, slot: str) -> dict:
        """Point the main ingress at ``slot`` and drop any canary weight."""
        body = self._target_body(target)
        body.update(
            {
                "ingress": ingress_name(target["application"]),
                "canaryIngress": ingress_name(target["application"], canary=True),
                "namespace": slot_namespace(target["environment"], target["application"], slot),
            }
        )
        if self.dry_run:
            return self._record_dry_run("route_all", body)
        response, _, _ = self._request_json("PUT", self._url("/traffic/active"), body, operation="route_all")
        self._logger.info(
            "executor.route environment=%s application=%s slot=%s",
            target["environment"],
            target["application"],
            slot,
        )
        return response

    def discard(self, target: dict, slot: str) -> dict:
        namespace = slot_namespace(target["environment"], target["application"], slot)
        if self.dry_run:
            return self._record_dry_run("discard", {"namespace": namespace})
        query = urlencode({"cluster": target["cluster"], "resourceGroup": target["resourceGroup"]})
        response, _, _ = self._request_json(
            "DELETE", self._url(f"/deployments/{quote(namespace)}?{query}"), operation="discard"
        )
        return response

    def rollout_undo(self, target: dict) -> dict:
        namespace = slot_namespace(target["environment"], target["application"])
        body = self._target_body(target)
        body["namespace"] = namespace
        if self.dry_run:
            return self._record_dry_run("rollout_undo", body)
        response, _, _ = self._request_json(
            "POST", self._url(f"/deployments/{quote(namespace)}/undo"), body, operation="rollout_undo"
        )
        return response

    def check_health(self) -> dict:
        if self.dry_run:
            return {"status": "UP", "details": {"mode": "dry-run"}}
        response, status_code, _ = self._request_json("GET", self._url("/health"), operation="check_health")
        return {"status": "UP" if 200 <= status_code < 300 else "DOWN", "details": response}

    def _url(self, path: str) -> str:
        if not self.base_url:
            raise ExecutorError("Executor base URL is required for HTTP mode", category="CONFIG", retryable=False)
        return f"{self.base_url.rstrip('/')}{path}"

    @staticmethod
    def _target_body(target: dict) -> dict:
        return {
            "environment": target["environment"],
            "application": target["application"],
            "cluster": target["cluster"],
            "resourceGroup": target["resourceGroup"],
            "region": target.get("region"),
        }

    def _record_dry_run(self, action: str, body: dict) -> dict:
        self.dry_run_actions.append({"action": action, **body})
        self._logger.info("executor.dry_run action=%s body=%s", action, redact_text(json.dumps(body, sort_keys=True)))
        return {"status": "DRY_RUN", "action": action}

    def _request_json(
        self,
        method: str,
        url: str,
        body: Optional[dict] = None,
        operation: str = "request",
    ) -> tuple:
        data = None
        headers = {"Content-Type": "application/json"}
        header_configured = bool(self.header_name and self.header_value)
        if header_configured:
            headers[self.header_name] = self.header_value
        request_id = self.request_id_provider() if self.request_id_provider else ""
        if request_id:
            headers["X-Request-Id"] = request_id
        if body is not None:
            data = json.dumps(body).encode("utf-8")
        request = Request(url, data=data, headers=headers, method=method)
        start = time.monotonic()
        self._log_executor_event("executor_call_started", request_id, operation, url)
        try:
            if self.request_timeout_seconds is None:
                response_ctx = urlopen(request)
            else:
                response_ctx = urlopen(request, timeout=self.request_timeout_seconds)
            with response_ctx as response:
                status_code = response.status
                response_headers = dict(response.headers.items())
                payload = response.read().decode("utf-8")
        except HTTPError as exc:
            latency_ms = (time.monotonic() - start) * 1000
            detail = exc.read().decode("utf-8") if exc.fp else ""
            snippet = self._safe_snippet(detail)
            message = f"Executor HTTP {exc.code}: {snippet}" if snippet else f"Executor HTTP {exc.code}"
            redacted_message = redact_text(message)
            classified = classify_executor_error(redacted_message, exc.code)
            self._log_executor_event(
                "executor_call_failed",
                request_id,
                operation,
                url,
                outcome="FAILED",
                duration_ms=round(latency_ms, 1),
                error=redacted_message,
                status_code=exc.code,
            )
            self._logger.warning(
                "executor.request method=%s url=%s status=%s latency_ms=%.1f custom_header=%s error=%s",
                method,
                redact_url(url),
                exc.code,
                latency_ms,
                "configured" if header_configured else "none",
                redacted_message,
            )
            raise ExecutorError(
                redacted_message,
                operation=operation,
                status_code=exc.code,
                category=classified["category"],
                retryable=classified["retryable"],
            ) from exc
        except URLError as exc:
            latency_ms = (time.monotonic() - start) * 1000
            reason = redact_text(str(exc.reason))
            self._log_executor_event(
                "executor_call_failed",
                request_id,
                operation,
                url,
                outcome="FAILED",
                duration_ms=round(latency_ms, 1),
                error=reason,
            )
            self._logger.warning(
                "executor.request method=%s url=%s status=error latency_ms=%.1f custom_header=%s error=%s",
                method,
                redact_url(url),
                latency_ms,
                "configured" if header_configured else "none",
                reason,
            )
            raise ExecutorError(
                redact_text(f"Executor connection failed: {exc.reason}"),
                operation=operation,
                category="INFRASTRUCTURE",
                retryable=True,
            ) from exc
        latency_ms = (time.monotonic() - start) * 1000
        self._log_executor_event(
            "executor_call_succeeded",
            request_id,
            operation,
            url,
            outcome="SUCCESS",
            duration_ms=round(latency_ms, 1),
            status_code=status_code,
        )
        self._logger.info(
            "executor.request method=%s url=%s status=%s latency_ms=%.1f custom_header=%s",
            method,
            redact_url(url),
            status_code,
            latency_ms,
            "configured" if header_configured else "none",
        )
        if not payload:
            return {}, status_code, response_headers
        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError:
            return {}, status_code, response_headers
        if not isinstance(parsed, dict):
            return {}, status_code, response_headers
        return parsed, status_code, response_headers

    def _log_executor_event(
        self,
        event: str,
        request_id: str,
        operation: str,
        url: str,
        outcome: Optional[str] = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        fields = {
            "event": event,
            "request_id": request_id or "",
            "engine": "helm",
            "operation": operation,
            "target": redact_url(url),
        }
        if outcome:
            fields["outcome"] = outcome
        if duration_ms is not None:
            fields["duration_ms"] = duration_ms
        if status_code is not None:
            fields["status_code"] = status_code
        if error:
            fields["error"] = redact_text(error)
        parts = [f"{key}={fields[key]}" for key in sorted(fields.keys())]
        self._obs_logger.info(" ".join(parts))

    @staticmethod
    def _safe_snippet(value: str, limit: int = 240) -> str:
        if not value:
            return ""
        text = value.replace("\n", " ").replace("\r", " ")
        if len(text) <= limit:
            return text
        return text[:limit].rstrip() + "..."


_STATUS_MAP = {
    400: {"category": "VALIDATION", "retryable": False},
    401: {"category": "POLICY", "retryable": False},
    403: {"category": "POLICY", "retryable": False},
    404: {"category": "CONFIG", "retryable": False},
    408: {"category": "TIMEOUT", "retryable": True},
    409: {"category": "CONFLICT", "retryable": True},
    429: {"category": "INFRASTRUCTURE", "retryable": True},
}

_PATTERN_MAP = [
    {"pattern": "timeout", "category": "TIMEOUT", "retryable": True},
    {"pattern": "timed out", "category": "TIMEOUT", "retryable": True},
    {"pattern": "connection", "category": "INFRASTRUCTURE", "retryable": True},
    {"pattern": "unavailable", "category": "INFRASTRUCTURE", "retryable": True},
    {"pattern": "imagepullbackoff", "category": "ARTIFACT", "retryable": False},
    {"pattern": "errimagepull", "category": "ARTIFACT", "retryable": False},
    {"pattern": "manifest unknown", "category": "ARTIFACT", "retryable": False},
    {"pattern": "forbidden", "category": "POLICY", "retryable": False},
    {"pattern": "quota", "category": "INFRASTRUCTURE", "retryable": True},
    {"pattern": "values", "category": "CONFIG", "retryable": False},
]


def classify_executor_error(message: Optional[str], status_code: Optional[int] = None) -> dict:
    text = (message or "").lower()
    for entry in _PATTERN_MAP:
        if entry["pattern"] in text:
            return {"category": entry["category"], "retryable": entry["retryable"]}
    if status_code in _STATUS_MAP:
        return dict(_STATUS_MAP[status_code])
    if status_code is not None and status_code >= 500:
        return {"category": "INFRASTRUCTURE", "retryable": True}
    return {"category": "UNKNOWN", "retryable": True}
