import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from audit import AuditTrail
from environment_policy import EnvironmentPolicy
from models import AuthorizationRecord, GateStatus, QualityGateResult
from observability import log_event
from policy import QualityGateFailure


BypassSource = Callable[[str, str], Mapping[str, bool]]

# Checkmarx thresholds used by the scan job when the report carries none.
DEFAULT_THRESHOLDS: Dict[str, Dict[str, int]] = {
    "checkmarx": {"high": 0, "medium": 5, "low": 10},
}


@dataclass(frozen=True)
class QualityGateVerdict:
    status: GateStatus
    results: Tuple[QualityGateResult, ...]
    failed_tools: Tuple[str, ...] = ()
    bypassed_tools: Tuple[str, ...] = ()
    reason: str = ""

    @property
    def passed(self) -> bool:
        return self.status == GateStatus.PASSED

    def as_dict(self) -> dict:
        return {
            "status": self.status.value,
            "failedTools": list(self.failed_tools),
            "bypassedTools": list(self.bypassed_tools),
            "reason": self.reason,
            "results": [
                {
                    "toolName": result.tool_name,
                    "status": result.status.value,
                    "severityCounts": dict(result.severity_counts),
                    "thresholds": dict(result.thresholds),
                }
                for result in self.results
            ],
        }


def exceeded_thresholds(result: QualityGateResult) -> List[str]:
    thresholds = result.thresholds or DEFAULT_THRESHOLDS.get(result.tool_name, {})
    exceeded = []
    for severity in sorted(result.severity_counts):
        limit = thresholds.get(severity)
        if limit is None:
            continue
        count = int(result.severity_counts[severity] or 0)
        if count > int(limit):
            exceeded.append(f"{severity}={count}>{limit}")
    return exceeded


class QualityGateAggregator:
    """Folds per-tool scan results into one PASSED/FAILED verdict.

    Bypass flags come from ``bypass_source`` on every evaluation. A flag only
    takes effect when the authorization stage approved the principal, and on
    protected environments when the principal is also in the authorized set.
    """

    def __init__(self, bypass_source: BypassSource, required_tools: Optional[Iterable[str]] = None) -> None:
        self.bypass_source = bypass_source
        self.required_tools = tuple(t.strip().lower() for t in (required_tools or ()) if t and t.strip())
        self._logger = logging.getLogger("promote.decision")

    def bypass_permitted(self, policy: EnvironmentPolicy, record: AuthorizationRecord) -> bool:
        if not record.approved:
            return False
        if policy.protected and not record.principal_authorized:
            return False
        return True

    def evaluate(
        self,
        results: Iterable[QualityGateResult],
        record: AuthorizationRecord,
        policy: EnvironmentPolicy,
        application: str,
        trail: AuditTrail,
    ) -> QualityGateVerdict:
        """Apply thresholds and permitted bypasses to each tool result.

        A raw status stands unless a permitted bypass replaces it, with one
        exception: a tool that reports BYPASSED on its own counts as FAILED.
        """
        env = policy.name
        flags = {str(k).lower(): bool(v) for k, v in (self.bypass_source(env, application) or {}).items()}
        permitted = self.bypass_permitted(policy, record)

        normalized = [self._normalize(result) for result in results]
        reported = {result.tool_name for result in normalized}
        for tool in self.required_tools:
            if tool not in reported:
                normalized.append(QualityGateResult(tool_name=tool, status=GateStatus.FAILED))
                trail.record(record.principal, "quality_gate_missing", f"tool={tool} environment={env} no result reported")

        effective: List[QualityGateResult] = []
        failed: List[str] = []
        bypassed: List[str] = []
        details: List[str] = []
        denied_logged = set()
        for result in normalized:
            tool = result.tool_name
            if flags.get(tool):
                if permitted:
                    effective.append(self._with_status(result, GateStatus.BYPASSED))
                    bypassed.append(tool)
                    trail.record(
                        record.principal,
                        "quality_gate_bypassed",
                        f"tool={tool} environment={env} reported={result.status.value} reason=bypass_{tool} set",
                        requires_review=True,
                    )
                    continue
                if tool not in denied_logged:
                    denied_logged.add(tool)
                    trail.record(
                        record.principal,
                        "quality_gate_bypass_denied",
                        f"tool={tool} environment={env} principal not permitted to bypass",
                        requires_review=True,
                    )

            status = result.status
            exceeded = exceeded_thresholds(result)
            if exceeded:
                status = GateStatus.FAILED
                details.append(f"{tool} {', '.join(exceeded)}")
            elif status == GateStatus.BYPASSED:
                # A tool cannot bypass itself.
                status = GateStatus.FAILED
                details.append(f"{tool} reported BYPASSED without an approved bypass")
            elif status == GateStatus.FAILED:
                details.append(f"{tool} failed")
            if status == GateStatus.FAILED and tool not in failed:
                failed.append(tool)
            effective.append(self._with_status(result, status))

        if failed:
            verdict_status = GateStatus.FAILED
            reason = "quality gate failed: " + "; ".join(details)
        else:
            verdict_status = GateStatus.PASSED
            reason = "quality gates passed"
            if bypassed:
                reason = f"{reason} (bypassed: {', '.join(bypassed)})"
        verdict = QualityGateVerdict(
            status=verdict_status,
            results=tuple(effective),
            failed_tools=tuple(failed),
            bypassed_tools=tuple(bypassed),
            reason=reason,
        )
        if bypassed:
            self._logger.warning(
                "quality_gate.bypass environment=%s application=%s tools=%s actor=%s",
                env,
                application,
                ",".join(bypassed),
                record.principal,
            )
        log_event(
            "quality_gate_evaluated",
            environment=env,
            service_name=application,
            outcome=verdict_status.value,
            failed=",".join(failed) or None,
            bypassed=",".join(bypassed) or None,
        )
        return verdict

    def enforce(self, verdict: QualityGateVerdict) -> QualityGateVerdict:
        if not verdict.passed:
            raise QualityGateFailure(verdict.reason, verdict)
        return verdict

    @staticmethod
    def _normalize(result: QualityGateResult) -> QualityGateResult:
        return QualityGateResult(
            tool_name=result.tool_name.strip().lower(),
            status=GateStatus(result.status),
            severity_counts={str(k).lower(): int(v) for k, v in (result.severity_counts or {}).items()},
            thresholds={str(k).lower(): int(v) for k, v in (result.thresholds or {}).items()},
        )

    @staticmethod
    def _with_status(result: QualityGateResult, status: GateStatus) -> QualityGateResult:
        return QualityGateResult(
            tool_name=result.tool_name,
            status=status,
            severity_counts=dict(result.severity_counts),
            thresholds=dict(result.thresholds),
        )
