import pytest

from audit import AuditTrail
from environment_policy import build_policy
from fake_config import FakeConfigSource
from models import AuthorizationRecord, GateStatus, QualityGateResult
from policy import QualityGateFailure
from quality_gate import QualityGateAggregator, exceeded_thresholds


APPROVED = AuthorizationRecord(principal="authorized-admin", approved=True, reason="ok", principal_authorized=True)


def _result(tool: str, status: GateStatus, counts=None, thresholds=None) -> QualityGateResult:
    return QualityGateResult(tool_name=tool, status=status, severity_counts=counts or {}, thresholds=thresholds or {})


def _evaluate(results, bypass=None, record=APPROVED, env="ppr", required=("sonar", "checkmarx")):
    config = FakeConfigSource(bypass=bypass)
    aggregator = QualityGateAggregator(config.bypass_flags, required)
    trail = AuditTrail(clock=lambda: "2026-01-01T00:00:00Z")
    policy = build_policy(env, ["refs/heads/release/*"])
    verdict = aggregator.evaluate(results, record, policy, "orders-api", trail)
    return aggregator, verdict, trail


def test_all_passed_is_passed():
    _, verdict, trail = _evaluate([_result("sonar", GateStatus.PASSED), _result("checkmarx", GateStatus.PASSED)])
    assert verdict.status == GateStatus.PASSED
    assert len(trail) == 0


def test_one_failed_is_failed():
    aggregator, verdict, _ = _evaluate([_result("sonar", GateStatus.FAILED), _result("checkmarx", GateStatus.PASSED)])
    assert verdict.status == GateStatus.FAILED
    assert verdict.failed_tools == ("sonar",)
    with pytest.raises(QualityGateFailure) as excinfo:
        aggregator.enforce(verdict)
    assert excinfo.value.status_code == 422


def test_authorized_bypass_passes_with_review_entry():
    _, verdict, trail = _evaluate(
        [_result("sonar", GateStatus.FAILED), _result("checkmarx", GateStatus.PASSED)],
        bypass={"sonar": True},
    )
    assert verdict.status == GateStatus.PASSED
    assert verdict.bypassed_tools == ("sonar",)
    bypass_entries = [entry for entry in trail.entries if entry.action == "quality_gate_bypassed"]
    assert len(bypass_entries) == 1
    assert bypass_entries[0].requires_review is True
    assert bypass_entries[0].actor == "authorized-admin"
    assert "tool=sonar" in bypass_entries[0].detail


def test_bypass_without_approved_authorization_is_ignored_and_audited():
    denied = AuthorizationRecord(principal="dev-user", approved=False, reason="nope")
    _, verdict, trail = _evaluate(
        [_result("sonar", GateStatus.FAILED), _result("checkmarx", GateStatus.PASSED)],
        bypass={"sonar": True},
        record=denied,
    )
    assert verdict.status == GateStatus.FAILED
    assert [entry.action for entry in trail.entries] == ["quality_gate_bypass_denied"]


def test_bypass_on_protected_environment_needs_authorized_principal():
    record = AuthorizationRecord(principal="dev-user", approved=True, reason="matched", principal_authorized=False)
    _, verdict, _ = _evaluate(
        [_result("sonar", GateStatus.FAILED), _result("checkmarx", GateStatus.PASSED)],
        bypass={"sonar": True},
        record=record,
    )
    assert verdict.status == GateStatus.FAILED


def test_bypass_on_unprotected_environment_follows_approval():
    record = AuthorizationRecord(principal="dev-user", approved=True, reason="matched", principal_authorized=False)
    _, verdict, _ = _evaluate(
        [_result("sonar", GateStatus.FAILED), _result("checkmarx", GateStatus.PASSED)],
        bypass={"sonar": True},
        record=record,
        env="dev",
    )
    assert verdict.status == GateStatus.PASSED


def test_threshold_exceeded_flips_passed_to_failed():
    _, verdict, _ = _evaluate(
        [
            _result("sonar", GateStatus.PASSED),
            _result("checkmarx", GateStatus.PASSED, counts={"high": 0, "medium": 6}, thresholds={"high": 0, "medium": 5}),
        ]
    )
    assert verdict.status == GateStatus.FAILED
    assert "medium=6>5" in verdict.reason


def test_default_checkmarx_thresholds_apply():
    result = _result("checkmarx", GateStatus.PASSED, counts={"high": 1, "low": 3})
    assert exceeded_thresholds(result) == ["high=1>0"]


def test_bypass_wins_over_threshold():
    _, verdict, _ = _evaluate(
        [
            _result("sonar", GateStatus.PASSED),
            _result("checkmarx", GateStatus.PASSED, counts={"high": 4}),
        ],
        bypass={"checkmarx": True},
    )
    assert verdict.status == GateStatus.PASSED


def test_missing_required_tool_fails():
    _, verdict, trail = _evaluate([_result("sonar", GateStatus.PASSED)])
    assert verdict.status == GateStatus.FAILED
    assert verdict.failed_tools == ("checkmarx",)
    assert trail.entries[0].action == "quality_gate_missing"


def test_self_reported_bypass_is_not_honored():
    _, verdict, _ = _evaluate([_result("sonar", GateStatus.BYPASSED), _result("checkmarx", GateStatus.PASSED)])
    assert verdict.status == GateStatus.FAILED


def test_bypass_flags_are_read_each_evaluation():
    config = FakeConfigSource(bypass={"sonar": True})
    aggregator = QualityGateAggregator(config.bypass_flags, ("sonar",))
    policy = build_policy("ppr", ["refs/heads/release/*"])
    results = [_result("sonar", GateStatus.FAILED)]

    first = aggregator.evaluate(results, APPROVED, policy, "orders-api", AuditTrail())
    config.bypass["sonar"] = False
    second = aggregator.evaluate(results, APPROVED, policy, "orders-api", AuditTrail())

    assert first.status == GateStatus.PASSED
    assert second.status == GateStatus.FAILED
    assert config.reads["bypass"] == 2
