import pytest

from decision import PromotionDecisionEngine, resolve_image_tag
from fake_config import FakeConfigSource
from models import DecisionStage, EventType, GateStatus, QualityGateResult, TriggerContext
from storage import Storage


PASSING = [
    QualityGateResult(tool_name="sonar", status=GateStatus.PASSED),
    QualityGateResult(tool_name="checkmarx", status=GateStatus.PASSED, severity_counts={"high": 0, "medium": 2}),
]


@pytest.fixture
def storage(tmp_path):
    return Storage(str(tmp_path / "promotion.db"))


def _engine(storage, config=None) -> PromotionDecisionEngine:
    return PromotionDecisionEngine(
        config or FakeConfigSource(),
        storage=storage,
        required_tools=("sonar", "checkmarx"),
        clock=lambda: "2026-01-01T00:00:00Z",
    )


def _actions(storage, run_id):
    return [entry["action"] for entry in storage.list_audit_entries(run_id=run_id)]


def test_release_branch_push_is_approved_for_ppr(storage):
    trigger = TriggerContext(
        event_type=EventType.PUSH,
        ref="refs/heads/release/2.4.0",
        actor="ci-bot",
        sha="abc1234def5678",
    )
    decision = _engine(storage).decide("orders-api", trigger, PASSING, run_id="run-a")

    assert decision.should_deploy is True
    assert decision.stage == DecisionStage.APPROVED
    assert decision.target_environment == "ppr"
    assert decision.cluster == "aks-ppr-eastus"
    assert decision.resource_group == "rg-ppr"
    assert decision.image_tag == "v2.4.0"
    assert decision.quality_gate == GateStatus.PASSED
    assert decision.final_reason == "promotion approved for ppr"
    assert _actions(storage, "run-a") == [
        "decision_started",
        "environment_resolved",
        "authorization_approved",
        "decision_approved",
    ]
    stored = storage.get_decision("run-a")
    assert stored["shouldDeploy"] is True
    assert stored["imageTag"] == "v2.4.0"


def test_dispatch_from_main_without_override_is_rejected(storage):
    trigger = TriggerContext(
        event_type=EventType.WORKFLOW_DISPATCH,
        ref="refs/heads/main",
        actor="dev-user",
        environment="ppr",
        override_branch_validation=False,
    )
    decision = _engine(storage).decide("orders-api", trigger, PASSING, run_id="run-main")

    assert decision.should_deploy is False
    assert decision.stage == DecisionStage.REJECTED
    assert decision.target_environment == "ppr"
    assert decision.branch_matched is False
    assert decision.final_reason == "branch validation failed, override required"
    assert decision.quality_gate is None
    actions = _actions(storage, "run-main")
    assert actions == [
        "decision_started",
        "environment_resolved",
        "authorization_rejected",
        "decision_rejected",
    ]
    assert not any(action.startswith("quality_gate") for action in actions)


def test_unauthorized_override_stops_before_quality_gate(storage):
    trigger = TriggerContext(
        event_type=EventType.WORKFLOW_DISPATCH,
        ref="refs/heads/feature/hotfix",
        actor="unauthorized-user",
        environment="ppr",
        override_branch_validation=True,
    )
    decision = _engine(storage).decide("orders-api", trigger, PASSING, run_id="run-b")

    assert decision.should_deploy is False
    assert decision.stage == DecisionStage.REJECTED
    assert decision.final_reason == "not authorized for ppr"
    assert decision.quality_gate is None
    assert decision.image_tag is None
    entries = storage.list_audit_entries(run_id="run-b")
    assert [entry["action"] for entry in entries][-1] == "decision_rejected"
    assert "error=AUTHORIZATION_DENIED" in entries[-1]["detail"]
    assert any(entry["requiresReview"] for entry in entries)


def test_prod_emergency_override_is_approved(storage):
    trigger = TriggerContext(
        event_type=EventType.WORKFLOW_DISPATCH,
        ref="refs/heads/hotfix/cve",
        actor="authorized-admin",
        environment="prod",
        override_branch_validation=True,
        emergency_deployment=True,
        deploy_notes="patch CVE-X",
        custom_image_tag="v9.9.9-hotfix",
    )
    decision = _engine(storage).decide("orders-api", trigger, PASSING, run_id="run-c")

    assert decision.should_deploy is True
    assert decision.target_environment == "prod"
    assert decision.branch_matched is False
    assert decision.image_tag == "v9.9.9-hotfix"
    assert "branch override approved for prod (emergency)" in decision.reasons
    review = storage.list_audit_entries(run_id="run-c", requires_review=True)
    actions = [entry["action"] for entry in review]
    assert "branch_override_requested" in actions
    assert "custom_image_tag_used" in actions
    override = next(entry for entry in review if entry["action"] == "branch_override_requested")
    assert override["actor"] == "authorized-admin"
    assert override["detail"].endswith("notes=patch CVE-X")


def test_prod_override_without_emergency_flag_is_rejected(storage):
    trigger = TriggerContext(
        event_type=EventType.WORKFLOW_DISPATCH,
        ref="refs/heads/main",
        actor="authorized-admin",
        environment="prod",
        override_branch_validation=True,
        deploy_notes="routine",
    )
    decision = _engine(storage).decide("orders-api", trigger, PASSING, run_id="run-d")
    assert decision.should_deploy is False
    assert decision.final_reason == "emergency flag required for prod override"


def test_dev_override_is_approved_for_anyone(storage):
    trigger = TriggerContext(
        event_type=EventType.WORKFLOW_DISPATCH,
        ref="refs/heads/feature/login",
        actor="dev-user",
        environment="dev",
        override_branch_validation=True,
        sha="0123456789abcdef",
    )
    decision = _engine(storage).decide("orders-api", trigger, PASSING, run_id="run-e")
    assert decision.should_deploy is True
    assert decision.image_tag == "dev-0123456"


def test_quality_gate_failure_rejects(storage):
    trigger = TriggerContext(event_type=EventType.PUSH, ref="refs/tags/v3.0.0", actor="ci-bot")
    results = [
        QualityGateResult(tool_name="sonar", status=GateStatus.FAILED),
        QualityGateResult(tool_name="checkmarx", status=GateStatus.PASSED),
    ]
    decision = _engine(storage).decide("orders-api", trigger, results, run_id="run-f")
    assert decision.should_deploy is False
    assert decision.quality_gate == GateStatus.FAILED
    assert decision.final_reason.startswith("quality gate failed")
    assert "error=QUALITY_GATE_FAILED" in storage.list_audit_entries(run_id="run-f")[-1]["detail"]


def test_quality_gate_bypass_approves_and_is_flagged_for_review(storage):
    config = FakeConfigSource(bypass={"sonar": True})
    trigger = TriggerContext(event_type=EventType.PUSH, ref="refs/tags/v3.0.0", actor="authorized-admin")
    results = [
        QualityGateResult(tool_name="sonar", status=GateStatus.FAILED),
        QualityGateResult(tool_name="checkmarx", status=GateStatus.PASSED),
    ]
    decision = _engine(storage, config).decide("orders-api", trigger, results, run_id="run-g")
    assert decision.should_deploy is True
    assert decision.quality_gate == GateStatus.PASSED
    review = storage.list_audit_entries(run_id="run-g", requires_review=True)
    assert [entry["action"] for entry in review] == ["quality_gate_bypassed"]


def test_unmatched_push_is_configuration_rejection(storage):
    trigger = TriggerContext(event_type=EventType.PUSH, ref="refs/heads/feature/x", actor="dev-user")
    decision = _engine(storage).decide("orders-api", trigger, PASSING, run_id="run-h")
    assert decision.should_deploy is False
    assert decision.target_environment is None
    assert decision.final_reason == "no environment matches ref refs/heads/feature/x"
    assert _actions(storage, "run-h") == ["decision_started", "decision_rejected"]


def test_force_deploy_is_audited(storage):
    trigger = TriggerContext(event_type=EventType.PUSH, ref="refs/heads/dev", actor="dev-user", force_deploy=True)
    _engine(storage).decide("orders-api", trigger, PASSING, run_id="run-i")
    assert "force_deploy_requested" in _actions(storage, "run-i")


def test_audit_is_persisted_when_a_stage_raises_unexpectedly(storage):
    class BrokenConfig(FakeConfigSource):
        def authorized_principals(self, environment, application):
            raise RuntimeError("parameter store unavailable")

    trigger = TriggerContext(event_type=EventType.PUSH, ref="refs/heads/release/1.0.0", actor="ci-bot")
    with pytest.raises(RuntimeError):
        _engine(storage, BrokenConfig()).decide("orders-api", trigger, PASSING, run_id="run-j")
    assert _actions(storage, "run-j") == ["decision_started", "environment_resolved"]
    assert storage.get_decision("run-j") is None


def test_configuration_is_read_per_decision(storage):
    config = FakeConfigSource()
    engine = _engine(storage, config)
    trigger = TriggerContext(event_type=EventType.PUSH, ref="refs/heads/release/1.0.0", actor="ci-bot")
    engine.decide("orders-api", trigger, PASSING)
    engine.decide("orders-api", trigger, PASSING)
    assert config.reads["principals"] == 2
    assert config.reads["bypass"] == 2


@pytest.mark.parametrize(
    "trigger,build_tag,expected",
    [
        (TriggerContext(EventType.PUSH, "refs/tags/v1.2.3", "a"), None, "v1.2.3"),
        (TriggerContext(EventType.PUSH, "refs/heads/release/1.4.0", "a"), None, "v1.4.0"),
        (TriggerContext(EventType.PUSH, "refs/heads/sqe", "a", sha="feedface1234"), None, "sqe-feedfac"),
        (TriggerContext(EventType.PUSH, "refs/heads/sqe", "a", sha="feedface1234"), "build-42", "build-42"),
        (TriggerContext(EventType.PUSH, "refs/heads/sqe", "a", custom_image_tag=" pinned "), "build-42", "pinned"),
        (TriggerContext(EventType.PUSH, "refs/heads/sqe", "a"), None, None),
    ],
)
def test_resolve_image_tag(trigger, build_tag, expected):
    assert resolve_image_tag(trigger, "sqe", build_tag) == expected
