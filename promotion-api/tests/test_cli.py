import json
from pathlib import Path

import pytest

import cli
from blue_green import BlueGreenOrchestrator
from fake_executor import FakeExecutor
from models import GateStatus
from policy import Guardrails
from storage import Storage


PASSING_GATES = ["--quality-gate", "sonar=PASSED", "--quality-gate", "checkmarx=PASSED:high=0,medium=1"]


@pytest.fixture
def storage(tmp_path, monkeypatch):
    store = Storage(str(tmp_path / "promotion.db"))
    monkeypatch.setattr(cli, "_build_storage", lambda: store)
    for env in ("dev", "ppr", "prod"):
        monkeypatch.setenv(f"PROMOTE_AKS_CLUSTER_NAME_{env.upper()}", f"aks-{env}-eastus")
        monkeypatch.setenv(f"PROMOTE_AKS_RESOURCE_GROUP_{env.upper()}", f"rg-{env}")
    for name in ("PROMOTE_AUTHORIZED_PRINCIPALS", "PROMOTE_AUTHORIZED_TEAMS", "PROMOTE_BYPASS_SONAR",
                 "PROMOTE_BYPASS_CHECKMARX", "PROMOTE_BRANCH_POLICIES", "PROMOTE_SSM_PREFIX"):
        monkeypatch.delenv(name, raising=False)
    return store


@pytest.fixture
def executor(monkeypatch):
    fake = FakeExecutor()

    def _build(store):
        return BlueGreenOrchestrator(
            fake,
            store,
            Guardrails(store),
            health_check_interval_seconds=0,
            step_hold_seconds=0,
            check_interval_seconds=0,
            sleep=lambda seconds: None,
        )

    monkeypatch.setattr(cli, "_build_orchestrator", _build)
    return fake


def _github_env(tmp_path: Path, event="push", ref="refs/heads/release/1.2.0", actor="ci-bot", inputs=None) -> dict:
    env = {
        "GITHUB_EVENT_NAME": event,
        "GITHUB_REF": ref,
        "GITHUB_ACTOR": actor,
        "GITHUB_SHA": "abcdef1234567",
        "GITHUB_OUTPUT": str(tmp_path / "outputs.txt"),
    }
    if inputs is not None:
        event_path = tmp_path / "event.json"
        event_path.write_text(json.dumps({"inputs": inputs}), encoding="utf-8")
        env["GITHUB_EVENT_PATH"] = str(event_path)
    return env


def _outputs(tmp_path: Path) -> dict:
    lines = (tmp_path / "outputs.txt").read_text(encoding="utf-8").splitlines()
    return dict(line.split("=", 1) for line in lines)


def _last_line(capsys) -> str:
    return capsys.readouterr().out.strip().splitlines()[-1]


def test_decide_approved_writes_step_outputs(tmp_path, storage, capsys):
    code = cli.main(["decide", "--application", "orders-api", *PASSING_GATES], _github_env(tmp_path))

    assert code == 0
    assert _last_line(capsys) == "APPROVED: promotion approved for ppr"
    outputs = _outputs(tmp_path)
    assert outputs["should_deploy"] == "true"
    assert outputs["target_environment"] == "ppr"
    assert outputs["aks_cluster_name"] == "aks-ppr-eastus"
    assert outputs["aks_resource_group"] == "rg-ppr"
    assert outputs["image_tag"] == "v1.2.0"
    assert storage.get_decision(outputs["run_id"])["shouldDeploy"] is True


def test_decide_rejected_exits_nonzero(tmp_path, storage, capsys):
    env = _github_env(
        tmp_path,
        event="workflow_dispatch",
        ref="refs/heads/main",
        actor="dev-user",
        inputs={"environment": "prod", "override_branch_validation": "true", "emergency_deployment": "true"},
    )
    code = cli.main(["decide", "--application", "orders-api", *PASSING_GATES], env)

    assert code == 1
    out = capsys.readouterr().out
    assert out.strip().splitlines()[-1] == "REJECTED: not authorized for prod"
    assert "audit [REVIEW] actor=dev-user action=branch_override_requested" in out
    assert _outputs(tmp_path)["should_deploy"] == "false"


def test_authorized_principal_from_environment_is_honored(tmp_path, storage, capsys, monkeypatch):
    monkeypatch.setenv("PROMOTE_AUTHORIZED_PRINCIPALS", "release-lead, oncall")
    env = _github_env(
        tmp_path,
        event="workflow_dispatch",
        ref="refs/heads/main",
        actor="release-lead",
        inputs={
            "environment": "prod",
            "override_branch_validation": True,
            "emergency_deployment": True,
            "deploy_notes": "patch CVE-X",
        },
    )
    code = cli.main(["decide", "--application", "orders-api", *PASSING_GATES], env)
    assert code == 0
    assert _last_line(capsys) == "APPROVED: promotion approved for prod"


def test_flags_take_precedence_over_event_inputs(tmp_path, storage, capsys):
    env = _github_env(
        tmp_path,
        event="workflow_dispatch",
        ref="refs/heads/feature/x",
        actor="dev-user",
        inputs={"environment": "prod", "override_branch_validation": "true"},
    )
    code = cli.main(["decide", "--application", "orders-api", "--environment", "dev", *PASSING_GATES], env)
    assert code == 0
    assert _last_line(capsys) == "APPROVED: promotion approved for dev"
    assert _outputs(tmp_path)["image_tag"] == "dev-abcdef1"


def test_missing_quality_result_rejects(tmp_path, storage, capsys):
    code = cli.main(["decide", "--application", "orders-api", "--quality-gate", "sonar=PASSED"], _github_env(tmp_path))
    assert code == 1
    assert _last_line(capsys).startswith("REJECTED: quality gate failed")


def test_quality_report_file_is_loaded(tmp_path, storage, capsys):
    report = tmp_path / "quality.json"
    report.write_text(
        json.dumps(
            [
                {"tool_name": "sonar", "status": "PASSED"},
                {"tool_name": "checkmarx", "status": "PASSED", "severity_counts": {"high": 1}},
            ]
        ),
        encoding="utf-8",
    )
    code = cli.main(["decide", "--application", "orders-api", "--quality-report", str(report)], _github_env(tmp_path))
    assert code == 1
    assert "checkmarx high=1>0" in _last_line(capsys)


def test_json_flag_prints_decision(tmp_path, storage, capsys):
    cli.main(["decide", "--application", "orders-api", "--json", *PASSING_GATES], _github_env(tmp_path))
    out = capsys.readouterr().out
    payload = json.loads(out[out.index("{") : out.rindex("}") + 1])
    assert payload["targetEnvironment"] == "ppr"
    assert payload["qualityGate"] == "PASSED"


def test_missing_event_name_is_error(tmp_path, storage, capsys):
    env = _github_env(tmp_path)
    env.pop("GITHUB_EVENT_NAME")
    code = cli.main(["decide", "--application", "orders-api"], env)
    assert code == 1
    assert "Missing event name" in capsys.readouterr().err


def test_invalid_quality_gate_value_is_error(tmp_path, storage, capsys):
    code = cli.main(["decide", "--application", "orders-api", "--quality-gate", "sonar"], _github_env(tmp_path))
    assert code == 1
    assert "Invalid --quality-gate value" in capsys.readouterr().err


def test_rollout_completes_first_deploy(tmp_path, storage, executor, capsys):
    code = cli.main(["rollout", "--application", "orders-api", *PASSING_GATES], _github_env(tmp_path))
    assert code == 0
    assert _last_line(capsys) == "COMPLETED: slot blue active"
    assert storage.get_slot_state("ppr", "orders-api")["activeSlot"] == "blue"


def test_rollout_failed_canary_reports_failure(tmp_path, storage, executor, capsys):
    storage.set_slot_state("ppr", "orders-api", "blue", None, "v1.1.0")
    executor.fail_weights = {10}
    code = cli.main(["rollout", "--application", "orders-api", *PASSING_GATES], _github_env(tmp_path))
    assert code == 1
    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[-2] == "rollout status=RolledBack active_slot=blue image_tag=v1.2.0"
    assert lines[-1].startswith("FAILED: error rate")


def test_rollout_rejected_decision_does_not_deploy(tmp_path, storage, executor, capsys):
    env = _github_env(tmp_path, ref="refs/heads/feature/x")
    code = cli.main(["rollout", "--application", "orders-api", *PASSING_GATES], env)
    assert code == 1
    assert _last_line(capsys).startswith("REJECTED: no environment matches")
    assert executor.calls == []


def test_rollback_without_rollout_fails(tmp_path, storage, executor, capsys):
    code = cli.main(
        ["rollback", "--environment", "ppr", "--application", "orders-api", "--reason", "bad"],
        {"GITHUB_ACTOR": "oncall"},
    )
    assert code == 1
    assert _last_line(capsys).startswith("FAILED: ROLLOUT_NOT_FOUND")


def test_rollback_after_rollout(tmp_path, storage, executor, capsys):
    storage.set_slot_state("ppr", "orders-api", "blue", None, "v1.1.0")
    cli.main(["rollout", "--application", "orders-api", *PASSING_GATES], _github_env(tmp_path))
    capsys.readouterr()

    code = cli.main(
        ["rollback", "--environment", "ppr", "--application", "orders-api", "--reason", "latency"],
        {"GITHUB_ACTOR": "oncall"},
    )
    assert code == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[0] == "rollback status=RolledBack active_slot=blue"
    assert lines[-1] == "rolled back by oncall: latency"


def test_parse_quality_gate_counts():
    result = cli.parse_quality_gate("Checkmarx=passed:High=0,Medium=3")
    assert result.tool_name == "checkmarx"
    assert result.status == GateStatus.PASSED
    assert result.severity_counts == {"high": 0, "medium": 3}
