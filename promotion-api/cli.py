#!/usr/bin/env python3
"""Promotion gate for GitHub Actions runners.

Reads the trigger from the runner environment (event name, ref, actor, sha and
the ``inputs`` of the event payload), applies command-line overrides, and runs
the promotion decision in-process. Step outputs are appended to
``$GITHUB_OUTPUT`` when it is set. Exit status 0 means approved (and, for
``rollout``, completed); 1 means rejected or failed. The last line printed is
always the reason.
"""

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Mapping, Optional

from helm_adapter.adapter import HelmExecutorAdapter
from pydantic import ValidationError

from blue_green import BlueGreenOrchestrator
from config import SETTINGS, ParameterConfigSource
from decision import PromotionDecisionEngine
from models import EventType, GateStatus, QualityGateReport, QualityGateResult, TriggerContext
from observability import format_audit_line
from policy import Guardrails, PromotionError
from storage import Storage


class CliError(RuntimeError):
    """Raised for user-facing validation/runtime errors."""


TRUE_VALUES = {"1", "true", "yes", "on"}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in TRUE_VALUES


def _load_event_inputs(env: Mapping[str, str]) -> Dict[str, Any]:
    path = env.get("GITHUB_EVENT_PATH", "").strip()
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as exc:
        raise CliError(f"GITHUB_EVENT_PATH is not valid JSON: {exc}") from exc
    inputs = payload.get("inputs") if isinstance(payload, dict) else None
    return inputs if isinstance(inputs, dict) else {}


def _pick(override: Optional[Any], inputs: Mapping[str, Any], key: str) -> Optional[Any]:
    if override is not None:
        return override
    value = inputs.get(key)
    if isinstance(value, str) and not value.strip():
        return None
    return value


def build_trigger(args: argparse.Namespace, env: Mapping[str, str]) -> TriggerContext:
    inputs = _load_event_inputs(env)
    event_name = (args.event_name or env.get("GITHUB_EVENT_NAME", "")).strip()
    if not event_name:
        raise CliError("Missing event name: pass --event-name or set GITHUB_EVENT_NAME")
    try:
        event_type = EventType(event_name)
    except ValueError as exc:
        raise CliError(f"Unsupported event: {event_name}") from exc
    ref = (args.ref or env.get("GITHUB_REF", "")).strip()
    if not ref:
        raise CliError("Missing ref: pass --ref or set GITHUB_REF")
    actor = (args.actor or env.get("GITHUB_ACTOR", "")).strip()
    if not actor:
        raise CliError("Missing actor: pass --actor or set GITHUB_ACTOR")
    environment = _pick(args.environment, inputs, "environment")
    custom_image_tag = _pick(args.custom_image_tag, inputs, "custom_image_tag")
    deploy_notes = _pick(args.deploy_notes, inputs, "deploy_notes")
    return TriggerContext(
        event_type=event_type,
        ref=ref,
        actor=actor,
        environment=str(environment) if environment else None,
        force_deploy=_as_bool(_pick(args.force_deploy, inputs, "force_deploy")),
        override_branch_validation=_as_bool(
            _pick(args.override_branch_validation, inputs, "override_branch_validation")
        ),
        emergency_deployment=_as_bool(_pick(args.emergency_deployment, inputs, "emergency_deployment")),
        custom_image_tag=str(custom_image_tag) if custom_image_tag else None,
        deploy_notes=str(deploy_notes) if deploy_notes is not None else None,
        actor_teams=tuple(args.actor_team or ()),
        sha=(args.sha or env.get("GITHUB_SHA", "")).strip() or None,
    )


def parse_quality_gate(value: str) -> QualityGateResult:
    """``tool=STATUS`` optionally followed by ``:severity=count,...``."""
    head, _, counts_text = value.partition(":")
    tool, sep, status_text = head.partition("=")
    if not sep or not tool.strip():
        raise CliError(f"Invalid --quality-gate value: {value}")
    try:
        status = GateStatus(status_text.strip().upper())
    except ValueError as exc:
        raise CliError(f"Invalid quality gate status in {value}") from exc
    counts: Dict[str, int] = {}
    for part in counts_text.split(","):
        if not part.strip():
            continue
        severity, sep, count = part.partition("=")
        if not sep:
            raise CliError(f"Invalid severity count in {value}")
        try:
            counts[severity.strip().lower()] = int(count)
        except ValueError as exc:
            raise CliError(f"Invalid severity count in {value}") from exc
    return QualityGateResult(tool_name=tool.strip().lower(), status=status, severity_counts=counts)


def load_quality_report(path: str) -> List[QualityGateResult]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        raise CliError(f"Could not read quality report {path}: {exc}") from exc
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        raise CliError(f"Quality report {path} must be a JSON list")
    results = []
    for item in payload:
        try:
            results.append(QualityGateReport(**item).to_result())
        except (TypeError, ValidationError) as exc:
            raise CliError(f"Invalid quality report entry in {path}: {exc}") from exc
    return results


def write_step_outputs(env: Mapping[str, str], decision) -> None:
    path = env.get("GITHUB_OUTPUT", "").strip()
    if not path:
        return
    outputs = {
        "should_deploy": "true" if decision.should_deploy else "false",
        "target_environment": decision.target_environment or "",
        "aks_cluster_name": decision.cluster or "",
        "aks_resource_group": decision.resource_group or "",
        "image_tag": decision.image_tag or "",
        "run_id": decision.run_id,
    }
    with open(path, "a", encoding="utf-8") as handle:
        for key, value in outputs.items():
            handle.write(f"{key}={value}\n")


def _add_trigger_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--application", required=True)
    parser.add_argument("--event-name", dest="event_name")
    parser.add_argument("--ref")
    parser.add_argument("--actor")
    parser.add_argument("--sha")
    parser.add_argument("--environment")
    parser.add_argument("--actor-team", dest="actor_team", action="append")
    parser.add_argument("--force-deploy", dest="force_deploy", action="store_const", const=True)
    parser.add_argument(
        "--override-branch-validation", dest="override_branch_validation", action="store_const", const=True
    )
    parser.add_argument("--emergency-deployment", dest="emergency_deployment", action="store_const", const=True)
    parser.add_argument("--custom-image-tag", dest="custom_image_tag")
    parser.add_argument("--deploy-notes", dest="deploy_notes")
    parser.add_argument("--image-tag", dest="image_tag")
    parser.add_argument("--quality-gate", dest="quality_gate", action="append", default=[])
    parser.add_argument("--quality-report", dest="quality_report")
    parser.add_argument("--json", action="store_true", help="Print the decision as JSON")


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Decide and run AKS promotions.")
    subparsers = parser.add_subparsers(dest="command", required=True)
    _add_trigger_arguments(subparsers.add_parser("decide", help="Evaluate the promotion decision only"))
    _add_trigger_arguments(subparsers.add_parser("rollout", help="Decide, then deploy and ramp traffic"))
    rollback = subparsers.add_parser("rollback", help="Return traffic to the previous slot")
    rollback.add_argument("--environment", required=True)
    rollback.add_argument("--application", required=True)
    rollback.add_argument("--actor")
    rollback.add_argument("--reason", required=True)
    return parser.parse_args(argv)


def _build_storage() -> Storage:
    return Storage(SETTINGS.db_path)


def _build_orchestrator(storage: Storage) -> BlueGreenOrchestrator:
    executor = HelmExecutorAdapter(
        SETTINGS.executor_url,
        SETTINGS.executor_mode,
        request_timeout_seconds=SETTINGS.executor_timeout_seconds,
        header_name=SETTINGS.executor_header_name,
        header_value=SETTINGS.executor_header_value,
    )
    return BlueGreenOrchestrator.from_settings(executor, storage, Guardrails(storage), SETTINGS)


def _decide(args: argparse.Namespace, env: Mapping[str, str], storage: Storage):
    trigger = build_trigger(args, env)
    results = [parse_quality_gate(value) for value in args.quality_gate]
    if args.quality_report:
        results.extend(load_quality_report(args.quality_report))
    engine = PromotionDecisionEngine(
        ParameterConfigSource(SETTINGS.ssm_prefix),
        storage=storage,
        required_tools=SETTINGS.required_quality_tools,
        default_region=SETTINGS.default_region,
    )
    decision = engine.decide(args.application, trigger, results, image_tag=args.image_tag)
    for entry in decision.audit_entries:
        print(format_audit_line(entry))
    if args.json:
        print(json.dumps(decision.as_dict(), indent=2, sort_keys=True))
    write_step_outputs(env, decision)
    return decision


def main(argv: Optional[List[str]] = None, env: Optional[Mapping[str, str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    env = os.environ if env is None else env
    logging.basicConfig(level=os.getenv("PROMOTE_LOG_LEVEL", "WARNING").upper(), stream=sys.stderr)
    try:
        args = parse_args(argv)
        storage = _build_storage()
        if args.command == "rollback":
            actor = (args.actor or env.get("GITHUB_ACTOR", "")).strip() or "unknown"
            result = _build_orchestrator(storage).rollback(args.environment, args.application, actor, args.reason)
            print(f"rollback status={result.status.value} active_slot={result.active_slot or 'none'}")
            print(result.reason or f"rollout {result.status.value}")
            return 0

        decision = _decide(args, env, storage)
        if not decision.should_deploy:
            print(f"REJECTED: {decision.final_reason}")
            return 1
        if args.command == "decide":
            print(f"APPROVED: {decision.final_reason}")
            return 0

        result = _build_orchestrator(storage).run(decision)
        print(
            f"rollout status={result.status.value} active_slot={result.active_slot or 'none'} "
            f"image_tag={result.image_tag}"
        )
        if not result.succeeded:
            print(f"FAILED: {result.reason}")
            return 1
        print(f"COMPLETED: {result.reason}")
        return 0
    except PromotionError as exc:
        print(f"FAILED: {exc.code}: {exc.message}")
        return 1
    except CliError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
