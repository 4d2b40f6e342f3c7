"""Promotion decision pipeline.

Stages run strictly in order: environment resolution, authorization, quality
gate. The first failing stage rejects the run and later stages are skipped.
Every reason and audit entry gathered along the way is kept on the decision
and written to storage, including for runs that stop early.
"""

import logging
import re
import uuid
from typing import Callable, Iterable, List, Optional

from audit import AuditTrail
from authorization import AuthorizationGate
from delivery_state import require_transition
from environment_policy import (
    EnvironmentPolicyResolver,
    ResolvedTarget,
    default_fallback_naming,
    load_environment_policies,
)
from models import DecisionStage, PromotionDecision, QualityGateResult, TriggerContext
from observability import log_event
from policy import AuthorizationError, ConfigurationError, QualityGateFailure
from quality_gate import QualityGateAggregator


_RELEASE_VERSION = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)")


def resolve_image_tag(trigger: TriggerContext, environment: str, build_tag: Optional[str] = None) -> Optional[str]:
    if trigger.custom_image_tag and trigger.custom_image_tag.strip():
        return trigger.custom_image_tag.strip()
    if build_tag and build_tag.strip():
        return build_tag.strip()
    ref = trigger.ref or ""
    if ref.startswith("refs/tags/"):
        return ref[len("refs/tags/") :]
    if ref.startswith("refs/heads/release/"):
        version = ref[len("refs/heads/release/") :]
        match = _RELEASE_VERSION.match(version)
        if match:
            return "v" + ".".join(match.groups())
    if trigger.sha:
        return f"{environment}-{trigger.sha[:7]}"
    return None


class PromotionDecisionEngine:
    def __init__(
        self,
        config_source,
        storage=None,
        required_tools: Optional[Iterable[str]] = None,
        default_region: Optional[str] = None,
        fallback_naming_fn: Callable = default_fallback_naming,
        clock: Optional[Callable[[], str]] = None,
        run_id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.config_source = config_source
        self.storage = storage
        self.required_tools = tuple(required_tools or ())
        self.default_region = default_region
        self.fallback_naming_fn = fallback_naming_fn
        self.clock = clock
        self.run_id_factory = run_id_factory or (lambda: str(uuid.uuid4()))
        self._logger = logging.getLogger("promote.decision")

    def decide(
        self,
        application: str,
        trigger: TriggerContext,
        quality_results: Iterable[QualityGateResult] = (),
        image_tag: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> PromotionDecision:
        run_id = run_id or self.run_id_factory()
        trail = AuditTrail(self.clock)
        reasons: List[str] = []
        stage = DecisionStage.PENDING
        target: Optional[ResolvedTarget] = None
        verdict = None
        resolved_tag = None
        decision = None
        actor = trigger.actor

        trail.record(
            actor,
            "decision_started",
            f"application={application} event={trigger.event_type.value} ref={trigger.ref} "
            f"environment={trigger.environment or 'auto'}",
        )
        if trigger.force_deploy:
            trail.record(actor, "force_deploy_requested", f"ref={trigger.ref}")

        try:
            try:
                # Policies and their coordinates are loaded per run, never reused.
                policies = load_environment_policies(
                    self.config_source,
                    application,
                    default_region=self.default_region,
                    fallback_naming_fn=self.fallback_naming_fn,
                )
                target = EnvironmentPolicyResolver(policies).resolve(trigger)
                stage = require_transition(stage, DecisionStage.BRANCH_VALIDATED)
                if target.branch_matched:
                    reasons.append(f"ref {trigger.ref} matches {target.environment} pattern {target.matched_pattern}")
                else:
                    reasons.append(f"ref {trigger.ref} does not match {target.environment} branch policy")
                trail.record(
                    actor,
                    "environment_resolved",
                    f"environment={target.environment} cluster={target.cluster} resource_group={target.resource_group} "
                    f"coordinates={target.coordinates_source} branch_matched={str(target.branch_matched).lower()}",
                )

                gate = AuthorizationGate(self.config_source.authorized_principals)
                record = gate.evaluate(target.policy, target.branch_matched, trigger, application, trail)
                reasons.append(record.reason)
                gate.enforce(record)
                stage = require_transition(stage, DecisionStage.AUTHORIZATION_CHECKED)

                aggregator = QualityGateAggregator(self.config_source.bypass_flags, self.required_tools)
                verdict = aggregator.evaluate(quality_results, record, target.policy, application, trail)
                reasons.append(verdict.reason)
                aggregator.enforce(verdict)
                stage = require_transition(stage, DecisionStage.QUALITY_GATED)

                resolved_tag = resolve_image_tag(trigger, target.environment, image_tag)
                if trigger.custom_image_tag and resolved_tag == trigger.custom_image_tag.strip():
                    trail.record(
                        actor,
                        "custom_image_tag_used",
                        f"environment={target.environment} image_tag={resolved_tag}",
                        requires_review=True,
                    )
                stage = require_transition(stage, DecisionStage.APPROVED)
                reasons.append(f"promotion approved for {target.environment}")
                trail.record(actor, "decision_approved", f"environment={target.environment} image_tag={resolved_tag}")
            except (ConfigurationError, AuthorizationError, QualityGateFailure) as exc:
                if not reasons or reasons[-1] != exc.message:
                    reasons.append(exc.message)
                stage = require_transition(stage, DecisionStage.REJECTED)
                trail.record(actor, "decision_rejected", f"error={exc.code} reason={exc.message}")

            decision = PromotionDecision(
                run_id=run_id,
                application=application,
                should_deploy=stage == DecisionStage.APPROVED,
                stage=stage,
                target_environment=target.environment if target else None,
                cluster=target.cluster if target else None,
                resource_group=target.resource_group if target else None,
                region=target.region if target else None,
                image_tag=resolved_tag,
                branch_matched=target.branch_matched if target else False,
                quality_gate=verdict.status if verdict else None,
                reasons=tuple(reasons),
                audit_entries=trail.entries,
            )
        finally:
            if self.storage is not None:
                self.storage.insert_audit_entries(
                    run_id,
                    target.environment if target else None,
                    application,
                    trail.entries,
                )

        if self.storage is not None:
            self.storage.insert_decision(decision)
        self._logger.info(
            "decision.final run_id=%s application=%s environment=%s should_deploy=%s stage=%s reason=%s",
            run_id,
            application,
            decision.target_environment,
            decision.should_deploy,
            decision.stage.value,
            decision.final_reason,
        )
        log_event(
            "promotion_decided",
            run_id=run_id,
            service_name=application,
            environment=decision.target_environment,
            outcome="APPROVED" if decision.should_deploy else "REJECTED",
            quality_gate=decision.quality_gate.value if decision.quality_gate else None,
            summary=decision.final_reason,
        )
        return decision
