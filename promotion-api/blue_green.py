"""Slot deployment, canary ramp and rollback for approved promotions.

Protected environments run two slots (blue, green) behind one ingress. A
release goes to the idle slot, is health-checked, then receives traffic in
schedule steps through the canary ingress. Any failed step sends all traffic
back to the slot that was active before the run. Unprotected environments
get a single rolling update and one health-check phase.

The slot state table is the record of which slot is serving; nothing is
inferred from the cluster.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from audit import AuditTrail
from delivery_state import TERMINAL_CANARY_STATES, require_canary_transition
from environment_policy import environment_traits
from helm_adapter.adapter import ExecutorError, slot_namespace
from models import CanaryStatus, PromotionDecision, SlotHealth, SlotName, SlotStrategy
from observability import log_event
from policy import (
    ConfigurationError,
    DeploymentFailure,
    HealthCheckTimeout,
    PromotionError,
    RolloutNotFoundError,
    TrafficShiftFailure,
)


DEFAULT_SCHEDULE = (5, 10, 25, 50, 100)


@dataclass(frozen=True)
class DeploymentSlot:
    name: SlotName
    namespace: str
    active: bool
    health: SlotHealth = SlotHealth.UNKNOWN

    def as_dict(self) -> dict:
        return {
            "name": self.name.value,
            "namespace": self.namespace,
            "active": self.active,
            "health": self.health.value,
        }


@dataclass(frozen=True)
class CanaryState:
    schedule: Tuple[int, ...]
    current_index: int
    status: CanaryStatus

    @property
    def current_weight(self) -> int:
        if 0 <= self.current_index < len(self.schedule):
            return self.schedule[self.current_index]
        return 0


@dataclass(frozen=True)
class RolloutResult:
    rollout_id: str
    environment: str
    application: str
    strategy: SlotStrategy
    status: CanaryStatus
    active_slot: Optional[str]
    previous_slot: Optional[str]
    target_slot: Optional[str]
    canary: Optional[CanaryState]
    image_tag: Optional[str]
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == CanaryStatus.COMPLETED

    def as_dict(self) -> dict:
        return {
            "rolloutId": self.rollout_id,
            "environment": self.environment,
            "application": self.application,
            "strategy": self.strategy.value,
            "status": self.status.value,
            "activeSlot": self.active_slot,
            "previousSlot": self.previous_slot,
            "targetSlot": self.target_slot,
            "imageTag": self.image_tag,
            "reason": self.reason,
            "canary": None
            if self.canary is None
            else {
                "schedule": list(self.canary.schedule),
                "currentIndex": self.canary.current_index,
                "currentWeight": self.canary.current_weight,
                "status": self.canary.status.value,
            },
        }


def validate_schedule(schedule: Iterable[int]) -> Tuple[int, ...]:
    steps = tuple(int(step) for step in schedule)
    if not steps:
        raise ConfigurationError("canary schedule must not be empty")
    previous = 0
    for step in steps:
        if step < 1 or step > 100:
            raise ConfigurationError(f"canary step {step} is outside 1..100")
        if step <= previous:
            raise ConfigurationError("canary schedule must be strictly increasing")
        previous = step
    if steps[-1] != 100:
        raise ConfigurationError("canary schedule must end at 100")
    return steps


def other_slot(slot: Optional[str]) -> str:
    if slot == SlotName.BLUE.value:
        return SlotName.GREEN.value
    return SlotName.BLUE.value


class BlueGreenOrchestrator:
    def __init__(
        self,
        executor,
        storage,
        guardrails,
        schedule: Sequence[int] = DEFAULT_SCHEDULE,
        health_check_retries: int = 30,
        health_check_interval_seconds: float = 10.0,
        step_hold_seconds: float = 30.0,
        step_timeout_seconds: float = 300.0,
        check_interval_seconds: float = 10.0,
        max_error_rate: float = 0.02,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Optional[Callable[[], str]] = None,
    ) -> None:
        self.executor = executor
        self.storage = storage
        self.guardrails = guardrails
        self.schedule = validate_schedule(schedule)
        self.health_check_retries = max(int(health_check_retries), 1)
        self.health_check_interval_seconds = float(health_check_interval_seconds)
        self.step_hold_seconds = float(step_hold_seconds)
        self.step_timeout_seconds = float(step_timeout_seconds)
        self.check_interval_seconds = float(check_interval_seconds)
        self.max_error_rate = float(max_error_rate)
        self._sleep = sleep
        self._monotonic = monotonic
        self._clock = clock
        self._logger = logging.getLogger("promote.rollout")

    @classmethod
    def from_settings(cls, executor, storage, guardrails, settings, **overrides) -> "BlueGreenOrchestrator":
        options = dict(
            schedule=settings.canary_schedule,
            health_check_retries=settings.health_check_retries,
            health_check_interval_seconds=settings.health_check_interval_seconds,
            step_hold_seconds=settings.canary_step_hold_seconds,
            step_timeout_seconds=settings.canary_step_timeout_seconds,
            check_interval_seconds=settings.canary_check_interval_seconds,
            max_error_rate=settings.canary_max_error_rate,
        )
        options.update(overrides)
        return cls(executor, storage, guardrails, **options)

    def run(self, decision: PromotionDecision, holder: Optional[str] = None) -> RolloutResult:
        if not decision.should_deploy:
            raise PromotionError(
                f"Promotion was rejected: {decision.final_reason}",
                "PROMOTION_REJECTED",
                409,
            )
        if not decision.cluster or not decision.resource_group:
            raise ConfigurationError(f"deployment coordinates missing for {decision.target_environment}")
        if not decision.image_tag:
            raise ConfigurationError("image tag is required to deploy")
        environment = decision.target_environment
        application = decision.application
        target = {
            "environment": environment,
            "application": application,
            "cluster": decision.cluster,
            "resourceGroup": decision.resource_group,
            "region": decision.region,
        }
        holder = holder or decision.run_id
        strategy = environment_traits(environment)["slot_strategy"]
        self.guardrails.acquire_rollout_lease(environment, application, holder)
        try:
            if strategy == SlotStrategy.ROLLING:
                return self._run_rolling(decision, target)
            return self._run_blue_green(decision, target)
        finally:
            self.guardrails.release_rollout_lease(environment, application, holder)

    def rollback(self, environment: str, application: str, actor: str, reason: str) -> RolloutResult:
        """Operator-triggered rollback, sharing the path used for failed canary steps."""
        latest = self.storage.latest_rollout(environment, application)
        if not latest:
            raise RolloutNotFoundError(f"No rollout recorded for {application} in {environment}")
        status = CanaryStatus(latest["status"])
        target = self._target_from_rollout(latest)

        if status == CanaryStatus.RAMPING and self.storage.lease_holder(environment, application):
            # The ramp loop owns traffic; it reverts at its next check.
            self.storage.request_rollback(latest["id"])
            self._audit(latest, actor, "rollback_requested", f"reason={reason}")
            log_event(
                "rollback_requested",
                service_name=application,
                environment=environment,
                rollout_id=latest["id"],
                actor_id=actor,
                summary=reason,
            )
            return self._result(self.storage.get_rollout(latest["id"]), reason="rollback requested")

        if status in TERMINAL_CANARY_STATES:
            return self._result(latest, reason=f"rollout already {status.value}")

        holder = f"rollback:{latest['id']}"
        self.guardrails.acquire_rollout_lease(environment, application, holder)
        try:
            if latest["strategy"] == SlotStrategy.ROLLING.value:
                try:
                    self.executor.rollout_undo(target)
                except ExecutorError as exc:
                    raise TrafficShiftFailure(f"rollout undo failed for {application} in {environment}: {exc}") from exc
                updated = self._finish(latest, CanaryStatus.ROLLED_BACK, f"rolled back by {actor}: {reason}")
                self._audit(latest, actor, "rollback_completed", f"strategy=rolling reason={reason}")
                return self._result(updated)

            previous = latest.get("previousSlot")
            if not previous:
                raise PromotionError(
                    f"No previous slot to roll back to for {application} in {environment}",
                    "NO_PREVIOUS_SLOT",
                    409,
                )
            return self._roll_back(latest, target, previous, f"rolled back by {actor}: {reason}", actor)
        finally:
            self.guardrails.release_rollout_lease(environment, application, holder)

    def describe_slots(self, environment: str, application: str, probe: bool = False) -> List[DeploymentSlot]:
        state = self.storage.get_slot_state(environment, application) or {}
        active = state.get("activeSlot")
        target = None
        if probe:
            latest = self.storage.latest_rollout(environment, application)
            target = self._target_from_rollout(latest) if latest else None
        slots = []
        for name in (SlotName.BLUE, SlotName.GREEN):
            health = SlotHealth.UNKNOWN
            if target is not None:
                health = self._probe(target, name.value)
            slots.append(
                DeploymentSlot(
                    name=name,
                    namespace=slot_namespace(environment, application, name.value),
                    active=name.value == active,
                    health=health,
                )
            )
        return slots

    def _run_rolling(self, decision: PromotionDecision, target: dict) -> RolloutResult:
        rollout = self.storage.insert_rollout(
            {
                "runId": decision.run_id,
                "environment": target["environment"],
                "application": target["application"],
                "strategy": SlotStrategy.ROLLING.value,
                "cluster": target["cluster"],
                "resourceGroup": target["resourceGroup"],
                "region": target["region"],
                "imageTag": decision.image_tag,
                "schedule": [],
                "status": CanaryStatus.RAMPING.value,
            }
        )
        self._deploy(rollout, target, None, decision.image_tag)
        if not self._await_healthy(target, None):
            self._finish(rollout, CanaryStatus.ABORTED, "health check timed out")
            raise HealthCheckTimeout(
                f"{target['application']} in {target['environment']} not healthy after "
                f"{self.health_check_retries} checks"
            )
        updated = self._finish(rollout, CanaryStatus.COMPLETED, "rolling update healthy")
        self._logger.info(
            "rollout.completed strategy=rolling environment=%s application=%s image_tag=%s",
            target["environment"],
            target["application"],
            decision.image_tag,
        )
        return self._result(updated)

    def _run_blue_green(self, decision: PromotionDecision, target: dict) -> RolloutResult:
        environment = target["environment"]
        application = target["application"]
        state = self.storage.get_slot_state(environment, application) or {}
        previous = state.get("activeSlot")
        new_slot = other_slot(previous)
        rollout = self.storage.insert_rollout(
            {
                "runId": decision.run_id,
                "environment": environment,
                "application": application,
                "strategy": SlotStrategy.BLUE_GREEN.value,
                "cluster": target["cluster"],
                "resourceGroup": target["resourceGroup"],
                "region": target["region"],
                "targetSlot": new_slot,
                "previousSlot": previous,
                "imageTag": decision.image_tag,
                "previousImageTag": state.get("imageTag") if previous else None,
                "schedule": list(self.schedule) if previous else [],
                "status": CanaryStatus.RAMPING.value,
            }
        )
        self._logger.info(
            "rollout.started environment=%s application=%s target_slot=%s previous_slot=%s image_tag=%s",
            environment,
            application,
            new_slot,
            previous,
            decision.image_tag,
        )
        self._deploy(rollout, target, new_slot, decision.image_tag)

        if not self._await_healthy(target, new_slot):
            self._discard(target, new_slot)
            self._finish(rollout, CanaryStatus.ABORTED, f"slot {new_slot} never became healthy")
            raise HealthCheckTimeout(
                f"Slot {new_slot} for {application} in {environment} not healthy after "
                f"{self.health_check_retries} checks; {previous or 'no slot'} remains active"
            )

        if not previous:
            try:
                self.executor.route_all(target, new_slot)
            except ExecutorError as exc:
                self._finish(rollout, CanaryStatus.ABORTED, f"initial routing failed: {exc}")
                raise DeploymentFailure(f"Routing traffic to {new_slot} failed: {exc}") from exc
            return self._activate(rollout, new_slot, None, decision.image_tag)

        for index, weight in enumerate(self.schedule):
            if self.storage.rollback_requested(rollout["id"]):
                return self._roll_back(rollout, target, previous, "rollback requested")
            self.storage.update_rollout(rollout["id"], current_index=index)
            try:
                if weight >= 100:
                    self.executor.route_all(target, new_slot)
                else:
                    self.executor.set_canary_weight(target, new_slot, weight)
            except ExecutorError as exc:
                return self._roll_back(rollout, target, previous, f"traffic shift to {weight}% failed: {exc}")
            log_event(
                "canary_step",
                service_name=application,
                environment=environment,
                rollout_id=rollout["id"],
                slot=new_slot,
                weight=weight,
            )
            passed, detail = self._check_step(rollout["id"], target, new_slot, weight)
            if not passed:
                return self._roll_back(rollout, target, previous, detail)

        return self._activate(rollout, new_slot, previous, decision.image_tag)

    def _deploy(self, rollout: dict, target: dict, slot: Optional[str], image_tag: str) -> None:
        try:
            self.executor.deploy(target, slot, image_tag)
        except ExecutorError as exc:
            self._finish(rollout, CanaryStatus.ABORTED, f"deploy failed: {exc}")
            raise DeploymentFailure(
                f"Deploying {image_tag} to {slot_namespace(target['environment'], target['application'], slot)} "
                f"failed: {exc}"
            ) from exc

    def _await_healthy(self, target: dict, slot: Optional[str]) -> bool:
        for attempt in range(self.health_check_retries):
            if self._probe(target, slot) == SlotHealth.HEALTHY:
                return True
            if attempt < self.health_check_retries - 1:
                self._sleep(self.health_check_interval_seconds)
        return False

    def _probe(self, target: dict, slot: Optional[str]) -> SlotHealth:
        try:
            health = self.executor.get_health(target, slot)
        except ExecutorError as exc:
            self._logger.warning(
                "rollout.health_probe_failed environment=%s application=%s slot=%s error=%s",
                target["environment"],
                target["application"],
                slot,
                exc,
            )
            return SlotHealth.UNKNOWN
        try:
            return SlotHealth(health.get("status"))
        except ValueError:
            return SlotHealth.UNKNOWN

    def _check_step(self, rollout_id: str, target: dict, slot: str, weight: int) -> Tuple[bool, str]:
        start = self._monotonic()
        deadline = start + self.step_timeout_seconds
        healthy_since = None
        while True:
            if self.storage.rollback_requested(rollout_id):
                return False, "rollback requested"
            try:
                health = self.executor.get_health(target, slot)
            except ExecutorError as exc:
                self._logger.warning("rollout.step_probe_failed slot=%s weight=%s error=%s", slot, weight, exc)
                health = {"status": SlotHealth.UNKNOWN.value, "errorRate": None}
            status = health.get("status")
            error_rate = health.get("errorRate")
            if status == SlotHealth.UNHEALTHY.value:
                return False, f"slot {slot} unhealthy at {weight}%"
            if error_rate is not None and error_rate > self.max_error_rate:
                return False, f"error rate {error_rate:.4f} above {self.max_error_rate:.4f} at {weight}%"
            now = self._monotonic()
            if status == SlotHealth.HEALTHY.value:
                if healthy_since is None:
                    healthy_since = now
                if now - healthy_since >= self.step_hold_seconds:
                    return True, ""
            else:
                healthy_since = None
            if now >= deadline:
                return False, f"canary check at {weight}% timed out"
            self._sleep(self.check_interval_seconds)

    def _roll_back(
        self,
        rollout: dict,
        target: dict,
        previous: str,
        reason: str,
        actor: str = "promotion-orchestrator",
    ) -> RolloutResult:
        environment = target["environment"]
        application = target["application"]
        try:
            self.executor.route_all(target, previous)
        except ExecutorError as exc:
            self.storage.update_rollout(rollout["id"], reason=f"rollback failed: {exc}")
            self._audit(rollout, actor, "rollback_failed", f"previous_slot={previous} error={exc}")
            self._logger.error(
                "rollout.rollback_failed environment=%s application=%s previous_slot=%s error=%s",
                environment,
                application,
                previous,
                exc,
            )
            raise TrafficShiftFailure(
                f"Could not return traffic to {previous} for {application} in {environment}: {exc}"
            ) from exc
        current = self.storage.get_slot_state(environment, application) or {}
        if current.get("activeSlot") == previous:
            # Traffic never fully moved; the slot record still describes the old slot.
            self.storage.set_slot_state(
                environment, application, previous, current.get("previousSlot"), current.get("imageTag")
            )
        else:
            self.storage.set_slot_state(
                environment, application, previous, current.get("activeSlot"), rollout.get("previousImageTag")
            )
        updated = self._finish(rollout, CanaryStatus.ROLLED_BACK, reason)
        self._audit(rollout, actor, "rollback_completed", f"active_slot={previous} reason={reason}")
        self._logger.warning(
            "rollout.rolled_back environment=%s application=%s active_slot=%s reason=%s",
            environment,
            application,
            previous,
            reason,
        )
        return self._result(updated)

    def _activate(self, rollout: dict, new_slot: str, previous: Optional[str], image_tag: str) -> RolloutResult:
        self.storage.set_slot_state(rollout["environment"], rollout["application"], new_slot, previous, image_tag)
        updated = self._finish(rollout, CanaryStatus.COMPLETED, f"slot {new_slot} active")
        self._logger.info(
            "rollout.completed environment=%s application=%s active_slot=%s image_tag=%s",
            rollout["environment"],
            rollout["application"],
            new_slot,
            image_tag,
        )
        return self._result(updated)

    def _discard(self, target: dict, slot: str) -> None:
        try:
            self.executor.discard(target, slot)
        except ExecutorError as exc:
            self._logger.warning(
                "rollout.discard_failed environment=%s application=%s slot=%s error=%s",
                target["environment"],
                target["application"],
                slot,
                exc,
            )

    def _finish(self, rollout: dict, status: CanaryStatus, reason: str) -> dict:
        current = self.storage.get_rollout(rollout["id"]) or rollout
        require_canary_transition(CanaryStatus(current["status"]), status)
        updated = self.storage.update_rollout(rollout["id"], status=status.value, reason=reason)
        log_event(
            "rollout_finished",
            service_name=rollout["application"],
            environment=rollout["environment"],
            rollout_id=rollout["id"],
            outcome=status.value,
            summary=reason,
        )
        return updated

    def _audit(self, rollout: dict, actor: str, action: str, detail: str) -> None:
        trail = AuditTrail(self._clock)
        trail.record(actor, action, f"rollout={rollout['id']} {detail}", requires_review=True)
        self.storage.insert_audit_entries(
            rollout.get("runId") or rollout["id"],
            rollout["environment"],
            rollout["application"],
            trail.entries,
        )

    @staticmethod
    def _target_from_rollout(rollout: dict) -> dict:
        return {
            "environment": rollout["environment"],
            "application": rollout["application"],
            "cluster": rollout.get("cluster"),
            "resourceGroup": rollout.get("resourceGroup"),
            "region": rollout.get("region"),
        }

    def _result(self, rollout: dict, reason: Optional[str] = None) -> RolloutResult:
        state = self.storage.get_slot_state(rollout["environment"], rollout["application"]) or {}
        strategy = SlotStrategy(rollout["strategy"])
        canary = None
        if strategy == SlotStrategy.BLUE_GREEN:
            canary = CanaryState(
                schedule=tuple(rollout.get("schedule") or ()),
                current_index=int(rollout.get("currentIndex", -1)),
                status=CanaryStatus(rollout["status"]),
            )
        return RolloutResult(
            rollout_id=rollout["id"],
            environment=rollout["environment"],
            application=rollout["application"],
            strategy=strategy,
            status=CanaryStatus(rollout["status"]),
            active_slot=state.get("activeSlot"),
            previous_slot=state.get("previousSlot"),
            target_slot=rollout.get("targetSlot"),
            canary=canary,
            image_tag=rollout.get("imageTag"),
            reason=reason if reason is not None else (rollout.get("reason") or ""),
        )
