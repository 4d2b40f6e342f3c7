import logging
from typing import Callable, Mapping

from audit import AuditTrail
from environment_policy import EnvironmentPolicy
from models import AuthorizationRecord, TriggerContext
from observability import log_event
from policy import AuthorizationError


PrincipalSource = Callable[[str, str], Mapping[str, frozenset]]


class AuthorizationGate:
    """Decides whether the acting principal may deploy to the resolved environment.

    A matched branch needs nothing further. A mismatch needs an explicit
    override; protected environments also need the actor (or one of the
    actor's teams) in the authorized set, and environments flagged
    ``override_requires_emergency`` need the emergency flag and deploy notes.
    The authorized set is fetched on every call.
    """

    def __init__(self, principal_source: PrincipalSource) -> None:
        self.principal_source = principal_source
        self._logger = logging.getLogger("promote.authorization")

    def is_authorized_principal(self, trigger: TriggerContext, environment: str, application: str) -> bool:
        authorized = self.principal_source(environment, application) or {}
        principals = authorized.get("principals") or frozenset()
        teams = authorized.get("teams") or frozenset()
        if trigger.actor in principals:
            return True
        return any(team in teams for team in trigger.actor_teams)

    def evaluate(
        self,
        policy: EnvironmentPolicy,
        branch_matched: bool,
        trigger: TriggerContext,
        application: str,
        trail: AuditTrail,
    ) -> AuthorizationRecord:
        env = policy.name
        actor = trigger.actor
        principal_authorized = self.is_authorized_principal(trigger, env, application)

        if branch_matched:
            return self._approve(
                trail,
                AuthorizationRecord(
                    principal=actor,
                    approved=True,
                    reason=f"branch {trigger.ref} matches {env} policy",
                    is_emergency=trigger.emergency_deployment,
                    override_used=False,
                    principal_authorized=principal_authorized,
                ),
                env,
            )

        if not trigger.override_branch_validation:
            return self._reject(trail, actor, env, "branch validation failed, override required", False, principal_authorized)

        notes = trigger.deploy_notes or ""
        trail.record(
            actor,
            "branch_override_requested",
            f"environment={env} ref={trigger.ref} emergency={str(trigger.emergency_deployment).lower()} notes={notes}",
            requires_review=True,
        )
        self._logger.warning(
            "authorization.override actor=%s environment=%s ref=%s emergency=%s",
            actor,
            env,
            trigger.ref,
            trigger.emergency_deployment,
        )
        if policy.protected and not principal_authorized:
            return self._reject(trail, actor, env, f"not authorized for {env}", True, principal_authorized)
        if policy.override_requires_emergency and not trigger.emergency_deployment:
            return self._reject(
                trail, actor, env, f"emergency flag required for {env} override", True, principal_authorized
            )
        if policy.override_requires_emergency and not notes.strip():
            return self._reject(
                trail, actor, env, f"deploy notes required for {env} override", True, principal_authorized
            )

        reason = f"branch override approved for {env}"
        if trigger.emergency_deployment:
            reason = f"{reason} (emergency)"
        return self._approve(
            trail,
            AuthorizationRecord(
                principal=actor,
                approved=True,
                reason=reason,
                is_emergency=trigger.emergency_deployment,
                override_used=True,
                principal_authorized=principal_authorized,
            ),
            env,
        )

    def enforce(self, record: AuthorizationRecord) -> AuthorizationRecord:
        if not record.approved:
            raise AuthorizationError(record.reason, record)
        return record

    def _approve(self, trail: AuditTrail, record: AuthorizationRecord, env: str) -> AuthorizationRecord:
        trail.record(
            record.principal,
            "authorization_approved",
            f"environment={env} reason={record.reason}",
            requires_review=record.override_used,
        )
        log_event(
            "authorization_decided",
            actor_id=record.principal,
            environment=env,
            outcome="APPROVED",
            override=record.override_used,
            emergency=record.is_emergency,
            summary=record.reason,
        )
        return record

    def _reject(
        self,
        trail: AuditTrail,
        actor: str,
        env: str,
        reason: str,
        override_used: bool,
        principal_authorized: bool,
    ) -> AuthorizationRecord:
        trail.record(actor, "authorization_rejected", f"environment={env} reason={reason}", requires_review=override_used)
        log_event(
            "authorization_decided",
            actor_id=actor,
            environment=env,
            outcome="DENIED",
            override=override_used,
            summary=reason,
        )
        return AuthorizationRecord(
            principal=actor,
            approved=False,
            reason=reason,
            is_emergency=False,
            override_used=override_used,
            principal_authorized=principal_authorized,
        )
