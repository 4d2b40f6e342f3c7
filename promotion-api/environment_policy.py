"""Trigger → target environment and AKS coordinates.

Environment rules live in one ordered table keyed by environment name. Each
entry carries its branch matchers and the traits the later stages consult
(protected, emergency requirement, slot strategy), so no stage has to
re-derive them from the environment name.
"""

import fnmatch
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from models import EventType, SlotStrategy, TriggerContext
from policy import ConfigurationError


AUTO_ENVIRONMENT = "auto"
ENVIRONMENT_ORDER = ("dev", "sqe", "ppr", "prod")
DEFAULT_BRANCH_PATTERNS: Dict[str, Tuple[str, ...]] = {
    "dev": ("refs/heads/dev", "refs/heads/develop"),
    "sqe": ("refs/heads/sqe",),
    "ppr": ("refs/heads/release/*",),
    "prod": ("refs/tags/*",),
}
_ENVIRONMENT_TRAITS: Dict[str, dict] = {
    "dev": {"protected": False, "override_requires_emergency": False, "slot_strategy": SlotStrategy.ROLLING},
    "sqe": {"protected": False, "override_requires_emergency": False, "slot_strategy": SlotStrategy.ROLLING},
    "ppr": {"protected": True, "override_requires_emergency": False, "slot_strategy": SlotStrategy.BLUE_GREEN},
    "prod": {"protected": True, "override_requires_emergency": True, "slot_strategy": SlotStrategy.BLUE_GREEN},
}
REGEX_PREFIX = "re:"


def default_fallback_naming(environment: str) -> Tuple[str, str]:
    return f"aks-{environment}-cluster", f"rg-aks-{environment}"


def environment_traits(environment: str) -> dict:
    # Unlisted names get the protected, blue/green traits.
    return dict(_ENVIRONMENT_TRAITS.get(environment, _ENVIRONMENT_TRAITS["ppr"]))


class BranchMatcher:
    """Glob (shell ``case`` semantics, ``*`` crosses ``/``) or ``re:`` regex over the full ref."""

    def __init__(self, pattern: str) -> None:
        self.pattern = pattern
        if pattern.startswith(REGEX_PREFIX):
            self.kind = "regex"
            self._regex = re.compile(pattern[len(REGEX_PREFIX) :])
        else:
            self.kind = "glob"
            self._regex = None
            self._glob = pattern if pattern.startswith("refs/") else f"refs/{pattern.lstrip('/')}"

    def matches(self, ref: str) -> bool:
        if not ref:
            return False
        if self._regex is not None:
            return self._regex.fullmatch(ref) is not None
        return fnmatch.fnmatchcase(ref, self._glob)

    def __repr__(self) -> str:
        return f"BranchMatcher({self.pattern!r})"


@dataclass(frozen=True)
class EnvironmentPolicy:
    name: str
    branch_matchers: Tuple[BranchMatcher, ...]
    cluster_name: Optional[str] = None
    resource_group: Optional[str] = None
    region: Optional[str] = None
    fallback_naming_fn: Callable[[str], Tuple[str, str]] = default_fallback_naming
    protected: bool = False
    override_requires_emergency: bool = False
    slot_strategy: SlotStrategy = SlotStrategy.ROLLING

    def match(self, ref: str) -> Optional[str]:
        for matcher in self.branch_matchers:
            if matcher.matches(ref):
                return matcher.pattern
        return None


@dataclass(frozen=True)
class ResolvedTarget:
    environment: str
    branch_matched: bool
    matched_pattern: Optional[str]
    cluster: str
    resource_group: str
    region: Optional[str]
    coordinates_source: str
    policy: EnvironmentPolicy


def build_policy(
    name: str,
    patterns: Iterable[str],
    coordinates: Optional[Mapping[str, Optional[str]]] = None,
    fallback_naming_fn: Callable[[str], Tuple[str, str]] = default_fallback_naming,
    default_region: Optional[str] = None,
) -> EnvironmentPolicy:
    traits = environment_traits(name)
    coordinates = coordinates or {}
    return EnvironmentPolicy(
        name=name,
        branch_matchers=tuple(BranchMatcher(p) for p in patterns),
        cluster_name=coordinates.get("cluster_name") or None,
        resource_group=coordinates.get("resource_group") or None,
        region=coordinates.get("region") or default_region,
        fallback_naming_fn=fallback_naming_fn,
        **traits,
    )


def load_environment_policies(
    config_source,
    application: str,
    default_region: Optional[str] = None,
    fallback_naming_fn: Callable[[str], Tuple[str, str]] = default_fallback_naming,
) -> Dict[str, EnvironmentPolicy]:
    """Build the ordered policy map for one run from the configuration source."""
    patterns_by_env: Dict[str, List[str]] = {name: list(p) for name, p in DEFAULT_BRANCH_PATTERNS.items()}
    overrides = config_source.branch_policies()
    if overrides:
        for name, patterns in overrides.items():
            key = name.strip().lower()
            if key not in _ENVIRONMENT_TRAITS:
                raise ConfigurationError(f"branch policy names unknown environment: {name}")
            patterns_by_env[key] = list(patterns)
    ordered = [name for name in ENVIRONMENT_ORDER if name in patterns_by_env]
    policies: Dict[str, EnvironmentPolicy] = {}
    for name in ordered:
        policies[name] = build_policy(
            name,
            patterns_by_env[name],
            config_source.environment_coordinates(name, application),
            fallback_naming_fn=fallback_naming_fn,
            default_region=default_region,
        )
    return policies


class EnvironmentPolicyResolver:
    def __init__(self, policies: Mapping[str, EnvironmentPolicy]) -> None:
        self.policies = dict(policies)

    def detect_environment(self, ref: str) -> Optional[Tuple[str, str]]:
        for name, policy in self.policies.items():
            pattern = policy.match(ref)
            if pattern:
                return name, pattern
        return None

    def resolve(self, trigger: TriggerContext) -> ResolvedTarget:
        requested = (trigger.environment or "").strip().lower()
        if requested and requested != AUTO_ENVIRONMENT:
            policy = self.policies.get(requested)
            if policy is None:
                raise ConfigurationError(f"unknown environment {requested}")
            pattern = policy.match(trigger.ref)
        elif trigger.event_type == EventType.WORKFLOW_DISPATCH and not requested:
            raise ConfigurationError("environment input is required for workflow_dispatch")
        else:
            detected = self.detect_environment(trigger.ref)
            if detected is None:
                raise ConfigurationError(f"no environment matches ref {trigger.ref}")
            policy = self.policies[detected[0]]
            pattern = detected[1]

        cluster, resource_group, source = self._coordinates(policy)
        if not cluster or not resource_group:
            raise ConfigurationError(f"deployment coordinates missing for {policy.name}")
        return ResolvedTarget(
            environment=policy.name,
            branch_matched=pattern is not None,
            matched_pattern=pattern,
            cluster=cluster,
            resource_group=resource_group,
            region=policy.region,
            coordinates_source=source,
            policy=policy,
        )

    @staticmethod
    def _coordinates(policy: EnvironmentPolicy) -> Tuple[str, str, str]:
        cluster = (policy.cluster_name or "").strip()
        resource_group = (policy.resource_group or "").strip()
        if cluster and resource_group:
            return cluster, resource_group, "explicit"
        fallback = policy.fallback_naming_fn(policy.name) if policy.fallback_naming_fn else None
        if not isinstance(fallback, tuple) or len(fallback) != 2:
            fallback = ("", "")
        source = "fallback" if not cluster and not resource_group else "mixed"
        return (
            cluster or str(fallback[0] or "").strip(),
            resource_group or str(fallback[1] or "").strip(),
            source,
        )
