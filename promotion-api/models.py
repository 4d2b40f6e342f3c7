from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


class Role(str, Enum):
    PLATFORM_ADMIN = "PLATFORM_ADMIN"
    DELIVERY_OWNER = "DELIVERY_OWNER"
    OBSERVER = "OBSERVER"
    CI_PUBLISHER = "CI_PUBLISHER"


class EventType(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    WORKFLOW_DISPATCH = "workflow_dispatch"


class GateStatus(str, Enum):
    PASSED = "PASSED"
    FAILED = "FAILED"
    BYPASSED = "BYPASSED"


class DecisionStage(str, Enum):
    PENDING = "Pending"
    BRANCH_VALIDATED = "BranchValidated"
    AUTHORIZATION_CHECKED = "AuthorizationChecked"
    QUALITY_GATED = "QualityGated"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class SlotName(str, Enum):
    BLUE = "blue"
    GREEN = "green"


class SlotHealth(str, Enum):
    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"
    UNKNOWN = "Unknown"


class CanaryStatus(str, Enum):
    RAMPING = "Ramping"
    COMPLETED = "Completed"
    ROLLED_BACK = "RolledBack"
    ABORTED = "Aborted"


class SlotStrategy(str, Enum):
    BLUE_GREEN = "blue_green"
    ROLLING = "rolling"


@dataclass(frozen=True)
class TriggerContext:
    event_type: EventType
    ref: str
    actor: str
    environment: Optional[str] = None
    force_deploy: bool = False
    override_branch_validation: bool = False
    emergency_deployment: bool = False
    custom_image_tag: Optional[str] = None
    deploy_notes: Optional[str] = None
    actor_teams: Tuple[str, ...] = ()
    sha: Optional[str] = None


@dataclass(frozen=True)
class AuditEntry:
    actor: str
    action: str
    detail: str
    timestamp: str
    requires_review: bool = False

    def as_dict(self) -> dict:
        return {
            "actor": self.actor,
            "action": self.action,
            "detail": self.detail,
            "timestamp": self.timestamp,
            "requires_review": self.requires_review,
        }


@dataclass(frozen=True)
class AuthorizationRecord:
    principal: str
    approved: bool
    reason: str
    is_emergency: bool = False
    override_used: bool = False
    principal_authorized: bool = False


@dataclass(frozen=True)
class QualityGateResult:
    tool_name: str
    status: GateStatus
    severity_counts: Dict[str, int] = field(default_factory=dict)
    thresholds: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class PromotionDecision:
    run_id: str
    application: str
    should_deploy: bool
    stage: DecisionStage
    target_environment: Optional[str]
    cluster: Optional[str]
    resource_group: Optional[str]
    region: Optional[str] = None
    image_tag: Optional[str] = None
    branch_matched: bool = False
    quality_gate: Optional[GateStatus] = None
    reasons: Tuple[str, ...] = ()
    audit_entries: Tuple[AuditEntry, ...] = ()

    @property
    def final_reason(self) -> str:
        return self.reasons[-1] if self.reasons else ""

    def as_dict(self) -> dict:
        return {
            "runId": self.run_id,
            "application": self.application,
            "shouldDeploy": self.should_deploy,
            "stage": self.stage.value,
            "targetEnvironment": self.target_environment,
            "cluster": self.cluster,
            "resourceGroup": self.resource_group,
            "region": self.region,
            "imageTag": self.image_tag,
            "branchMatched": self.branch_matched,
            "qualityGate": self.quality_gate.value if self.quality_gate else None,
            "reasons": list(self.reasons),
            "auditEntries": [entry.as_dict() for entry in self.audit_entries],
        }


class TriggerInput(BaseModel):
    event_type: EventType
    ref: str
    actor: str
    environment: Optional[str] = None
    force_deploy: bool = False
    override_branch_validation: bool = False
    emergency_deployment: bool = False
    custom_image_tag: Optional[str] = None
    deploy_notes: Optional[str] = Field(None, max_length=1000)
    actor_teams: List[str] = []
    sha: Optional[str] = None

    def to_context(self) -> TriggerContext:
        return TriggerContext(
            event_type=self.event_type,
            ref=self.ref,
            actor=self.actor,
            environment=self.environment,
            force_deploy=self.force_deploy,
            override_branch_validation=self.override_branch_validation,
            emergency_deployment=self.emergency_deployment,
            custom_image_tag=self.custom_image_tag,
            deploy_notes=self.deploy_notes,
            actor_teams=tuple(self.actor_teams),
            sha=self.sha,
        )


class QualityGateReport(BaseModel):
    tool_name: str
    status: GateStatus
    severity_counts: Dict[str, int] = {}
    thresholds: Dict[str, int] = {}

    def to_result(self) -> QualityGateResult:
        return QualityGateResult(
            tool_name=self.tool_name,
            status=self.status,
            severity_counts=dict(self.severity_counts),
            thresholds=dict(self.thresholds),
        )


class DecisionRequest(BaseModel):
    application: str = Field(..., min_length=1, max_length=63)
    trigger: TriggerInput
    quality_gates: List[QualityGateReport] = []
    image_tag: Optional[str] = None


class RollbackRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=240)


class Actor(BaseModel):
    actor_id: str
    role: Role
    email: Optional[str] = None
    teams: List[str] = []
