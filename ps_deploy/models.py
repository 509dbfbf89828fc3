# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Data model for the deployment pipeline.

Domain state that moves through the stages (identity, build targets,
scaffolding, service instances) is kept in dataclasses; results returned
from provider operations are pydantic models.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    """Pixel Streaming component roles."""

    SIGNALLING = "Signalling"
    MATCHMAKER = "Matchmaker"
    FRONTEND = "Frontend"


# Fixed build order
ROLES = (Role.SIGNALLING, Role.MATCHMAKER, Role.FRONTEND)

# Images substituted when the operator opts out of image creation
FALLBACK_IMAGE_IDS = {
    Role.SIGNALLING: "ami-014fefbaf7bdafab3",
    Role.MATCHMAKER: "ami-0c284ed6bd6a72b4a",
    Role.FRONTEND: "ami-05422fc3670401f9a",
}


class HealthState(str, Enum):
    """Service instance health, as observed through target group polling."""

    UNKNOWN = "unknown"
    INITIAL = "initial"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed-out"


_HEALTH_TRANSITIONS = {
    HealthState.UNKNOWN: {HealthState.INITIAL},
    HealthState.INITIAL: {
        HealthState.HEALTHY,
        HealthState.UNHEALTHY,
        HealthState.TIMED_OUT,
    },
    HealthState.UNHEALTHY: {
        HealthState.HEALTHY,
        HealthState.UNHEALTHY,
        HealthState.TIMED_OUT,
    },
    HealthState.HEALTHY: set(),
    HealthState.TIMED_OUT: set(),
}


class CreateResult(str, Enum):
    """Outcome of an idempotent create."""

    CREATED = "created"
    ALREADY_EXISTED = "already-existed"
    FAILED = "failed"


@dataclass(frozen=True)
class DeploymentIdentity:
    """Who and where we deploy. Resolved once per run, shared as a value."""

    region: str
    stack_name: str
    key_pair_name: str


@dataclass
class BuildTarget:
    """One component image to build."""

    role: Role
    provisioning_script: Path
    produced_image_id: str = ""

    def record_image(self, image_id: str) -> None:
        """Record the produced image id. Written exactly once."""
        if self.produced_image_id:
            raise ValueError(
                f"{self.role.value} already has image {self.produced_image_id}"
            )
        if not image_id:
            raise ValueError("image_id must not be empty")
        self.produced_image_id = image_id


@dataclass(frozen=True)
class TransientEnvironment:
    """Scaffolding that only lives for the duration of image building."""

    security_group_id: str
    staging_bucket: str
    instance_profile_name: str
    role_name: str
    vpc_id: str


@dataclass(frozen=True)
class ArtifactReference:
    """Where the staged source tree lives."""

    bucket: str
    prefix: str
    uploaded: int = 0
    deleted: int = 0
    unchanged: int = 0

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.prefix}/"


@dataclass(frozen=True)
class StackDeploymentRequest:
    """Everything needed to submit a stack. Rebuilt per invocation."""

    stack_name: str
    template_location: str
    parameters: Mapping[str, str]
    capabilities: tuple = (
        "CAPABILITY_IAM",
        "CAPABILITY_NAMED_IAM",
        "CAPABILITY_AUTO_EXPAND",
    )

    def cfn_parameters(self) -> List[Dict[str, str]]:
        """Parameters in CloudFormation format"""
        return [
            {"ParameterKey": k, "ParameterValue": v}
            for k, v in self.parameters.items()
        ]

    def template_argument(self) -> Dict[str, str]:
        """TemplateURL for remote templates, TemplateBody for local files"""
        if self.template_location.startswith(("https://", "http://")):
            return {"TemplateURL": self.template_location}
        template_file = Path(self.template_location)
        if not template_file.exists():
            raise FileNotFoundError(f"Template not found: {self.template_location}")
        return {"TemplateBody": template_file.read_text()}


class StackOutputs(Mapping):
    """Read-only view over stack outputs with typed accessors."""

    def __init__(self, outputs: Optional[Mapping[str, str]] = None):
        self._outputs = MappingProxyType(dict(outputs or {}))

    @classmethod
    def from_stack(cls, stack: Dict) -> "StackOutputs":
        """Build from a describe_stacks entry"""
        return cls(
            {
                output.get("OutputKey", ""): output.get("OutputValue", "")
                for output in stack.get("Outputs", [])
            }
        )

    def __getitem__(self, key: str) -> str:
        return self._outputs[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._outputs)

    def __len__(self) -> int:
        return len(self._outputs)

    def __repr__(self) -> str:
        return f"StackOutputs({dict(self._outputs)!r})"

    def _matching(self, *suffixes: str) -> Dict[str, str]:
        return {
            key: value
            for key, value in self._outputs.items()
            if any(key.endswith(suffix) for suffix in suffixes)
        }

    @property
    def load_balancer_dns_names(self) -> Dict[str, str]:
        return self._matching("DNSName", "LoadBalancerDNS", "ALBDNS")

    @property
    def websocket_endpoints(self) -> Dict[str, str]:
        return self._matching("WSAPI", "WebSocketURL")

    @property
    def auth_domain_url(self) -> str:
        return self._outputs.get("CognitoDomainURL", "")

    @property
    def client_id(self) -> str:
        return self._outputs.get("CognitoClientID", "")

    @property
    def callback_url(self) -> str:
        return self._outputs.get("CognitoCallBackURL", "")

    @property
    def cloudfront_domain(self) -> str:
        return self._outputs.get("CloudFrontDomainName", "")

    @property
    def subnet_id(self) -> str:
        return self._outputs.get("PrivateSubnetId", "") or self._outputs.get(
            "PrivateSubnet1", ""
        )

    @property
    def security_group_id(self) -> str:
        return self._outputs.get("InstanceSecurityGroupId", "")

    def target_group_arn(self, role: Role) -> str:
        return self._outputs.get(f"{role.value}TargetGroupArn", "")

    def launch_template_name(self, role: Role) -> str:
        return self._outputs.get(f"{role.value}LaunchTemplateName", "")


@dataclass
class ServiceInstance:
    """A long-lived service instance and its observed health."""

    role: Role
    instance_id: str
    address: str = ""
    target_group_arn: str = ""
    health_state: HealthState = HealthState.UNKNOWN
    detail: str = ""

    def transition(self, new_state: HealthState, detail: str = "") -> None:
        """Move to a new health state, enforcing the allowed transitions."""
        if new_state not in _HEALTH_TRANSITIONS[self.health_state]:
            raise ValueError(
                f"{self.role.value} {self.instance_id}: "
                f"illegal transition {self.health_state.value} -> {new_state.value}"
            )
        self.health_state = new_state
        if detail:
            self.detail = detail

    @property
    def registered(self) -> bool:
        return bool(self.target_group_arn)

    @property
    def is_soft_failure(self) -> bool:
        return self.health_state in (HealthState.UNHEALTHY, HealthState.TIMED_OUT)


class BuildReport:
    """Per-role build outcomes; one slot per role, each written once."""

    def __init__(self, roles=ROLES):
        self._lock = threading.Lock()
        self._image_ids: Dict[Role, str] = {}
        self._errors: Dict[Role, Exception] = {}
        self._roles = tuple(roles)

    def record_success(self, role: Role, image_id: str) -> None:
        with self._lock:
            self._ensure_unset(role)
            self._image_ids[role] = image_id

    def record_failure(self, role: Role, error: Exception) -> None:
        with self._lock:
            self._ensure_unset(role)
            self._errors[role] = error

    def _ensure_unset(self, role: Role) -> None:
        if role in self._image_ids or role in self._errors:
            raise ValueError(f"Result for {role.value} already recorded")

    @property
    def image_ids(self) -> Dict[Role, str]:
        with self._lock:
            return dict(self._image_ids)

    @property
    def errors(self) -> Dict[Role, Exception]:
        with self._lock:
            return dict(self._errors)

    @property
    def missing_roles(self) -> List[Role]:
        with self._lock:
            return [role for role in self._roles if role not in self._image_ids]

    @property
    def success(self) -> bool:
        return not self.missing_roles


class TeardownStatus(str, Enum):
    DELETED = "deleted"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class TeardownStep:
    action: str
    resource: str
    status: TeardownStatus
    detail: str = ""


@dataclass
class TeardownReport:
    """Ordered outcomes of a best-effort teardown."""

    steps: List[TeardownStep] = field(default_factory=list)

    def deleted(self, action: str, resource: str, detail: str = "") -> None:
        self.steps.append(TeardownStep(action, resource, TeardownStatus.DELETED, detail))

    def skipped(self, action: str, resource: str, detail: str = "") -> None:
        self.steps.append(TeardownStep(action, resource, TeardownStatus.SKIPPED, detail))

    def failed(self, action: str, resource: str, detail: str = "") -> None:
        self.steps.append(TeardownStep(action, resource, TeardownStatus.FAILED, detail))

    @property
    def unresolved(self) -> List[TeardownStep]:
        return [step for step in self.steps if step.status == TeardownStatus.FAILED]

    @property
    def success(self) -> bool:
        return not self.unresolved

    @property
    def changed(self) -> bool:
        return any(step.status == TeardownStatus.DELETED for step in self.steps)


# ============================================================================
# Provider operation results
# ============================================================================


class DeploymentResult(BaseModel):
    """Result of a stack create or update."""

    success: bool = Field(description="Whether the operation succeeded")
    operation: str = Field(description="Type of operation (CREATE, UPDATE)")
    status: str = Field(description="Final stack status, or NO_CHANGES")
    stack_name: str = Field(description="CloudFormation stack name")
    stack_id: Optional[str] = Field(default=None, description="CloudFormation stack ID")
    outputs: Dict[str, str] = Field(
        default_factory=dict, description="Stack outputs (URLs, ARNs, names)"
    )

    @property
    def no_changes(self) -> bool:
        return self.status == "NO_CHANGES"

    def stack_outputs(self) -> StackOutputs:
        return StackOutputs(self.outputs)


class DeletionResult(BaseModel):
    """Result of a stack deletion."""

    success: bool = Field(description="Whether the deletion completed")
    status: str = Field(description="Final status")
    stack_name: str = Field(description="CloudFormation stack name")
    error: Optional[str] = Field(default=None, description="Error message if failed")


class PostDeployResult(BaseModel):
    """Outcome of the post-stack steps. All of them are soft."""

    functions_updated: List[str] = Field(default_factory=list)
    functions_failed: List[str] = Field(default_factory=list)
    tables_initialized: bool = False
    client_secret: str = "MANUAL_RETRIEVAL_REQUIRED"
    frontend_configured: bool = False
    warnings: List[str] = Field(default_factory=list)

    model_config = ConfigDict(validate_assignment=True)

    @property
    def client_secret_retrieved(self) -> bool:
        return self.client_secret != "MANUAL_RETRIEVAL_REQUIRED"
