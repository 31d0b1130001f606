"""Resource models for policies, bindings, placements and their status."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

POLICY_GROUP = "policy.open-cluster-management.io"
POLICY_VERSION = "v1"
APPS_GROUP = "apps.open-cluster-management.io"
CLUSTER_GROUP = "cluster.open-cluster-management.io"

POLICY_KIND = "Policy"
POLICY_SET_KIND = "PolicySet"

ENFORCE = "Enforce"
INFORM = "Inform"
RESTRICTED = "restricted"

TRIGGER_UPDATE_ANNOTATION = "policy.open-cluster-management.io/trigger-update"
PLACEMENT_LABEL = "cluster.open-cluster-management.io/placement"


class ComplianceState(str, Enum):
    """Known compliance states. An empty string stands for an unknown state."""

    COMPLIANT = "Compliant"
    NON_COMPLIANT = "NonCompliant"
    PENDING = "Pending"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class PlacementDecision:
    """A single managed cluster chosen by a placement."""

    cluster_name: str
    cluster_namespace: str


@dataclass
class BindingOverrides:
    """Overrides a placement binding applies to the policies it binds."""

    remediation_action: str = ""


@dataclass(frozen=True)
class Subject:
    """A policy or policy set bound by a placement binding."""

    api_group: str
    kind: str
    name: str


@dataclass(frozen=True)
class PlacementSubject:
    """The placement (rule) that a placement binding refers to."""

    api_group: str
    kind: str
    name: str


@dataclass(kw_only=True)
class _Object:
    KIND: ClassVar[str] = ""

    name: str
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    resource_version: str = ""


@dataclass(kw_only=True)
class PlacementBinding(_Object):
    """Binds policies and policy sets to a placement."""

    KIND: ClassVar[str] = "PlacementBinding"

    placement_ref: PlacementSubject = field(
        default_factory=lambda: PlacementSubject("", "", "")
    )
    subjects: list[Subject] = field(default_factory=list)
    binding_overrides: BindingOverrides = field(default_factory=BindingOverrides)
    sub_filter: str = ""


@dataclass
class PolicyTemplate:
    """One template embedded in a policy, held as its raw JSON text."""

    raw: str

    def object_definition(self) -> dict[str, Any]:
        """Parse the raw JSON; raise ValueError unless it is a JSON object."""
        parsed = json.loads(self.raw)
        if not isinstance(parsed, dict):
            raise ValueError("object definition is not a JSON object")
        return parsed


@dataclass
class CompliancePerClusterStatus:
    """The compliance of a policy on one managed cluster."""

    compliance_state: str = ""
    cluster_name: str = ""
    cluster_namespace: str = ""


@dataclass
class Placement:
    """How a root policy is placed: the binding and what it points to."""

    placement_binding: str = ""
    placement_rule: str = ""
    placement: str = ""
    policy_set: str = ""


@dataclass(kw_only=True)
class Policy(_Object):
    """A root or replicated policy with its spec and status."""

    KIND: ClassVar[str] = POLICY_KIND

    disabled: bool = False
    remediation_action: str = ""
    policy_templates: list[PolicyTemplate] = field(default_factory=list)
    compliance_state: str = ""
    status: list[CompliancePerClusterStatus] = field(default_factory=list)
    placement: list[Placement] = field(default_factory=list)


@dataclass(kw_only=True)
class PlacementRule(_Object):
    """A placement rule with the decisions held in its status."""

    KIND: ClassVar[str] = "PlacementRule"

    decisions: list[PlacementDecision] = field(default_factory=list)


@dataclass(kw_only=True)
class ClusterPlacement(_Object):
    """A cluster placement; its decisions live in ClusterPlacementDecision objects."""

    KIND: ClassVar[str] = "Placement"


@dataclass(kw_only=True)
class ClusterPlacementDecision(_Object):
    """Decisions of a cluster placement, labelled with the placement's name."""

    KIND: ClassVar[str] = "PlacementDecision"

    cluster_names: list[str] = field(default_factory=list)


@dataclass(kw_only=True)
class PolicySet(_Object):
    """A named group of policies in one namespace."""

    KIND: ClassVar[str] = POLICY_SET_KIND

    policies: list[str] = field(default_factory=list)


@dataclass
class ClusterDecision:
    """A cluster that should get a replicated policy, with any overrides."""

    cluster: PlacementDecision
    policy_overrides: BindingOverrides = field(default_factory=BindingOverrides)


def full_name_for_policy(policy: Policy) -> str:
    """Name of the replicated copies of a root policy: ``namespace.name``."""
    return f"{policy.namespace}.{policy.name}"


def parse_root_policy_label(name: str) -> tuple[str, str]:
    """Split a replicated policy name into the root policy's (name, namespace)."""
    namespace, sep, root_name = name.partition(".")
    if not sep or not namespace or not root_name:
        raise ValueError(f"invalid replicated policy name: {name!r}")
    return root_name, namespace


def has_valid_placement_ref(binding: PlacementBinding) -> bool:
    """Whether the binding points to a PlacementRule or a Placement."""
    ref = binding.placement_ref
    return (ref.api_group, ref.kind) in {
        (APPS_GROUP, "PlacementRule"),
        (CLUSTER_GROUP, "Placement"),
    }