"""Propagation of root policies to the managed clusters chosen by their bindings."""

from __future__ import annotations

import copy
import logging
import queue
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .aggregation import calculate_per_cluster_status, calculate_root_compliance
from .metrics import ROOT_HANDLER_MEASURE
from .models import (
    ENFORCE,
    PLACEMENT_LABEL,
    POLICY_GROUP,
    POLICY_KIND,
    POLICY_SET_KIND,
    POLICY_VERSION,
    RESTRICTED,
    BindingOverrides,
    ClusterPlacement,
    ClusterPlacementDecision,
    CompliancePerClusterStatus,
    Placement,
    PlacementBinding,
    PlacementDecision,
    PlacementRule,
    Policy,
    PolicySet,
    PolicyTemplate,
    full_name_for_policy,
    has_valid_placement_ref,
)
from .store import NotFoundError, ObjectStore

log = logging.getLogger(__name__)

START_DELIM = "{{hub"
STOP_DELIM = "hub}}"


@dataclass(frozen=True)
class GenericEvent:
    """A request to reconcile one replicated policy."""

    name: str
    namespace: str
    kind: str = POLICY_KIND
    api_version: str = f"{POLICY_GROUP}/{POLICY_VERSION}"


@dataclass(frozen=True)
class RecordedEvent:
    """An event recorded against an object."""

    kind: str
    namespace: str
    name: str
    event_type: str
    reason: str
    message: str


@dataclass
class EventRecorder:
    """Keeps the events emitted for objects, in the order they were emitted."""

    events: list[RecordedEvent] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        recorded = RecordedEvent(
            kind=obj.KIND,
            namespace=obj.namespace,
            name=obj.name,
            event_type=event_type,
            reason=reason,
            message=message,
        )
        with self._lock:
            self.events.append(recorded)


def policy_has_templates(policy: Policy) -> bool:
    """Whether any policy template holds a hub template."""
    return any(START_DELIM in template.raw for template in policy.policy_templates)


def is_configuration_policy(template: PolicyTemplate) -> bool:
    """Whether the template's object definition is a ConfigurationPolicy."""
    try:
        definition = template.object_definition()
    except ValueError:
        return False
    return definition.get("kind") == "ConfigurationPolicy"


def _lookup(store: ObjectStore, kind: str, namespace: str, name: str) -> Any | None:
    """Return the object, None when it does not exist, or raise on other failures."""
    try:
        return store.get(kind, namespace, name)
    except NotFoundError:
        return None
    except Exception as exc:
        raise RuntimeError(f"failed to check for {kind} '{name}': {exc}") from exc


def get_binding_decisions(store: ObjectStore, binding: PlacementBinding) -> list[PlacementDecision]:
    """The clusters chosen by the placement (rule) a binding refers to."""
    if not has_valid_placement_ref(binding):
        raise ValueError(
            f"placement binding {binding.name}/{binding.namespace} reference is not valid"
        )

    ref = binding.placement_ref
    if ref.kind == PlacementRule.KIND:
        rule = _lookup(store, PlacementRule.KIND, binding.namespace, ref.name)
        found = rule.decisions if rule is not None else []
    else:
        placement = _lookup(store, ClusterPlacement.KIND, binding.namespace, ref.name)
        if placement is None:
            return []
        found = [
            PlacementDecision(cluster_name=name, cluster_namespace=name)
            for item in store.list(
                ClusterPlacementDecision.KIND,
                binding.namespace,
                {PLACEMENT_LABEL: placement.name},
            )
            for name in item.cluster_names
        ]
    return list(dict.fromkeys(found))


def _sort_placements(placements: list[Placement]) -> list[Placement]:
    return sorted(placements, key=lambda placement: placement.placement_binding)


class Propagator:
    """Works out where a root policy belongs and keeps its status current."""

    def __init__(
        self,
        store: ObjectStore,
        recorder: EventRecorder | None = None,
        replicated_updates: queue.Queue | None = None,
    ) -> None:
        self.store = store
        self.recorder = recorder if recorder is not None else EventRecorder()
        self.replicated_updates = (
            replicated_updates if replicated_updates is not None else queue.Queue()
        )

    def is_policy_in_policy_set(self, policy_name: str, policy_set_name: str, namespace: str) -> bool:
        """Whether the named policy set in the namespace lists the policy."""
        try:
            policy_set = self.store.get(PolicySet.KIND, namespace, policy_set_name)
        except Exception:
            log.exception(
                "Failed to get the policyset %s/%s for policy %s",
                namespace, policy_set_name, policy_name,
            )
            return False
        return policy_name in policy_set.policies

    def get_policy_placement_decisions(
        self, policy: Policy, binding: PlacementBinding
    ) -> tuple[list[PlacementDecision], list[Placement]]:
        """Decisions and placements a single binding gives the policy.

        Raises ValueError for an invalid placement reference and RuntimeError
        when a required lookup fails.
        """
        if not has_valid_placement_ref(binding):
            raise ValueError(
                f"placement binding {binding.name}/{binding.namespace} reference is not valid"
            )

        placements: list[Placement] = []
        policy_subject_found = False
        seen_sets: set[str] = set()

        for subject in binding.subjects:
            if subject.api_group != POLICY_GROUP:
                continue
            if subject.kind == POLICY_KIND:
                if not policy_subject_found and subject.name == policy.name:
                    policy_subject_found = True
                    placements.append(Placement(placement_binding=binding.name))
            elif subject.kind == POLICY_SET_KIND and subject.name not in seen_sets:
                seen_sets.add(subject.name)
                if self.is_policy_in_policy_set(policy.name, subject.name, binding.namespace):
                    placements.append(
                        Placement(placement_binding=binding.name, policy_set=subject.name)
                    )

        if not placements:
            return [], []

        ref = binding.placement_ref
        if ref.kind == PlacementRule.KIND:
            rule = _lookup(self.store, PlacementRule.KIND, binding.namespace, ref.name)
            for placement in placements:
                placement.placement_rule = rule.name if rule is not None else ""
        elif ref.kind == ClusterPlacement.KIND:
            target = _lookup(self.store, ClusterPlacement.KIND, binding.namespace, ref.name)
            for placement in placements:
                placement.placement = target.name if target is not None else ""

        if policy.disabled:
            return [], placements

        return get_binding_decisions(self.store, binding), placements

    def get_all_cluster_decisions(
        self, policy: Policy, bindings: Iterable[PlacementBinding]
    ) -> tuple[dict[PlacementDecision, BindingOverrides], list[Placement]]:
        """Every cluster that should get the policy, with its overrides.

        Restricted bindings only narrow down overrides for clusters already
        chosen by unrestricted ones. Placements are sorted by binding name.
        """
        bindings = list(bindings)
        decisions: dict[PlacementDecision, BindingOverrides] = {}
        placements: list[Placement] = []
        enforce = ENFORCE.lower()

        for binding in bindings:
            if binding.sub_filter == RESTRICTED:
                continue
            found, found_placements = self.get_policy_placement_decisions(policy, binding)
            if not found:
                log.info(
                    "No placement decisions to process for policy %s from binding %s",
                    policy.name, binding.name,
                )
            action = binding.binding_overrides.remediation_action
            for decision in found:
                if decision in decisions:
                    if action.lower() == enforce:
                        decisions[decision] = BindingOverrides(remediation_action=enforce)
                else:
                    decisions[decision] = BindingOverrides(remediation_action=action.lower())
            placements.extend(found_placements)

        if not decisions:
            return {}, _sort_placements(placements)

        for binding in bindings:
            if binding.sub_filter != RESTRICTED:
                continue
            found, found_placements = self.get_policy_placement_decisions(policy, binding)
            if not found:
                log.info(
                    "No placement decisions to process for policy %s from binding %s",
                    policy.name, binding.name,
                )
            action = binding.binding_overrides.remediation_action
            found_in_decisions = False
            for decision in found:
                if decision in decisions:
                    found_in_decisions = True
                    if action.lower() == enforce:
                        decisions[decision] = BindingOverrides(remediation_action=enforce)
            if found_in_decisions:
                placements.extend(found_placements)

        return decisions, _sort_placements(placements)

    def get_decisions(self, policy: Policy) -> tuple[list[Placement], set[PlacementDecision]]:
        """Placements of the policy and the set of clusters it belongs on."""
        bindings = self.store.list(PlacementBinding.KIND, policy.namespace)
        all_decisions, placements = self.get_all_cluster_decisions(policy, bindings)
        return placements, set(all_decisions)

    def _send_update(self, name: str, namespace: str) -> None:
        log.debug("Sending reconcile for replicated policy %s/%s", namespace, name)
        self.replicated_updates.put(GenericEvent(name=name, namespace=namespace))

    def clean_up_orphaned_replicated(
        self,
        policy: Policy,
        original_statuses: Iterable[CompliancePerClusterStatus],
        decisions: set[PlacementDecision],
    ) -> None:
        """Ask for reconciles of replicated policies on clusters no longer chosen."""
        replicated_name = full_name_for_policy(policy)
        for cluster in original_statuses:
            key = PlacementDecision(
                cluster_name=cluster.cluster_namespace,
                cluster_namespace=cluster.cluster_namespace,
            )
            if key in decisions:
                continue
            self._send_update(replicated_name, cluster.cluster_namespace)

    def _update_existing_replicas(self, policy: Policy) -> int:
        replicated_name = full_name_for_policy(policy)
        replicas = [
            replica
            for replica in self.store.list(Policy.KIND)
            if replica.name == replicated_name and replica.namespace != policy.namespace
        ]
        for replica in replicas:
            self._send_update(replica.name, replica.namespace)
        return len(replicas)

    def handle_root_policy(self, policy: Policy) -> None:
        """Update the root policy's status and request reconciles of its replicas."""
        started = time.monotonic()
        try:
            self._handle_root_policy(policy)
        finally:
            ROOT_HANDLER_MEASURE.observe(time.monotonic() - started)

    def _handle_root_policy(self, policy: Policy) -> None:
        if policy.disabled:
            log.info("The policy %s/%s is disabled, doing clean up", policy.namespace, policy.name)
            if self._update_existing_replicas(policy) > 0:
                self.recorder.event(
                    policy, "Normal", "PolicyPropagation",
                    f"Policy {policy.namespace}/{policy.name} was disabled",
                )

        try:
            placements, decisions = self.get_decisions(policy)
        except Exception as exc:
            log.info("Failed to get any placement decisions. Giving up on the request.")
            raise RuntimeError("could not get the placement decisions") from exc

        statuses, lookup_error = calculate_per_cluster_status(self.store, policy, decisions)
        if lookup_error is not None:
            log.error(
                "Failed to get at least one replicated policy, but that may be expected: %s",
                lookup_error,
            )

        try:
            refreshed = self.store.get(Policy.KIND, policy.namespace, policy.name)
        except Exception:
            log.exception("Failed to refresh the cached policy. Will use existing policy.")
        else:
            policy.__dict__.update(refreshed.__dict__)

        original_statuses = copy.deepcopy(policy.status)

        policy.status = statuses
        policy.compliance_state = str(calculate_root_compliance(statuses))
        policy.placement = placements
        self.store.update(policy)

        log.info("Sending reconcile events to %d replicated policies", len(decisions))
        replicated_name = full_name_for_policy(policy)
        for decision in decisions:
            self._send_update(replicated_name, decision.cluster_namespace)

        self.clean_up_orphaned_replicated(policy, original_statuses, decisions)