"""Decisions about a single replicated policy on a single managed cluster."""

from __future__ import annotations

import copy
import logging
import queue
import threading
from typing import Any

from .models import (
    ENFORCE,
    PLACEMENT_LABEL,
    POLICY_GROUP,
    POLICY_KIND,
    POLICY_SET_KIND,
    RESTRICTED,
    ClusterDecision,
    ClusterPlacement,
    ClusterPlacementDecision,
    PlacementBinding,
    PlacementDecision,
    PlacementRule,
    Policy,
    has_valid_placement_ref,
)
from .propagation import EventRecorder, Propagator
from .store import NotFoundError, ObjectStore

log = logging.getLogger(__name__)

DELETED = "deleted"


class ReplicatedPolicyReconciler(Propagator):
    """Decides whether a root policy belongs on a cluster and cleans up replicas."""

    def __init__(
        self,
        store: ObjectStore,
        recorder: EventRecorder | None = None,
        replicated_updates: queue.Queue | None = None,
    ) -> None:
        super().__init__(store, recorder, replicated_updates)
        self.resource_versions: dict[str, str] = {}
        self._versions_lock = threading.Lock()

    def _record_version(self, key: str, version: str) -> None:
        with self._versions_lock:
            self.resource_versions[key] = version

    def clean_up_replicated(self, replicated_policy: Policy) -> None:
        """Delete a replicated policy and remember it as deleted.

        The cached version is marked deleted even when the delete fails;
        the failure (such as NotFoundError) is then raised.
        """
        key = f"{replicated_policy.namespace}/{replicated_policy.name}"
        try:
            self.store.delete(replicated_policy)
        finally:
            self._record_version(key, DELETED)

    def single_cluster_decision(
        self, root_policy: Policy, cluster_name: str
    ) -> ClusterDecision | None:
        """The decision for one cluster, or None if the policy does not belong there."""
        bindings: list[PlacementBinding] = self.store.list(
            PlacementBinding.KIND, root_policy.namespace
        )
        positive = ClusterDecision(
            cluster=PlacementDecision(cluster_name=cluster_name, cluster_namespace=cluster_name)
        )
        enforce = ENFORCE.lower()

        found_without_sub_filter = False
        for binding in bindings:
            if binding.sub_filter == RESTRICTED:
                continue
            if not self.is_single_cluster_in_decisions(binding, root_policy.name, cluster_name):
                continue
            if binding.binding_overrides.remediation_action.lower() == enforce:
                positive.policy_overrides = copy.copy(binding.binding_overrides)
                return positive
            found_without_sub_filter = True

        if not found_without_sub_filter:
            return None

        for binding in bindings:
            if binding.sub_filter != RESTRICTED:
                continue
            if not self.is_single_cluster_in_decisions(binding, root_policy.name, cluster_name):
                continue
            if binding.binding_overrides.remediation_action.lower() == enforce:
                positive.policy_overrides = copy.copy(binding.binding_overrides)
                return positive

        return positive

    def _get_or_none(self, kind: str, namespace: str, name: str) -> Any | None:
        try:
            return self.store.get(kind, namespace, name)
        except NotFoundError:
            return None
        except Exception as exc:
            raise RuntimeError(f"failed to get {kind} '{name}': {exc}") from exc

    def _subject_matches(self, binding: PlacementBinding, policy_name: str) -> bool:
        for subject in binding.subjects:
            if subject.api_group != POLICY_GROUP:
                continue
            if subject.kind == POLICY_KIND and subject.name == policy_name:
                return True
            if subject.kind == POLICY_SET_KIND and self.is_policy_in_policy_set(
                policy_name, subject.name, binding.namespace
            ):
                return True
        return False

    def is_single_cluster_in_decisions(
        self, binding: PlacementBinding, policy_name: str, cluster_name: str
    ) -> bool:
        """Whether the binding binds the policy and its placement chooses the cluster."""
        if not has_valid_placement_ref(binding):
            return False
        if not self._subject_matches(binding, policy_name):
            return False

        ref = binding.placement_ref
        if ref.kind == PlacementRule.KIND:
            rule = self._get_or_none(PlacementRule.KIND, binding.namespace, ref.name)
            if rule is None:
                return False
            return any(d.cluster_name == cluster_name for d in rule.decisions)

        if ref.kind == ClusterPlacement.KIND:
            placement = self._get_or_none(ClusterPlacement.KIND, binding.namespace, ref.name)
            if placement is None:
                return False
            try:
                items = self.store.list(
                    ClusterPlacementDecision.KIND,
                    binding.namespace,
                    {PLACEMENT_LABEL: placement.name},
                )
            except Exception as exc:
                raise RuntimeError(
                    f"failed to list the PlacementDecisions for '{ref.name}', {exc}"
                ) from exc
            return any(cluster_name in item.cluster_names for item in items)

        return False