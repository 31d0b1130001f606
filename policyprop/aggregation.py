"""Aggregation of replicated policy compliance into the root policy status."""

from __future__ import annotations

from collections.abc import Iterable

from .models import (
    CompliancePerClusterStatus,
    ComplianceState,
    PlacementDecision,
    Policy,
    full_name_for_policy,
)
from .store import NotFoundError


def calculate_per_cluster_status(
    store, policy: Policy, decisions: Iterable[PlacementDecision]
) -> tuple[list[CompliancePerClusterStatus], Exception | None]:
    """Collect the compliance of each replicated policy, sorted by cluster name.

    Every lookup is attempted. A replicated policy that is missing gives an
    empty state. The last lookup failure other than a missing object is
    returned alongside the statuses, since a partial result is still useful.
    """
    if policy.disabled:
        return [], None

    replicated_name = full_name_for_policy(policy)
    statuses: list[CompliancePerClusterStatus] = []
    lookup_error: Exception | None = None

    for decision in decisions:
        state = ""
        try:
            replicated = store.get(Policy.KIND, decision.cluster_namespace, replicated_name)
            state = replicated.compliance_state
        except NotFoundError:
            pass
        except Exception as exc:  # noqa: BLE001 - kept so every lookup is attempted
            lookup_error = exc
        statuses.append(
            CompliancePerClusterStatus(
                compliance_state=state,
                cluster_name=decision.cluster_name,
                cluster_namespace=decision.cluster_namespace,
            )
        )

    statuses.sort(key=lambda status: status.cluster_name)
    return statuses, lookup_error


def calculate_root_compliance(
    clusters: Iterable[CompliancePerClusterStatus],
) -> ComplianceState | str:
    """Root compliance from per-cluster states.

    Precedence is NonCompliant > Pending > unknown ("") > Compliant, and no
    clusters gives "".
    """
    seen_any = False
    pending_found = False
    unknown_found = False

    for status in clusters:
        seen_any = True
        state = status.compliance_state
        if state == ComplianceState.NON_COMPLIANT:
            return ComplianceState.NON_COMPLIANT
        if state == ComplianceState.PENDING:
            pending_found = True
        elif state != ComplianceState.COMPLIANT:
            unknown_found = True

    if not seen_any:
        return ""
    if pending_found:
        return ComplianceState.PENDING
    if unknown_found:
        return ""
    return ComplianceState.COMPLIANT