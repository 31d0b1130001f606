# policyprop

`policyprop` works out where governance policies belong. A root policy is bound to
managed clusters through placement bindings. The package resolves those bindings into
the set of clusters that should hold a replicated copy of the policy, along with any
remediation overrides. It then rolls the per-cluster compliance of the replicas up into
one state for the root policy.

All objects are kept in an in-memory `ObjectStore`, so the logic runs and can be tested
without a cluster.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Modules

- `policyprop.models`: data classes for `Policy`, `PolicyTemplate`, `PlacementBinding`,
  `Subject`, `PlacementSubject`, `BindingOverrides`, `PlacementRule`, `ClusterPlacement`,
  `ClusterPlacementDecision`, `PolicySet`, `PlacementDecision`, `Placement`,
  `CompliancePerClusterStatus` and `ClusterDecision`, plus the `ComplianceState` enum.
  It also provides these helpers:
  - `full_name_for_policy(policy)` gives `namespace.name`.
  - `parse_root_policy_label(name)` turns a replica name into the root policy's
    `(name, namespace)`. It raises `ValueError` when the name is malformed.
  - `has_valid_placement_ref(binding)` accepts only a `PlacementRule` in
    `apps.open-cluster-management.io` or a `Placement` in
    `cluster.open-cluster-management.io`.
- `policyprop.store`: `ObjectStore`, a thread-safe store keyed by kind, namespace and name.
  - It has `add`, `get`, `list` (filtered by namespace and labels, sorted by namespace and
    name), `create`, `update` and `delete`.
  - Objects are copied both on the way in and on the way out.
  - Every write assigns a new `resource_version`.
  - A missing object raises `NotFoundError`. Calling `create` on an object that already
    exists raises `ValueError`.
- `policyprop.aggregation` holds the compliance roll-up:
  - `calculate_per_cluster_status(store, policy, decisions)` returns the per-cluster
    statuses sorted by cluster name, together with the last lookup error other than
    not-found, or `None`.
  - `calculate_root_compliance(clusters)` gives the root state.
- `policyprop.propagation`: `Propagator`, built as `Propagator(store, recorder=None,
  replicated_updates=None)`.
  - It resolves bindings through `get_policy_placement_decisions`,
    `get_all_cluster_decisions` and `get_decisions`.
  - `handle_root_policy(policy)` writes the policy's status, compliance state and
    placements back to the store.
  - For each chosen cluster, and for each cluster that has dropped out of the placement,
    it puts a `GenericEvent` on the `replicated_updates` queue.
  - An `EventRecorder` keeps emitted events; `handle_root_policy` records one when a
    disabled policy still has replicas.
  - The module also has the helpers `policy_has_templates`, `is_configuration_policy`
    and `get_binding_decisions`.
- `policyprop.replicated`: `ReplicatedPolicyReconciler`, a `Propagator` for a single
  cluster.
  - `single_cluster_decision(root_policy, cluster_name)` returns a `ClusterDecision`,
    or `None` when the policy does not belong on that cluster.
  - `is_single_cluster_in_decisions(binding, policy_name, cluster_name)` checks a single
    binding.
  - `clean_up_replicated(replicated_policy)` deletes a replica and records `"deleted"`
    in `resource_versions`.
- `policyprop.metrics`: small `Gauge`, `Counter` and `Histogram` types.
  - `Histogram.bucket_count` counts observations at or below a bucket bound.
  - Three module-level instances are defined: `HUB_TEMPLATE_ACTIVE_WATCHES`,
    `PROPAGATION_FAILURE` and `ROOT_HANDLER_MEASURE`.
  - `handle_root_policy` records its duration in `ROOT_HANDLER_MEASURE`.

## Example

```python
import queue

from policyprop.models import (
    PlacementBinding, PlacementDecision, PlacementRule, PlacementSubject, Policy, Subject,
)
from policyprop.propagation import Propagator
from policyprop.replicated import ReplicatedPolicyReconciler
from policyprop.store import ObjectStore

store = ObjectStore()
store.add(Policy(name="my-policy", namespace="default"))
store.add(PlacementRule(
    name="my-rule", namespace="default",
    decisions=[PlacementDecision("cluster1", "cluster1")],
))
store.add(PlacementBinding(
    name="my-binding", namespace="default",
    placement_ref=PlacementSubject("apps.open-cluster-management.io", "PlacementRule", "my-rule"),
    subjects=[Subject("policy.open-cluster-management.io", "Policy", "my-policy")],
))

updates = queue.Queue()
propagator = Propagator(store, replicated_updates=updates)
propagator.handle_root_policy(store.get("Policy", "default", "my-policy"))
updates.get_nowait()  # GenericEvent(name="default.my-policy", namespace="cluster1", ...)

reconciler = ReplicatedPolicyReconciler(store)
root = store.get("Policy", "default", "my-policy")
reconciler.single_cluster_decision(root, "cluster1")  # ClusterDecision for cluster1
reconciler.single_cluster_decision(root, "cluster2")  # None
```

## Binding rules

- Bindings without a sub-filter pick the clusters.
- Bindings with `sub_filter="restricted"` cannot add clusters. They only apply
  overrides to clusters that unrestricted bindings have already chosen.
- A remediation action of `enforce`, matched case-insensitively, from any binding that
  covers a cluster wins for that cluster.
- Placements are reported sorted by binding name.

## Compliance roll-up

States take precedence in this order: NonCompliant, then Pending, then unknown (`""`),
then Compliant. An empty list gives `""`. The root policy is Compliant only when every
cluster reports Compliant.

```python
from policyprop.aggregation import calculate_root_compliance
from policyprop.models import ComplianceState, CompliancePerClusterStatus

statuses = [
    CompliancePerClusterStatus(cluster_name="a", cluster_namespace="a",
                               compliance_state=ComplianceState.COMPLIANT),
    CompliancePerClusterStatus(cluster_name="b", cluster_namespace="b",
                               compliance_state=ComplianceState.PENDING),
]
calculate_root_compliance(statuses)  # ComplianceState.PENDING
```

## What it does not do

- It does not connect to a cluster API. Objects exist only in an `ObjectStore`.
- It has no command and no long-running controller loop. Events placed on the
  `replicated_updates` queue are for the caller to consume.
- It does not build replicated policies and does not create or update them. It does not
  resolve hub templates, handle template encryption or watch the objects that templates
  refer to. `policy_has_templates` only detects the `{{hub` delimiter.
- Metrics are kept in memory and are not exported.