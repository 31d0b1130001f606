import queue

import pytest

from policyprop.metrics import ROOT_HANDLER_MEASURE
from policyprop.models import (
    APPS_GROUP,
    CLUSTER_GROUP,
    PLACEMENT_LABEL,
    POLICY_GROUP,
    POLICY_KIND,
    POLICY_SET_KIND,
    RESTRICTED,
    BindingOverrides,
    ClusterPlacement,
    ClusterPlacementDecision,
    CompliancePerClusterStatus,
    Placement,
    PlacementBinding,
    PlacementDecision,
    PlacementRule,
    PlacementSubject,
    Policy,
    PolicySet,
    PolicyTemplate,
    Subject,
)
from policyprop.propagation import (
    EventRecorder,
    GenericEvent,
    Propagator,
    get_binding_decisions,
    is_configuration_policy,
    policy_has_templates,
)
from policyprop.store import ObjectStore

CLUSTERS = [PlacementDecision(f"cluster{i}", f"cluster{i}") for i in range(1, 7)]


def rule(name, clusters):
    return PlacementRule(name=name, namespace="default", decisions=list(clusters))


def binding(name, rule_name, policy_name="test-policy", action="", sub_filter=""):
    return PlacementBinding(
        name=name,
        namespace="default",
        placement_ref=PlacementSubject(APPS_GROUP, "PlacementRule", rule_name),
        subjects=[Subject(POLICY_GROUP, POLICY_KIND, policy_name)],
        binding_overrides=BindingOverrides(action),
        sub_filter=sub_filter,
    )


@pytest.fixture
def store():
    s = ObjectStore()
    s.add(rule("pr-initial", CLUSTERS[0:4]))
    s.add(rule("pr-sub", CLUSTERS[0:2]))
    s.add(rule("pr-sub2", CLUSTERS[4:6]))
    s.add(rule("pr-extended", [CLUSTERS[0], CLUSTERS[1], CLUSTERS[4], CLUSTERS[5]]))
    return s


def drain(q):
    items = []
    while True:
        try:
            items.append(q.get_nowait())
        except queue.Empty:
            return items


def overrides(mapping):
    return {CLUSTERS[i]: BindingOverrides(a) for i, a in mapping.items()}


P_INITIAL = Placement(placement_binding="pb-initial", placement_rule="pr-initial")
P_SUB = Placement(placement_binding="pb-sub", placement_rule="pr-sub")
P_SUB2 = Placement(placement_binding="pb-sub2", placement_rule="pr-sub2")
P_EXT = Placement(placement_binding="pb-extended", placement_rule="pr-extended")

CASES = {
    "With just subFilter": (
        [binding("pb-initial", "pr-initial"), binding("pb-sub", "pr-sub", sub_filter=RESTRICTED)],
        [P_INITIAL, P_SUB],
        {0: "", 1: "", 2: "", 3: ""},
    ),
    "Enforcing with subFilter": (
        [binding("pb-initial", "pr-initial"),
         binding("pb-sub", "pr-sub", action="enforce", sub_filter=RESTRICTED)],
        [P_INITIAL, P_SUB],
        {0: "enforce", 1: "enforce", 2: "", 3: ""},
    ),
    "Enforcing without subFilter/extended clusters": (
        [binding("pb-initial", "pr-initial"),
         binding("pb-extended", "pr-extended", action="enforce")],
        [P_INITIAL, P_EXT],
        {0: "enforce", 1: "enforce", 2: "", 3: "", 4: "enforce", 5: "enforce"},
    ),
    "Enforcing with subFilter/extended clusters": (
        [binding("pb-initial", "pr-initial"),
         binding("pb-extended", "pr-extended", action="enforce", sub_filter=RESTRICTED)],
        [P_INITIAL, P_EXT],
        {0: "enforce", 1: "enforce", 2: "", 3: ""},
    ),
    "Enforcing with subFilter/no overlapped clusters": (
        [binding("pb-initial", "pr-initial"),
         binding("pb-sub2", "pr-sub2", action="enforce", sub_filter=RESTRICTED)],
        [P_INITIAL],
        {0: "", 1: "", 2: "", 3: ""},
    ),
    "Enforcing with subFilter/multiple default placementbindings": (
        [binding("pb-initial", "pr-initial"), binding("pb-sub2", "pr-sub2"),
         binding("pb-extended", "pr-extended", action="enforce", sub_filter=RESTRICTED)],
        [P_INITIAL, P_SUB2, P_EXT],
        {0: "enforce", 1: "enforce", 2: "", 3: "", 4: "enforce", 5: "enforce"},
    ),
    "Multiple enforcement placementbindings with overlapped bound clusters": (
        [binding("pb-initial", "pr-initial"),
         binding("pb-sub", "pr-sub", action="enforce", sub_filter=RESTRICTED),
         binding("pb-extended", "pr-extended", action="enforce", sub_filter=RESTRICTED)],
        [P_INITIAL, P_SUB, P_EXT],
        {0: "enforce", 1: "enforce", 2: "", 3: ""},
    ),
}


@pytest.mark.parametrize("name", list(CASES))
def test_get_all_cluster_decisions(store, name):
    bindings, expected_placements, expected = CASES[name]
    propagator = Propagator(store)
    policy = Policy(name="test-policy", namespace="default")
    decisions, placements = propagator.get_all_cluster_decisions(policy, bindings)
    assert decisions == overrides(expected)
    key = lambda p: p.placement_binding  # noqa: E731
    assert sorted(placements, key=key) == sorted(expected_placements, key=key)
    assert [p.placement_binding for p in placements] == sorted(p.placement_binding for p in placements)


def test_no_unrestricted_decisions_gives_empty_map(store):
    propagator = Propagator(store)
    policy = Policy(name="test-policy", namespace="default")
    decisions, placements = propagator.get_all_cluster_decisions(
        policy, [binding("pb-sub", "pr-sub", sub_filter=RESTRICTED)]
    )
    assert decisions == {}
    assert placements == []


def test_invalid_placement_ref_raises(store):
    propagator = Propagator(store)
    bad = PlacementBinding(
        name="bad", namespace="default",
        placement_ref=PlacementSubject("other.io", "Thing", "x"),
        subjects=[Subject(POLICY_GROUP, POLICY_KIND, "test-policy")],
    )
    with pytest.raises(ValueError):
        propagator.get_policy_placement_decisions(Policy(name="test-policy", namespace="default"), bad)


def test_binding_for_other_policy_is_ignored(store):
    propagator = Propagator(store)
    decisions, placements = propagator.get_policy_placement_decisions(
        Policy(name="test-policy", namespace="default"),
        binding("pb", "pr-initial", policy_name="other"),
    )
    assert (decisions, placements) == ([], [])


def test_disabled_policy_gets_placements_but_no_decisions(store):
    propagator = Propagator(store)
    decisions, placements = propagator.get_policy_placement_decisions(
        Policy(name="test-policy", namespace="default", disabled=True),
        binding("pb-initial", "pr-initial"),
    )
    assert decisions == []
    assert placements == [P_INITIAL]


def test_missing_placement_rule_leaves_name_empty():
    propagator = Propagator(ObjectStore())
    decisions, placements = propagator.get_policy_placement_decisions(
        Policy(name="test-policy", namespace="default"), binding("pb", "missing")
    )
    assert decisions == []
    assert placements == [Placement(placement_binding="pb")]


def test_policy_set_subject(store):
    store.add(PolicySet(name="set1", namespace="default", policies=["test-policy"]))
    propagator = Propagator(store)
    pb = PlacementBinding(
        name="pb-set", namespace="default",
        placement_ref=PlacementSubject(APPS_GROUP, "PlacementRule", "pr-sub"),
        subjects=[Subject(POLICY_GROUP, POLICY_SET_KIND, "set1"),
                  Subject(POLICY_GROUP, POLICY_SET_KIND, "set1")],
    )
    decisions, placements = propagator.get_policy_placement_decisions(
        Policy(name="test-policy", namespace="default"), pb
    )
    assert decisions == CLUSTERS[0:2]
    assert placements == [
        Placement(placement_binding="pb-set", placement_rule="pr-sub", policy_set="set1")
    ]


def test_is_policy_in_policy_set(store):
    store.add(PolicySet(name="set1", namespace="default", policies=["a", "b"]))
    propagator = Propagator(store)
    assert propagator.is_policy_in_policy_set("b", "set1", "default") is True
    assert propagator.is_policy_in_policy_set("c", "set1", "default") is False
    assert propagator.is_policy_in_policy_set("a", "missing", "default") is False


def test_get_binding_decisions_from_cluster_placement():
    s = ObjectStore()
    s.add(ClusterPlacement(name="pl", namespace="default"))
    s.add(ClusterPlacementDecision(
        name="pl-1", namespace="default", labels={PLACEMENT_LABEL: "pl"},
        cluster_names=["managed1", "managed2"],
    ))
    s.add(ClusterPlacementDecision(
        name="other-1", namespace="default", labels={PLACEMENT_LABEL: "other"},
        cluster_names=["managed3"],
    ))
    pb = PlacementBinding(
        name="pb", namespace="default",
        placement_ref=PlacementSubject(CLUSTER_GROUP, "Placement", "pl"),
    )
    assert get_binding_decisions(s, pb) == [
        PlacementDecision("managed1", "managed1"),
        PlacementDecision("managed2", "managed2"),
    ]


def test_get_decisions(store):
    store.add(binding("pb-initial", "pr-initial"))
    propagator = Propagator(store)
    placements, decisions = propagator.get_decisions(Policy(name="test-policy", namespace="default"))
    assert decisions == set(CLUSTERS[0:4])
    assert placements == [P_INITIAL]


def test_policy_has_templates_and_configuration_policy():
    with_tpl = PolicyTemplate('{"kind": "ConfigurationPolicy", "x": "{{hub .ManagedClusterName hub}}"}')
    plain = PolicyTemplate('{"kind": "CertificatePolicy"}')
    assert policy_has_templates(Policy(name="p", policy_templates=[plain, with_tpl])) is True
    assert policy_has_templates(Policy(name="p", policy_templates=[plain])) is False
    assert is_configuration_policy(with_tpl) is True
    assert is_configuration_policy(plain) is False
    assert is_configuration_policy(PolicyTemplate("not json")) is False
    assert is_configuration_policy(PolicyTemplate("[1, 2]")) is False


def test_clean_up_orphaned_replicated():
    updates = queue.Queue()
    propagator = Propagator(ObjectStore(), replicated_updates=updates)
    policy = Policy(name="test-policy", namespace="default")
    propagator.clean_up_orphaned_replicated(
        policy,
        [CompliancePerClusterStatus("Compliant", "cluster1", "cluster1"),
         CompliancePerClusterStatus("Compliant", "cluster9", "cluster9")],
        {CLUSTERS[0]},
    )
    assert drain(updates) == [GenericEvent(name="default.test-policy", namespace="cluster9")]


def test_handle_root_policy(store):
    store.add(binding("pb-sub", "pr-sub"))
    store.add(Policy(name="default.test-policy", namespace="cluster1", compliance_state="Compliant"))
    store.add(Policy(name="default.test-policy", namespace="cluster2", compliance_state="Compliant"))
    store.add(Policy(
        name="test-policy", namespace="default",
        status=[CompliancePerClusterStatus("Compliant", "cluster9", "cluster9")],
    ))
    updates = queue.Queue()
    propagator = Propagator(store, EventRecorder(), updates)
    before = ROOT_HANDLER_MEASURE.count

    propagator.handle_root_policy(Policy(name="test-policy", namespace="default"))

    root = store.get(POLICY_KIND, "default", "test-policy")
    assert root.compliance_state == "Compliant"
    assert root.placement == [P_SUB]
    assert [s.cluster_name for s in root.status] == ["cluster1", "cluster2"]
    assert {(e.namespace, e.name) for e in drain(updates)} == {
        ("cluster1", "default.test-policy"),
        ("cluster2", "default.test-policy"),
        ("cluster9", "default.test-policy"),
    }
    assert ROOT_HANDLER_MEASURE.count == before + 1


def test_handle_disabled_root_policy_records_event(store):
    store.add(binding("pb-sub", "pr-sub"))
    store.add(Policy(name="default.test-policy", namespace="cluster1"))
    store.add(Policy(name="test-policy", namespace="default", disabled=True))
    recorder = EventRecorder()
    updates = queue.Queue()
    propagator = Propagator(store, recorder, updates)

    propagator.handle_root_policy(store.get(POLICY_KIND, "default", "test-policy"))

    assert [e.message for e in recorder.events] == ["Policy default/test-policy was disabled"]
    root = store.get(POLICY_KIND, "default", "test-policy")
    assert root.status == []
    assert root.compliance_state == ""
    assert root.placement == [P_SUB]
    assert drain(updates) == [GenericEvent(name="default.test-policy", namespace="cluster1")]