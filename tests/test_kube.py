from datetime import datetime, timezone

import pytest

from csibm_operator.kube import (
    AlreadyExistsError,
    Cluster,
    NotFoundError,
    ObjectMeta,
    Resource,
    parse_label_selector,
    set_controller_reference,
)


def _pod(name, namespace="ns", labels=None, node=""):
    return Resource(
        kind="Pod",
        metadata=ObjectMeta(name=name, namespace=namespace, labels=dict(labels or {})),
        spec={"nodeName": node},
    )


def _names(objects):
    return [obj.metadata.name for obj in objects]


def test_create_and_get_round_trip():
    cluster = Cluster()
    created = cluster.create(_pod("a", labels={"app": "x"}))
    got = cluster.get("Pod", "a", "ns")
    assert got.metadata.labels == {"app": "x"}
    assert got.metadata.uid == created.metadata.uid
    assert len(got.metadata.uid) > 0
    assert isinstance(got.metadata.creation_timestamp, datetime)


def test_create_keeps_given_creation_timestamp():
    stamp = datetime(2020, 1, 1, tzinfo=timezone.utc)
    pod = _pod("a")
    pod.metadata.creation_timestamp = stamp
    cluster = Cluster([pod])
    assert cluster.get("Pod", "a", "ns").metadata.creation_timestamp == stamp


def test_create_duplicate_raises():
    cluster = Cluster([_pod("a")])
    with pytest.raises(AlreadyExistsError):
        cluster.create(_pod("a"))


def test_create_without_name_raises():
    with pytest.raises(ValueError):
        Cluster().create(_pod(""))


def test_get_missing_raises_not_found():
    with pytest.raises(NotFoundError) as info:
        Cluster().get("Pod", "missing", "ns")
    assert info.value.kind == "Pod"
    assert info.value.name == "missing"


def test_get_returns_copy():
    cluster = Cluster([_pod("a", labels={"app": "x"})])
    got = cluster.get("Pod", "a", "ns")
    got.metadata.labels["app"] = "changed"
    assert cluster.get("Pod", "a", "ns").metadata.labels == {"app": "x"}


def test_list_filters_by_kind_and_namespace():
    node = Resource(kind="Node", metadata=ObjectMeta(name="n"))
    cluster = Cluster([_pod("a", "one"), _pod("b", "two"), node])
    assert _names(cluster.list("Pod")) == ["a", "b"]
    assert _names(cluster.list("Pod", "")) == ["a", "b"]
    assert _names(cluster.list("Pod", "two")) == ["b"]
    assert _names(cluster.list("Node")) == ["n"]


def test_list_label_selector_string_and_mapping():
    cluster = Cluster([_pod("a", labels={"app": "x"}), _pod("b", labels={"app": "y"})])
    assert _names(cluster.list("Pod", label_selector="app=x")) == ["a"]
    assert _names(cluster.list("Pod", label_selector="app==y")) == ["b"]
    assert _names(cluster.list("Pod", label_selector={"app": "y"})) == ["b"]
    assert _names(cluster.list("Pod", label_selector="")) == ["a", "b"]


def test_list_label_selector_negation_and_existence():
    cluster = Cluster(
        [_pod("a", labels={"app": "x", "role": "r"}), _pod("b", labels={"app": "y"}), _pod("c")]
    )
    assert _names(cluster.list("Pod", label_selector="app!=x")) == ["b", "c"]
    assert _names(cluster.list("Pod", label_selector="role")) == ["a"]
    assert _names(cluster.list("Pod", label_selector="!role")) == ["b", "c"]
    assert _names(cluster.list("Pod", label_selector="app,!role")) == ["b"]


def test_list_field_selector():
    cluster = Cluster([_pod("a", node="node-1"), _pod("b", node="node-2")])
    assert _names(cluster.list("Pod", field_selector={"spec.nodeName": "node-2"})) == ["b"]
    assert _names(cluster.list("Pod", field_selector={"metadata.name": "a"})) == ["a"]
    assert cluster.list("Pod", field_selector={"spec.nodeName": "node-3"}) == []


def test_update_preserves_identity():
    cluster = Cluster([_pod("a")])
    original = cluster.get("Pod", "a", "ns")
    changed = _pod("a", labels={"app": "z"})
    cluster.update(changed)
    got = cluster.get("Pod", "a", "ns")
    assert got.metadata.labels == {"app": "z"}
    assert got.metadata.uid == original.metadata.uid
    assert got.metadata.creation_timestamp == original.metadata.creation_timestamp


def test_update_missing_raises():
    with pytest.raises(NotFoundError):
        Cluster().update(_pod("a"))


def test_delete_and_delete_by_name():
    cluster = Cluster([_pod("a"), _pod("b")])
    cluster.delete(_pod("a"))
    cluster.delete_by_name("Pod", "b", "ns")
    assert cluster.list("Pod") == []
    with pytest.raises(NotFoundError):
        cluster.delete_by_name("Pod", "b", "ns")


def test_apply_creates_then_updates():
    cluster = Cluster()
    first = cluster.apply(_pod("a", labels={"app": "x"}))
    second = cluster.apply(_pod("a", labels={"app": "y"}))
    assert second.metadata.uid == first.metadata.uid
    assert cluster.get("Pod", "a", "ns").metadata.labels == {"app": "y"}
    assert len(cluster.list("Pod")) == 1


def test_parse_label_selector_sizes_and_errors():
    assert parse_label_selector(None) == []
    assert parse_label_selector(" , ") == []
    assert len(parse_label_selector("a=b, c!=d, e")) == 3
    with pytest.raises(ValueError):
        parse_label_selector("=value")


def test_server_version_is_kept():
    cluster = Cluster(server_version=("1", "25"))
    assert cluster.server_version == ("1", "25")


def test_set_controller_reference_adds_single_controller():
    owner = Resource(kind="Deployment", metadata=ObjectMeta(name="csi", namespace="ns", uid="u1"))
    obj = _pod("a")
    set_controller_reference(owner, obj)
    set_controller_reference(owner, obj)
    assert len(obj.metadata.owner_references) == 1
    reference = obj.metadata.owner_references[0]
    assert reference["kind"] == "Deployment"
    assert reference["name"] == "csi"
    assert reference["uid"] == "u1"
    assert reference["controller"] is True


def test_set_controller_reference_rejects_other_controller():
    first = Resource(kind="Deployment", metadata=ObjectMeta(name="one", namespace="ns"))
    second = Resource(kind="Deployment", metadata=ObjectMeta(name="two", namespace="ns"))
    obj = _pod("a")
    set_controller_reference(first, obj)
    with pytest.raises(ValueError):
        set_controller_reference(second, obj)


def test_set_controller_reference_rejects_cross_namespace():
    owner = Resource(kind="Deployment", metadata=ObjectMeta(name="csi", namespace="other"))
    obj = _pod("a")
    with pytest.raises(ValueError, match="cross-namespace"):
        set_controller_reference(owner, obj)
    assert obj.metadata.owner_references == []