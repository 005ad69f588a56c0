"""Node removal and node maintenance handling for CSI-managed nodes."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .deployment import CSI_NAME, Deployment
from .kube import Cluster, Resource

_log = logging.getLogger(__name__)

NODE_OPERATIONAL_TAINT_KEY = "node.dell.com/drain"

CSIBM_NODE_KIND = "CSIBMNode"
DRIVE_KIND = "Drive"
AVAILABLE_CAPACITY_KIND = "AvailableCapacity"
LVG_KIND = "LogicalVolumeGroup"
VOLUME_KIND = "Volume"

NODE_HOSTNAME_ADDRESS = "Hostname"
NODE_DAEMONSET_POD_LABELS = {"name": f"{CSI_NAME}-node"}
CSI_APP_LABELS = {"app": CSI_NAME}

_CLUSTER_ERRORS = (LookupError, ValueError)


@dataclass(frozen=True)
class Taint:
    """A node taint: key, value and effect."""

    key: str
    value: str = ""
    effect: str = ""

    def to_dict(self) -> dict[str, str]:
        """The taint in manifest form."""
        return {"key": self.key, "value": self.value, "effect": self.effect}

    def matches(self, taint: Mapping[str, Any] | Taint) -> bool:
        """True if ``taint`` has the same key, value and effect."""
        if isinstance(taint, Taint):
            return taint == self
        return (
            taint.get("key", "") == self.key
            and taint.get("value", "") == self.value
            and taint.get("effect", "") == self.effect
        )


NODE_MAINTENANCE_TAINT = Taint(NODE_OPERATIONAL_TAINT_KEY, "planned-downtime", "NoSchedule")
NODE_REMOVAL_TAINT = Taint(NODE_OPERATIONAL_TAINT_KEY, "drain", "NoSchedule")


def has_taint(node: Resource | None, taint: Taint) -> bool:
    """True if the Kubernetes node carries ``taint``."""
    if node is None:
        return False
    return any(taint.matches(existing) for existing in node.spec.get("taints") or [])


def get_map_is_nodes_tainted(nodes: Iterable[Resource], taint: Taint) -> dict[str, bool]:
    """Map every node name to whether the node carries ``taint``."""
    return {node.name: has_taint(node, taint) for node in nodes}


def _node_name(csibmnode: Resource) -> str:
    return (csibmnode.spec.get("addresses") or {}).get(NODE_HOSTNAME_ADDRESS, "")


def _raise_joined(errors: list[str]) -> None:
    if errors:
        raise RuntimeError("\n".join(errors))


class NodeOperationsController:
    """Cleans up CSI resources of removed nodes and evicts pods from nodes in maintenance."""

    def __init__(self, cluster: Cluster, log: logging.Logger | None = None) -> None:
        self.cluster = cluster
        self.log = log or _log

    def reconcile(self, csi: Deployment | None = None) -> None:
        """Run node removal and maintenance handling; raise RuntimeError on failures."""
        node_selector = csi.spec.node_selector if csi is not None else None
        try:
            label_selector = {node_selector.key: node_selector.value} if node_selector else None
            nodes = self.cluster.list("Node", label_selector=label_selector)
            csibmnodes = self.cluster.list(CSIBM_NODE_KIND)
        except _CLUSTER_ERRORS as err:
            self.log.debug("Skipping node operations: %s", err)
            return

        errors = []
        for step in (
            lambda: self.handle_node_removal(csibmnodes, nodes),
            lambda: self.handle_node_maintenance(nodes),
        ):
            try:
                step()
            except RuntimeError as err:
                errors.append(str(err))
        _raise_joined(errors)

    def handle_node_removal(self, csibmnodes: Iterable[Resource], nodes: Iterable[Resource]) -> None:
        """Sync the removal label with the node taint and remove nodes that are gone."""
        errors = []
        removing = []
        tainted = get_map_is_nodes_tainted(nodes, NODE_REMOVAL_TAINT)

        for csibmnode in csibmnodes:
            has_label = csibmnode.metadata.labels.get(NODE_REMOVAL_TAINT.key) == NODE_REMOVAL_TAINT.value
            node_name = _node_name(csibmnode)
            has_node = node_name in tainted
            is_tainted = tainted.get(node_name, False)

            if has_label and not has_node:
                removing.append(csibmnode)
                continue

            need_update = False
            if has_node and not has_label and is_tainted:
                csibmnode.metadata.labels[NODE_REMOVAL_TAINT.key] = NODE_REMOVAL_TAINT.value
                self.log.info(
                    "Csibmnode %s has labeled with %s=%s",
                    csibmnode.name,
                    NODE_REMOVAL_TAINT.key,
                    NODE_REMOVAL_TAINT.value,
                )
                need_update = True
            if has_node and has_label and not is_tainted:
                csibmnode.metadata.labels.pop(NODE_REMOVAL_TAINT.key, None)
                self.log.info("Csibmnode %s has unlabeled (%s)", csibmnode.name, NODE_REMOVAL_TAINT.key)
                need_update = True

            if need_update:
                try:
                    self.cluster.update(csibmnode)
                except _CLUSTER_ERRORS as err:
                    self.log.error("Failed to update csibmnode: %s", err)
                    errors.append(str(err))

        _raise_joined(errors)
        self.remove_nodes(removing)

    def remove_nodes(self, csibmnodes: Iterable[Resource]) -> None:
        """Delete CSI resources of nodes whose node pod is no longer running."""
        csibmnodes = list(csibmnodes)
        if csibmnodes:
            self.log.debug("Starting Node Removal, node count: %d", len(csibmnodes))

        errors = []
        for csibmnode in csibmnodes:
            node_name = _node_name(csibmnode)
            try:
                running = self._daemonset_pod_running(node_name)
            except _CLUSTER_ERRORS as err:
                self.log.error("Failed to check running pods on node: %s", err)
                errors.append(str(err))
                continue
            if running:
                message = f"csi-baremetal-node pod is still running on node {node_name}"
                self.log.error("Failed to clean related resources: %s", message)
                errors.append(message)
                continue
            try:
                self.delete_csi_resources(csibmnode)
            except (RuntimeError, *_CLUSTER_ERRORS) as err:
                self.log.error("Failed to clean related resources: %s", err)
                errors.append(str(err))
        _raise_joined(errors)

    def _daemonset_pod_running(self, node_name: str) -> bool:
        pods = self.cluster.list(
            "Pod",
            label_selector=NODE_DAEMONSET_POD_LABELS,
            field_selector={"spec.nodeName": node_name},
        )
        for pod in pods:
            self.log.info("%s is still running", pod.name)
        return bool(pods)

    def handle_node_maintenance(self, nodes: Iterable[Resource]) -> None:
        """Evict non-daemonset CSI pods from nodes tainted for maintenance."""
        errors = []
        started = False
        for node in nodes:
            if not has_taint(node, NODE_MAINTENANCE_TAINT):
                continue
            if not started:
                self.log.debug("Starting Node Maintenance")
                started = True
            try:
                self._delete_csi_pods(node.name)
            except (RuntimeError, *_CLUSTER_ERRORS) as err:
                errors.append(str(err))
        _raise_joined(errors)

    def _delete_csi_pods(self, node_name: str) -> None:
        self.log.info("Starting to delete CSI pods on node %s", node_name)
        pods = self.cluster.list(
            "Pod", label_selector=CSI_APP_LABELS, field_selector={"spec.nodeName": node_name}
        )
        if not pods:
            self.log.info("There are no CSI pods on the node %s", node_name)

        errors = []
        for pod in pods:
            owners = pod.metadata.owner_references
            if len(owners) > 1:
                self.log.info("Skip deleting pod %s, pod.OwnerReferences number more than one.", pod.name)
                continue
            if owners and owners[0].get("kind") == "DaemonSet":
                self.log.info("Skip deleting DaemonSet pod %s", pod.name)
                continue
            self.log.info("Going to remove %s", pod.name)
            try:
                self.cluster.delete(pod)
            except _CLUSTER_ERRORS as err:
                errors.append(str(err))
        _raise_joined(errors)

    def delete_csi_resources(self, csibmnode: Resource) -> None:
        """Delete drives, capacities, volume groups and volumes of a node, then the node."""
        node_id = csibmnode.spec.get("uuid", "")
        errors = []
        for kind, id_field, object_type, patch_finalizer in (
            (DRIVE_KIND, "nodeId", "drive", False),
            (AVAILABLE_CAPACITY_KIND, "nodeId", "ac", False),
            (LVG_KIND, "node", "lvg", True),
            (VOLUME_KIND, "nodeId", "volume", True),
        ):
            try:
                self._delete_owned(kind, id_field, node_id, object_type, patch_finalizer)
            except (RuntimeError, *_CLUSTER_ERRORS) as err:
                errors.append(str(err))

        # Keep the node object on failure so the next reconcile retries.
        _raise_joined(errors)
        self._delete_object(csibmnode, "csibmnode", patch_finalizer=False)

    def _delete_owned(
        self, kind: str, id_field: str, node_id: str, object_type: str, patch_finalizer: bool
    ) -> None:
        errors = []
        for obj in self.cluster.list(kind):
            if obj.spec.get(id_field, "") != node_id:
                continue
            try:
                self._delete_object(obj, object_type, patch_finalizer)
            except RuntimeError as err:
                errors.append(str(err))
        _raise_joined(errors)

    def _delete_object(self, obj: Resource, object_type: str, patch_finalizer: bool) -> None:
        errors = []
        if patch_finalizer and obj.metadata.finalizers:
            obj.metadata.finalizers = []
            try:
                self.cluster.update(obj)
            except _CLUSTER_ERRORS as err:
                self.log.error("Failed to update obj, type: %s, name: %s: %s", object_type, obj.name, err)
                errors.append(str(err))
            try:
                obj = self.cluster.get(obj.kind, obj.name, obj.namespace)
            except _CLUSTER_ERRORS as err:
                self.log.error("Failed to get obj, type: %s, name: %s: %s", object_type, obj.name, err)
                errors.append(str(err))

        try:
            self.cluster.delete(obj)
        except _CLUSTER_ERRORS as err:
            self.log.error("Failed to delete obj, type: %s, name: %s: %s", object_type, obj.name, err)
            errors.append(str(err))
        _raise_joined(errors)