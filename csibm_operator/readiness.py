"""Tracking whether every kube-scheduler restarted with the extender config."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import yaml

from .deployment import Deployment, Platform
from .kube import Cluster, ObjectMeta, Resource

EXTENDER_CONFIG_MAP_NAME = "extender-readiness"
EXTENDER_CONFIG_MAP_PATH = "/status"
EXTENDER_CONFIG_MAP_FILE = "nodes.yaml"

K8S_MASTER_NODE_LABEL_KEY = "node-role.kubernetes.io/master"

READINESS_CHECK_INTERVAL_FOR_SECONDARY_SCHEDULER = 10.0
READINESS_MAX_RETRIES_FOR_SECONDARY_SCHEDULER = 12

OPENSHIFT_CONFIG_NAMESPACE = "openshift-config"
OPENSHIFT_SCHEDULER_POLICY_CONFIG_MAP_NAME = "scheduler-policy"
OPENSHIFT_SECONDARY_SCHEDULER_LABEL_VALUE = "secondary-scheduler"
OPENSHIFT_SECONDARY_SCHEDULER_NAMESPACE = "openshift-secondary-scheduler-operator"
CSI_OPENSHIFT_SECONDARY_SCHEDULER_CONFIG_MAP_NAME = "csi-baremetal-scheduler-config"

_OPENSHIFT_KUBE_SCHEDULER_LABEL = ("app", "openshift-kube-scheduler")
_VANILLA_KUBE_SCHEDULER_LABEL = ("component", "kube-scheduler")


def _unsupported(platform: str) -> ValueError:
    return ValueError(f"{platform} platform is not supported platform for the patcher")


@dataclass
class ExtenderReadinessOptions:
    """Which config map to watch and where to publish readiness statuses."""

    watched_config_map_name: str
    watched_config_map_namespace: str
    readiness_config_map_name: str
    readiness_config_map_namespace: str
    readiness_config_map_file: str
    kube_scheduler_label: str


@dataclass
class ReadinessStatus:
    """Restart status of one kube-scheduler."""

    node_name: str = ""
    kube_scheduler: str = ""
    restarted: bool = False


@dataclass
class ReadinessStatusList:
    """Restart statuses of all kube-schedulers in the cluster."""

    items: list[ReadinessStatus] = field(default_factory=list)

    def to_yaml(self) -> str:
        """Serialize as the ``nodes:`` document the extender reads."""
        document = {
            "nodes": [
                {
                    "node_name": status.node_name,
                    "kube_scheduler": status.kube_scheduler,
                    "restarted": status.restarted,
                }
                for status in self.items
            ]
        }
        return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)

    @classmethod
    def from_yaml(cls, text: str) -> ReadinessStatusList:
        """Parse a document written by ``to_yaml``."""
        document = yaml.safe_load(text) or {}
        if not isinstance(document, Mapping):
            raise ValueError("readiness document must be a mapping")
        return cls(
            items=[
                ReadinessStatus(
                    node_name=str(raw.get("node_name", "") or ""),
                    kube_scheduler=str(raw.get("kube_scheduler", "") or ""),
                    restarted=bool(raw.get("restarted", False)),
                )
                for raw in document.get("nodes") or []
            ]
        )


def choose_kube_scheduler_label(csi: Deployment) -> tuple[str, str]:
    """The (key, value) label that identifies kube-scheduler pods."""
    platform = csi.spec.platform
    if platform == Platform.OPENSHIFT:
        return _OPENSHIFT_KUBE_SCHEDULER_LABEL
    if platform in (Platform.VANILLA, Platform.RKE):
        return _VANILLA_KUBE_SCHEDULER_LABEL
    raise _unsupported(platform)


def new_extender_readiness_options(
    csi: Deployment, use_openshift_secondary_scheduler: bool = False
) -> ExtenderReadinessOptions:
    """Build readiness options for the deployment's platform."""
    platform = csi.spec.platform
    if platform == Platform.OPENSHIFT:
        if use_openshift_secondary_scheduler:
            watched_name = CSI_OPENSHIFT_SECONDARY_SCHEDULER_CONFIG_MAP_NAME
            watched_namespace = OPENSHIFT_SECONDARY_SCHEDULER_NAMESPACE
        else:
            watched_name = OPENSHIFT_SCHEDULER_POLICY_CONFIG_MAP_NAME
            watched_namespace = OPENSHIFT_CONFIG_NAMESPACE
    elif platform in (Platform.VANILLA, Platform.RKE):
        watched_name = csi.spec.scheduler.patcher.config_map_name
        watched_namespace = csi.namespace
    else:
        raise _unsupported(platform)

    label_key, label_value = choose_kube_scheduler_label(csi)
    if use_openshift_secondary_scheduler:
        label_value = OPENSHIFT_SECONDARY_SCHEDULER_LABEL_VALUE

    return ExtenderReadinessOptions(
        watched_config_map_name=watched_name,
        watched_config_map_namespace=watched_namespace,
        readiness_config_map_name=EXTENDER_CONFIG_MAP_NAME,
        readiness_config_map_namespace=csi.namespace,
        readiness_config_map_file=EXTENDER_CONFIG_MAP_FILE,
        kube_scheduler_label=f"{label_key}={label_value}",
    )


def is_platform_supported(platform: str) -> bool:
    """True for the platforms the patcher can handle."""
    return platform in (Platform.OPENSHIFT, Platform.VANILLA, Platform.RKE)


def is_patching_enabled(csi: Deployment) -> bool:
    """True if patching is switched on and the platform is supported."""
    return csi.spec.scheduler.patcher.enable and is_platform_supported(csi.spec.platform)


def _restarted_after(pod: Resource, cm_creation_time: datetime) -> bool:
    container_statuses = pod.status.get("containerStatuses") or []
    if not container_statuses:
        return False
    state: Mapping[str, Any] = container_statuses[0].get("state") or {}
    running = state.get("running")
    if running is None:
        return False
    started_at = running.get("startedAt")
    if started_at is None:
        return False
    return not started_at < cm_creation_time


def collect_readiness_statuses(
    cluster: Cluster, kube_scheduler_label: str, cm_creation_time: datetime
) -> ReadinessStatusList:
    """Check every kube-scheduler pod for a restart after the config change."""
    return ReadinessStatusList(
        items=[
            ReadinessStatus(
                node_name=pod.spec.get("nodeName", ""),
                kube_scheduler=pod.name,
                restarted=_restarted_after(pod, cm_creation_time),
            )
            for pod in cluster.list("Pod", label_selector=kube_scheduler_label)
        ]
    )


def is_all_ready(statuses: ReadinessStatusList) -> bool:
    """True if every kube-scheduler has restarted."""
    return all(status.restarted for status in statuses.items)


def create_readiness_config_map(
    options: ExtenderReadinessOptions, statuses: ReadinessStatusList
) -> Resource:
    """The config map that publishes readiness statuses to the extender."""
    return Resource(
        kind="ConfigMap",
        metadata=ObjectMeta(
            name=options.readiness_config_map_name,
            namespace=options.readiness_config_map_namespace,
        ),
        data={options.readiness_config_map_file: statuses.to_yaml()},
    )