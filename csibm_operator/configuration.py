"""Per-platform settings of the scheduler patcher and its daemonset manifest."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from typing import Any

from .deployment import (
    CSI_NAME,
    Deployment,
    Image,
    Platform,
    ResourceRequirements,
    SecurityContext,
    construct_full_image_name,
)
from .kube import ObjectMeta, Resource

RKE2_MANIFESTS_FOLDER = "/var/lib/rancher/rke2/agent/pod-manifests"
VANILLA_MANIFESTS_FOLDER = "/etc/kubernetes/manifests"

RKE2_KUBECONFIG = "/var/lib/rancher/rke2/server/cred/scheduler.kubeconfig"
VANILLA_KUBECONFIG = "/etc/kubernetes/scheduler.conf"

SCHEDULER_FOLDER = "scheduler"

POLICY_FILE = "policy.yaml"
CONFIG_FILE = "config.yaml"
CONFIG19_FILE = "config-19.yaml"
CONFIG23_FILE = "config-23.yaml"

POLICY_PATH = f"{SCHEDULER_FOLDER}/{POLICY_FILE}"
CONFIG_PATH = f"{SCHEDULER_FOLDER}/{CONFIG_FILE}"
CONFIG19_PATH = f"{SCHEDULER_FOLDER}/{CONFIG19_FILE}"
CONFIG23_PATH = f"{SCHEDULER_FOLDER}/{CONFIG23_FILE}"

PATCHER = "se-patcher"
PATCHER_NAME = f"{CSI_NAME}-{PATCHER}"
PATCHER_CONTAINER_NAME = "schedulerpatcher"

KUBERNETES_MANIFESTS_VOLUME = "kubernetes-manifests"
KUBERNETES_SCHEDULER_VOLUME = "kubernetes-scheduler"
CONFIGURATION_PATH = "/config"

MASTER_NODE_LABEL = "node-role.kubernetes.io/master"
CONFIG_MAP_DEFAULT_MODE = 0o644

_PLATFORM_LOCATIONS = {
    Platform.VANILLA: (VANILLA_MANIFESTS_FOLDER, VANILLA_KUBECONFIG),
    Platform.RKE: (RKE2_MANIFESTS_FOLDER, RKE2_KUBECONFIG),
}


def _label_app_map() -> dict[str, str]:
    return {"app": CSI_NAME}


def _selector_map(name: str) -> dict[str, str]:
    return {"name": name}


def _label_map(name: str, component: str) -> dict[str, str]:
    return {**_label_app_map(), **_selector_map(name), "component": component}


def _image_pull_secrets(secret: str) -> list[dict[str, str]]:
    return [{"name": secret}] if secret else []


@dataclass
class PatcherConfiguration:
    """Everything the patcher daemonset needs for one platform."""

    ns: str = ""
    image: Image | None = None
    global_registry: str = ""
    registry_secret: str = ""
    pull_policy: str = ""
    loglevel: str = ""
    interval: int = 0
    restore_on_shutdown: bool = False
    resources: ResourceRequirements | None = None
    scheduler_security_context: SecurityContext | None = None

    platform: str = ""
    target_config: str = ""
    target_policy: str = ""
    target_config19: str = ""
    target_config23: str = ""
    scheduler_folder: str = ""
    manifests_folder: str = ""
    config_map_name: str = ""
    config_folder: str = ""
    kubeconfig: str = ""
    service_account: str = ""

    def daemonset(self) -> Resource:
        """The patcher daemonset, running on every master node."""
        return Resource(
            kind="DaemonSet",
            metadata=ObjectMeta(name=PATCHER_NAME, namespace=self.ns, labels=_label_app_map()),
            spec={
                "selector": {"matchLabels": _selector_map(PATCHER_NAME)},
                "template": {
                    "metadata": {"labels": _label_map(PATCHER_NAME, PATCHER)},
                    "spec": {
                        "containers": self.containers(),
                        "volumes": self.volumes(),
                        "restartPolicy": "Always",
                        "dnsPolicy": "ClusterFirst",
                        "serviceAccountName": self.service_account,
                        "serviceAccount": self.service_account,
                        "securityContext": {},
                        "imagePullSecrets": _image_pull_secrets(self.registry_secret),
                        "schedulerName": "default-scheduler",
                        "tolerations": [
                            {"key": "CriticalAddonsOnly", "operator": "Exists"},
                            {"key": MASTER_NODE_LABEL, "effect": "NoSchedule"},
                        ],
                        "affinity": {
                            "nodeAffinity": {
                                "requiredDuringSchedulingIgnoredDuringExecution": {
                                    "nodeSelectorTerms": [
                                        {
                                            "matchExpressions": [
                                                {"key": MASTER_NODE_LABEL, "operator": "Exists"}
                                            ]
                                        }
                                    ]
                                }
                            }
                        },
                    },
                },
            },
        )

    def containers(self) -> list[dict[str, Any]]:
        """The patcher container that rewrites the kube-scheduler manifests."""
        return [
            {
                "name": PATCHER_CONTAINER_NAME,
                "image": construct_full_image_name(self.image, self.global_registry),
                "imagePullPolicy": self.pull_policy,
                "command": ["python3", "-u", "main.py"],
                "args": [
                    f"--loglevel={self.loglevel}",
                    "--restore",
                    f"--interval={self.interval}",
                    f"--target-config-path={self.target_config}",
                    f"--target-policy-path={self.target_policy}",
                    f"--source-config-path={self.config_folder}/{CONFIG_FILE}",
                    f"--source-policy-path={self.config_folder}/{POLICY_FILE}",
                    f"--source_config_19_path={CONFIGURATION_PATH}/{CONFIG19_FILE}",
                    f"--target_config_19_path={self.target_config19}",
                    f"--source_config_23_path={CONFIGURATION_PATH}/{CONFIG23_FILE}",
                    f"--target_config_23_path={self.target_config23}",
                    f"--backup-path={self.scheduler_folder}",
                    f"--platform={self.platform}",
                ],
                "volumeMounts": [
                    {"name": self.config_map_name, "mountPath": CONFIGURATION_PATH, "readOnly": True},
                    {"name": KUBERNETES_SCHEDULER_VOLUME, "mountPath": self.scheduler_folder},
                    {"name": KUBERNETES_MANIFESTS_VOLUME, "mountPath": self.manifests_folder},
                ],
                "resources": self.resources.to_manifest() if self.resources else {},
                "securityContext": self.security_context(),
            }
        ]

    def volumes(self) -> list[dict[str, Any]]:
        """The config map with the new configs and the host scheduler folders."""
        return [
            {
                "name": self.config_map_name,
                "configMap": {
                    "name": self.config_map_name,
                    "defaultMode": CONFIG_MAP_DEFAULT_MODE,
                    "optional": True,
                },
            },
            {
                "name": KUBERNETES_SCHEDULER_VOLUME,
                "hostPath": {"path": self.scheduler_folder, "type": ""},
            },
            {
                "name": KUBERNETES_MANIFESTS_VOLUME,
                "hostPath": {"path": self.manifests_folder, "type": ""},
            },
        ]

    def security_context(self) -> dict[str, Any] | None:
        """The container security context, or None when not enabled."""
        context = self.scheduler_security_context
        if context is None or not context.enable:
            return None
        return {"privileged": context.privileged}


def new_patcher_configuration(csi: Deployment) -> PatcherConfiguration:
    """Build the patcher settings; raise ValueError on unsupported platforms."""
    try:
        platform = Platform(csi.spec.platform)
    except ValueError:
        platform = None
    locations = _PLATFORM_LOCATIONS.get(platform) if platform is not None else None
    if platform is None or locations is None:
        raise ValueError(f"{csi.spec.platform} platform is not supported platform for the patcher")
    manifests_folder, kubeconfig = locations

    scheduler = csi.spec.scheduler
    patcher = scheduler.patcher
    return PatcherConfiguration(
        ns=csi.namespace,
        image=patcher.image,
        global_registry=csi.spec.global_registry,
        registry_secret=csi.spec.registry_secret,
        pull_policy=csi.spec.pull_policy,
        loglevel=scheduler.log.level,
        interval=patcher.interval,
        restore_on_shutdown=patcher.restore_on_shutdown,
        resources=patcher.resources,
        scheduler_security_context=scheduler.security_context,
        platform=platform.value,
        target_config=posixpath.join(manifests_folder, CONFIG_PATH),
        target_policy=posixpath.join(manifests_folder, POLICY_PATH),
        target_config19=posixpath.join(manifests_folder, CONFIG19_PATH),
        target_config23=posixpath.join(manifests_folder, CONFIG23_PATH),
        scheduler_folder=posixpath.join(manifests_folder, SCHEDULER_FOLDER),
        manifests_folder=manifests_folder,
        config_map_name=patcher.config_map_name,
        config_folder=CONFIGURATION_PATH,
        kubeconfig=kubeconfig,
        service_account=scheduler.service_account,
    )