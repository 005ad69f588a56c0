"""OpenShift scheduler configuration documents and resource builders."""

from __future__ import annotations

import logging

from .deployment import CSI_NAME, Deployment, Image, construct_full_image_name
from .kube import ObjectMeta, Resource
from .readiness import (
    CSI_OPENSHIFT_SECONDARY_SCHEDULER_CONFIG_MAP_NAME,
    OPENSHIFT_CONFIG_NAMESPACE,
    OPENSHIFT_SCHEDULER_POLICY_CONFIG_MAP_NAME,
    OPENSHIFT_SECONDARY_SCHEDULER_NAMESPACE,
)

_log = logging.getLogger(__name__)

OPENSHIFT_POLICY_FILE = "policy.cfg"
OPENSHIFT_SCHEDULER_RESOURCE_NAME = "cluster"
OPENSHIFT_SECONDARY_SCHEDULER_DATA_KEY = "config.yaml"

OPENSHIFT_SECONDARY_SCHEDULER_DEFAULT_IMAGE_NAME = "kube-scheduler"
OPENSHIFT_SECONDARY_SCHEDULER_DEFAULT_IMAGE_TAG = "v0.26.7"

CSI_EXTENDER_NAME = f"{CSI_NAME}-se"

EXTENDER_FILTER_URL_FORMAT = "http://{ip}:{port}{pattern}"
EXTENDER_FILTER_PATTERN = "/filter"

EXISTING_3RD_PARTY_SECONDARY_SCHEDULER_ERR_MSG = "existing 3rd-party secondary scheduler"

GET_SCHEDULER_EXTENDER_IP_INTERVAL = 10.0
GET_SCHEDULER_EXTENDER_IP_MAX_RETRIES = 12

SELECTED_SCHEDULER_EXTENDER_IP_CONFIG_MAP_NAME = "selected-scheduler-extender-ip"
SELECTED_SCHEDULER_EXTENDER_IP_CONFIG_MAP_DATA_KEY = "selectedSchedulerExtenderIP"

_SECONDARY_SCHEDULER_TEMPLATE = """apiVersion: kubescheduler.config.k8s.io/v1beta3
kind: KubeSchedulerConfiguration
leaderElection:
  leaderElect: false
profiles:
  - schedulerName: csi-baremetal-scheduler
extenders:
  - urlPrefix: "http://{ip}:{port}"
    filterVerb: filter
    prioritizeVerb: prioritize
    weight: 1
    enableHTTPS: false
    nodeCacheCapable: false
    ignorable: true"""

_POLICY_TEMPLATE = """{{
   "kind" : "Policy",
   "apiVersion" : "v1",
   "extenders": [
        {{
            "urlPrefix": "http://127.0.0.1:{port}",
            "filterVerb": "filter",
            "prioritizeVerb": "prioritize",
            "weight": 1,
            "enableHttps": false,
            "nodeCacheCapable": false,
            "ignorable": true
        }}
    ]
}}"""


class SecondarySchedulerConflictError(RuntimeError):
    """Raised when a secondary scheduler not managed by CSI already exists."""

    def __init__(self) -> None:
        super().__init__(EXISTING_3RD_PARTY_SECONDARY_SCHEDULER_ERR_MSG)


def secondary_scheduler_config(extender_ip: str, extender_port: str) -> str:
    """KubeSchedulerConfiguration for the secondary scheduler, calling the extender."""
    return _SECONDARY_SCHEDULER_TEMPLATE.format(ip=extender_ip, port=extender_port)


def scheduler_policy_config(extender_port: str) -> str:
    """Scheduler policy for the default OpenShift scheduler, calling a local extender."""
    return _POLICY_TEMPLATE.format(port=extender_port)


def create_openshift_config_map(config: str, use_openshift_secondary_scheduler: bool) -> Resource:
    """The config map that carries the scheduler configuration on OpenShift."""
    if use_openshift_secondary_scheduler:
        name = CSI_OPENSHIFT_SECONDARY_SCHEDULER_CONFIG_MAP_NAME
        namespace = OPENSHIFT_SECONDARY_SCHEDULER_NAMESPACE
        data_key = OPENSHIFT_SECONDARY_SCHEDULER_DATA_KEY
    else:
        name = OPENSHIFT_SCHEDULER_POLICY_CONFIG_MAP_NAME
        namespace = OPENSHIFT_CONFIG_NAMESPACE
        data_key = OPENSHIFT_POLICY_FILE
    return Resource(
        kind="ConfigMap",
        metadata=ObjectMeta(name=name, namespace=namespace),
        data={data_key: config},
    )


def create_selected_extender_ip_config_map(extender_ip: str, csi: Deployment) -> Resource:
    """The config map remembering which scheduler extender was selected."""
    return Resource(
        kind="ConfigMap",
        metadata=ObjectMeta(
            name=SELECTED_SCHEDULER_EXTENDER_IP_CONFIG_MAP_NAME,
            namespace=csi.namespace,
        ),
        data={SELECTED_SCHEDULER_EXTENDER_IP_CONFIG_MAP_DATA_KEY: extender_ip},
    )


def _default_secondary_scheduler_image() -> Image:
    return Image(
        name=OPENSHIFT_SECONDARY_SCHEDULER_DEFAULT_IMAGE_NAME,
        tag=OPENSHIFT_SECONDARY_SCHEDULER_DEFAULT_IMAGE_TAG,
    )


def secondary_scheduler_image(csi: Deployment) -> str:
    """Full image reference of the secondary scheduler, falling back to the default."""
    settings = csi.spec.scheduler.openshift_secondary_scheduler
    if settings is not None and settings.image is not None:
        image = settings.image
        if not image.name or not image.tag:
            _log.warning(
                "Invalid secondary scheduler image provided! "
                "Use default secondary scheduler image instead!"
            )
            image = _default_secondary_scheduler_image()
    else:
        image = _default_secondary_scheduler_image()
    return construct_full_image_name(image, csi.spec.global_registry)