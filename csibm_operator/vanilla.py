"""Scheduler configuration files for vanilla Kubernetes and RKE."""

from __future__ import annotations

from .configuration import (
    CONFIG19_FILE,
    CONFIG23_FILE,
    CONFIG_FILE,
    POLICY_FILE,
    new_patcher_configuration,
)
from .deployment import Deployment
from .kube import ObjectMeta, Resource

_POLICY_TEMPLATE = """apiVersion: v1
kind: Policy
extenders:
  - urlPrefix: "http://127.0.0.1:{port}"
    filterVerb: filter
    prioritizeVerb: prioritize
    weight: 1
    #bindVerb: bind
    enableHttps: false
    nodeCacheCapable: false
    ignorable: true
    httpTimeout: 15000000000
"""

_LEGACY_CONFIG_TEMPLATE = """apiVersion: kubescheduler.config.k8s.io/v1alpha1
kind: KubeSchedulerConfiguration
schedulerName: default-scheduler
algorithmSource:
  policy:
    file:
      path: {policy_path}
leaderElection:
  leaderElect: true
clientConnection:
  kubeconfig: {kubeconfig}"""

_NEW_CONFIG_TEMPLATE = """apiVersion: kubescheduler.config.k8s.io/{api_version}
kind: KubeSchedulerConfiguration
extenders:
  - urlPrefix: "http://127.0.0.1:{port}"
    filterVerb: filter
    prioritizeVerb: prioritize
    weight: 1
    #bindVerb: bind
    enableHTTPS: false
    nodeCacheCapable: false
    ignorable: true
    httpTimeout: 15s
leaderElection:
  leaderElect: true
clientConnection:
  kubeconfig: {kubeconfig}"""


def create_vanilla_config(csi: Deployment) -> Resource:
    """The config map holding the scheduler policy and every config version.

    Raises ValueError when the platform is not vanilla or RKE.
    """
    cfg = new_patcher_configuration(csi)
    port = csi.spec.scheduler.extender_port

    policy = _POLICY_TEMPLATE.format(port=port)
    legacy_config = _LEGACY_CONFIG_TEMPLATE.format(
        policy_path=cfg.target_policy, kubeconfig=cfg.kubeconfig
    )
    config19 = _NEW_CONFIG_TEMPLATE.format(
        api_version="v1beta1", port=port, kubeconfig=cfg.kubeconfig
    )
    config23 = _NEW_CONFIG_TEMPLATE.format(
        api_version="v1beta3", port=port, kubeconfig=cfg.kubeconfig
    )

    return Resource(
        kind="ConfigMap",
        metadata=ObjectMeta(
            name=csi.spec.scheduler.patcher.config_map_name,
            namespace=csi.namespace,
        ),
        data={
            POLICY_FILE: policy,
            CONFIG_FILE: legacy_config,
            CONFIG19_FILE: config19,
            CONFIG23_FILE: config23,
        },
    )