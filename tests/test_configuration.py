import pytest

from csibm_operator.configuration import PatcherConfiguration, new_patcher_configuration
from csibm_operator.deployment import (
    Deployment,
    DeploymentSpec,
    Image,
    Log,
    Patcher,
    Scheduler,
    SecurityContext,
    construct_full_image_name,
)
from csibm_operator.kube import ObjectMeta


def make_csi(platform, config_map_name="scheduler-conf"):
    return Deployment(
        metadata=ObjectMeta(namespace="default"),
        spec=DeploymentSpec(
            scheduler=Scheduler(
                log=Log(level="debug"),
                patcher=Patcher(interval=10, restore_on_shutdown=True, config_map_name=config_map_name),
            ),
            node_id_annotation=False,
            platform=platform,
        ),
    )


def test_vanilla_configuration():
    got = new_patcher_configuration(make_csi("vanilla", "scheduler-configuration"))
    assert got == PatcherConfiguration(
        ns="default",
        loglevel="debug",
        interval=10,
        restore_on_shutdown=True,
        platform="vanilla",
        target_config="/etc/kubernetes/manifests/scheduler/config.yaml",
        target_policy="/etc/kubernetes/manifests/scheduler/policy.yaml",
        target_config19="/etc/kubernetes/manifests/scheduler/config-19.yaml",
        target_config23="/etc/kubernetes/manifests/scheduler/config-23.yaml",
        scheduler_folder="/etc/kubernetes/manifests/scheduler",
        manifests_folder="/etc/kubernetes/manifests",
        config_map_name="scheduler-configuration",
        config_folder="/config",
        kubeconfig="/etc/kubernetes/scheduler.conf",
    )


def test_rke_configuration():
    got = new_patcher_configuration(make_csi("rke"))
    assert got == PatcherConfiguration(
        ns="default",
        loglevel="debug",
        interval=10,
        restore_on_shutdown=True,
        platform="rke",
        target_config="/var/lib/rancher/rke2/agent/pod-manifests/scheduler/config.yaml",
        target_policy="/var/lib/rancher/rke2/agent/pod-manifests/scheduler/policy.yaml",
        target_config19="/var/lib/rancher/rke2/agent/pod-manifests/scheduler/config-19.yaml",
        target_config23="/var/lib/rancher/rke2/agent/pod-manifests/scheduler/config-23.yaml",
        scheduler_folder="/var/lib/rancher/rke2/agent/pod-manifests/scheduler",
        manifests_folder="/var/lib/rancher/rke2/agent/pod-manifests",
        config_map_name="scheduler-conf",
        config_folder="/config",
        kubeconfig="/var/lib/rancher/rke2/server/cred/scheduler.kubeconfig",
    )


@pytest.mark.parametrize("platform", ["openshift", "", "vanila", "pks"])
def test_unsupported_platforms(platform):
    with pytest.raises(ValueError, match="not supported platform for the patcher"):
        new_patcher_configuration(make_csi(platform))


def test_daemonset_identity_and_selector():
    csi = make_csi("vanilla")
    csi.spec.scheduler.service_account = "csi-baremetal-extender-sa"
    daemonset = new_patcher_configuration(csi).daemonset()
    assert daemonset.kind == "DaemonSet"
    assert daemonset.name == "csi-baremetal-se-patcher"
    assert daemonset.namespace == "default"
    selector = daemonset.spec["selector"]["matchLabels"]
    template_labels = daemonset.spec["template"]["metadata"]["labels"]
    assert selector.items() <= template_labels.items()
    pod_spec = daemonset.spec["template"]["spec"]
    assert pod_spec["serviceAccountName"] == "csi-baremetal-extender-sa"
    assert pod_spec["restartPolicy"] == "Always"


def test_container_args_follow_configuration():
    config = new_patcher_configuration(make_csi("vanilla"))
    [container] = config.containers()
    assert container["name"] == "schedulerpatcher"
    assert container["command"] == ["python3", "-u", "main.py"]
    args = container["args"]
    assert "--restore" in args
    assert "--interval=10" in args
    assert "--platform=vanilla" in args
    assert "--target-config-path=/etc/kubernetes/manifests/scheduler/config.yaml" in args
    assert "--target-policy-path=/etc/kubernetes/manifests/scheduler/policy.yaml" in args
    assert "--source-config-path=/config/config.yaml" in args
    assert "--target_config_23_path=/etc/kubernetes/manifests/scheduler/config-23.yaml" in args
    assert "--backup-path=/etc/kubernetes/manifests/scheduler" in args


def test_container_mounts_match_volumes():
    config = new_patcher_configuration(make_csi("rke"))
    [container] = config.containers()
    mount_names = {mount["name"] for mount in container["volumeMounts"]}
    volume_names = {volume["name"] for volume in config.volumes()}
    assert mount_names == volume_names
    host_paths = [volume["hostPath"]["path"] for volume in config.volumes() if "hostPath" in volume]
    assert host_paths == [config.scheduler_folder, config.manifests_folder]


def test_container_image_uses_global_registry():
    csi = make_csi("vanilla")
    csi.spec.global_registry = "asdrepo.isus.emc.com:9042"
    csi.spec.scheduler.patcher.image = Image(name="scheduler-patcher", tag="green")
    [container] = new_patcher_configuration(csi).containers()
    assert container["image"] == construct_full_image_name(
        Image(name="scheduler-patcher", tag="green"), "asdrepo.isus.emc.com:9042"
    )


def test_security_context_only_when_enabled():
    csi = make_csi("vanilla")
    assert new_patcher_configuration(csi).security_context() is None
    csi.spec.scheduler.security_context = SecurityContext(enable=False, privileged=True)
    assert new_patcher_configuration(csi).security_context() is None
    csi.spec.scheduler.security_context = SecurityContext(enable=True, privileged=True)
    assert new_patcher_configuration(csi).security_context() == {"privileged": True}