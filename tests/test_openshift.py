import json

import pytest
import yaml

from csibm_operator.deployment import (
    Deployment,
    DeploymentSpec,
    Image,
    OpenshiftSecondaryScheduler,
    Patcher,
    Scheduler,
    construct_full_image_name,
)
from csibm_operator.kube import ObjectMeta
from csibm_operator.openshift import (
    EXISTING_3RD_PARTY_SECONDARY_SCHEDULER_ERR_MSG,
    SecondarySchedulerConflictError,
    create_openshift_config_map,
    create_selected_extender_ip_config_map,
    scheduler_policy_config,
    secondary_scheduler_config,
    secondary_scheduler_image,
)

REGISTRY = "asdrepo.isus.emc.com:9042"


def _deployment(secondary: OpenshiftSecondaryScheduler | None = None) -> Deployment:
    return Deployment(
        metadata=ObjectMeta(namespace="default"),
        spec=DeploymentSpec(
            global_registry=REGISTRY,
            platform="openshift",
            scheduler=Scheduler(
                patcher=Patcher(enable=True, config_map_name="scheduler-conf"),
                extender_port="8889",
                openshift_secondary_scheduler=secondary,
            ),
        ),
    )


def test_create_openshift_config_map_names():
    cm = create_openshift_config_map("data", True)
    assert cm.name == "csi-baremetal-scheduler-config"
    assert cm.namespace == "openshift-secondary-scheduler-operator"
    assert cm.data == {"config.yaml": "data"}

    cm = create_openshift_config_map("data", False)
    assert cm.name == "scheduler-policy"
    assert cm.namespace == "openshift-config"
    assert cm.data == {"policy.cfg": "data"}


def test_secondary_scheduler_config_is_v1beta3():
    config = secondary_scheduler_config("10.0.0.5", "8889")
    assert config.startswith("apiVersion: kubescheduler.config.k8s.io/v1beta3")
    document = yaml.safe_load(config)
    assert document["profiles"][0]["schedulerName"] == "csi-baremetal-scheduler"
    assert document["extenders"][0]["urlPrefix"] == "http://10.0.0.5:8889"
    assert document["leaderElection"]["leaderElect"] is False


def test_policy_config_is_json_and_not_v1beta3():
    config = scheduler_policy_config("8889")
    assert not config.startswith("apiVersion: kubescheduler.config.k8s.io/v1beta3")
    document = json.loads(config)
    assert document["kind"] == "Policy"
    assert document["extenders"][0]["urlPrefix"] == "http://127.0.0.1:8889"
    assert document["extenders"][0]["ignorable"] is True


def test_selected_extender_ip_config_map():
    cm = create_selected_extender_ip_config_map("10.0.0.7", _deployment())
    assert cm.name == "selected-scheduler-extender-ip"
    assert cm.namespace == "default"
    assert cm.data == {"selectedSchedulerExtenderIP": "10.0.0.7"}


def _default_image() -> str:
    return construct_full_image_name(Image(name="kube-scheduler", tag="v0.26.7"), REGISTRY)


def test_secondary_scheduler_image_default_when_unset():
    assert secondary_scheduler_image(_deployment()) == _default_image()


@pytest.mark.parametrize(
    "image",
    [Image(name="kube-scheduler"), Image(tag="v0.24.9"), Image()],
)
def test_secondary_scheduler_image_default_when_incomplete(image):
    csi = _deployment(OpenshiftSecondaryScheduler(image=image))
    assert secondary_scheduler_image(csi) == _default_image()


def test_secondary_scheduler_image_default_when_no_image():
    csi = _deployment(OpenshiftSecondaryScheduler(image=None))
    assert secondary_scheduler_image(csi) == _default_image()


def test_secondary_scheduler_image_custom():
    image = Image(name="kube-scheduler", tag="v0.24.9")
    csi = _deployment(OpenshiftSecondaryScheduler(image=image))
    assert secondary_scheduler_image(csi) == construct_full_image_name(image, REGISTRY)


def test_conflict_error_message():
    error = SecondarySchedulerConflictError()
    assert str(error) == "existing 3rd-party secondary scheduler"
    assert str(error) == EXISTING_3RD_PARTY_SECONDARY_SCHEDULER_ERR_MSG