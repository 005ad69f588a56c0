# csibm-operator

This package holds the control logic for running a bare-metal CSI driver on
Kubernetes. It works against an in-memory model of the cluster,
`csibm_operator.kube.Cluster`.

## Modules

- `csibm_operator.kube` provides the cluster model.
  - `Resource` is a generic object with `kind`, `metadata` (`ObjectMeta`), `spec`,
    `status` and `data`.
  - `Cluster` offers `create`, `get`, `list` (with label and field selectors),
    `update`, `delete`, `delete_by_name` and `apply`. It also has a
    `server_version` of `(major, minor)`.
  - `set_controller_reference` records an owner on an object.
  - `parse_label_selector` reads selector strings such as `"app=x,tier!=db,role"`.
  - Missing objects raise `NotFoundError`. Duplicate objects raise
    `AlreadyExistsError`.
- `csibm_operator.deployment` holds the deployment resource.
  - `Deployment` is built from `DeploymentSpec`, `Scheduler`, `Patcher`, `Log`,
    `Image`, `SecurityContext`, `ResourceRequirements`,
    `OpenshiftSecondaryScheduler` and `NodeSelector`.
  - `Platform` lists the supported platforms: `openshift`, `vanilla` and `rke`.
  - `construct_full_image_name` joins registry, image name and tag.
- `csibm_operator.configuration` handles the patcher settings.
  - `new_patcher_configuration` builds the per-platform `PatcherConfiguration`.
    It supports vanilla and RKE and raises `ValueError` for any other platform.
  - `PatcherConfiguration.daemonset()` builds the patcher DaemonSet.
- `csibm_operator.vanilla` provides `create_vanilla_config`. It builds the ConfigMap
  with the scheduler policy and the v1alpha1, v1beta1 and v1beta3 scheduler
  configurations.
- `csibm_operator.openshift` builds the OpenShift configuration documents:
  `scheduler_policy_config` and `secondary_scheduler_config`. It also builds their
  ConfigMaps and works out the secondary scheduler image. A foreign secondary
  scheduler raises `SecondarySchedulerConflictError`.
- `csibm_operator.readiness` tracks the extender readiness.
  - `collect_readiness_statuses` records, for each kube-scheduler pod, whether it
    restarted after the scheduler configuration changed.
  - `create_readiness_config_map` publishes those records as YAML under
    `nodes.yaml` in the `extender-readiness` ConfigMap. `ReadinessStatusList` has
    `to_yaml()` and `from_yaml()`.
  - `is_patching_enabled` and `new_extender_readiness_options` choose what to watch
    on each platform.
- `csibm_operator.scheduler_patcher` provides `SchedulerPatcher`.
  - On vanilla and RKE, `update` applies the patcher ConfigMap and DaemonSet. Errors
    in this step are logged, not raised.
  - On OpenShift clusters below Kubernetes 1.23, `update` points the `Scheduler`
    resource's policy at the CSI policy ConfigMap.
  - On Kubernetes 1.23 and newer, `update` finds a working scheduler extender by
    probing its `/filter` endpoint over HTTP, then creates or updates a
    `SecondaryScheduler`.
  - In both cases `update` then publishes readiness. When the readiness timeout has
    passed and not every scheduler has restarted, it retries patching.
  - `uninstall` undoes the OpenShift patch.
- `csibm_operator.rbac` and `csibm_operator.validator` check service-account
  bindings.
  - `RBACValidator.validate_service_account_is_bound` checks that a service account
    is bound, through a `RoleBinding`, to a `Role` that grants the requested
    `PolicyRule`s. If not, it raises `RBACError`.
  - `Validator.validate_rbac` dispatches an `RBACRules` bundle by `RuleType`.
- `csibm_operator.nodeoperations` provides `NodeOperationsController.reconcile`.
  - It keeps the drain label on `CSIBMNode` objects in step with the node taint
    `node.dell.com/drain=drain:NoSchedule`.
  - For nodes that were removed, it deletes their `Drive`, `AvailableCapacity`,
    `LogicalVolumeGroup` and `Volume` objects. This happens only once no node pod
    runs there.
  - It evicts non-DaemonSet CSI pods from nodes tainted
    `node.dell.com/drain=planned-downtime:NoSchedule`.
  - Collected failures are raised as `RuntimeError`.

## Installation

```
pip install .
```

To install and run the test suite:

```
pip install ".[test]"
pytest
```

## Example

```python
from csibm_operator.configuration import new_patcher_configuration
from csibm_operator.deployment import Deployment, DeploymentSpec, Log, Patcher, Scheduler
from csibm_operator.kube import Cluster, ObjectMeta
from csibm_operator.readiness import ReadinessStatusList, is_patching_enabled
from csibm_operator.scheduler_patcher import SchedulerPatcher

csi = Deployment(
    metadata=ObjectMeta(name="csi-baremetal", namespace="default"),
    spec=DeploymentSpec(
        platform="vanilla",
        scheduler=Scheduler(
            log=Log(level="debug"),
            patcher=Patcher(enable=True, interval=10, config_map_name="scheduler-conf"),
        ),
    ),
)

assert is_patching_enabled(csi)
print(new_patcher_configuration(csi).target_config)
# /etc/kubernetes/manifests/scheduler/config.yaml

cluster = Cluster()
SchedulerPatcher(cluster).update(csi)
daemonset = cluster.get("DaemonSet", "csi-baremetal-se-patcher", "default")
readiness = cluster.get("ConfigMap", "extender-readiness", "default")
print(ReadinessStatusList.from_yaml(readiness.data["nodes.yaml"]).items)  # []
```

## What this package does not do

- It does not connect to a Kubernetes API server. Every operation reads and writes
  the in-memory `Cluster`, so callers load the objects they care about into it.
- It has no command-line entry point.
- It has no watch loop. `SchedulerPatcher.update` and
  `NodeOperationsController.reconcile` run once per call.
- The only network traffic is the HTTP probe of the scheduler extender. That probe
  can be replaced through `SchedulerPatcher.http_get`.
- Pod-security checks are not built in. `SchedulerPatcher.security_check` is an
  optional callable that can veto the patcher DaemonSet.