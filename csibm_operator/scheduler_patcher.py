"""Patches the Kubernetes scheduler so that it calls the CSI scheduler extender."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from urllib.error import HTTPError
from urllib.request import Request, urlopen

from .configuration import PATCHER_NAME, new_patcher_configuration
from .deployment import Deployment, Platform
from .kube import Cluster, NotFoundError, ObjectMeta, Resource, set_controller_reference
from .openshift import (
    CSI_EXTENDER_NAME,
    EXTENDER_FILTER_PATTERN,
    EXTENDER_FILTER_URL_FORMAT,
    GET_SCHEDULER_EXTENDER_IP_INTERVAL,
    GET_SCHEDULER_EXTENDER_IP_MAX_RETRIES,
    OPENSHIFT_SCHEDULER_RESOURCE_NAME,
    SELECTED_SCHEDULER_EXTENDER_IP_CONFIG_MAP_DATA_KEY,
    SELECTED_SCHEDULER_EXTENDER_IP_CONFIG_MAP_NAME,
    SecondarySchedulerConflictError,
    create_openshift_config_map,
    create_selected_extender_ip_config_map,
    scheduler_policy_config,
    secondary_scheduler_config,
    secondary_scheduler_image,
)
from .readiness import (
    CSI_OPENSHIFT_SECONDARY_SCHEDULER_CONFIG_MAP_NAME,
    K8S_MASTER_NODE_LABEL_KEY,
    OPENSHIFT_CONFIG_NAMESPACE,
    OPENSHIFT_SCHEDULER_POLICY_CONFIG_MAP_NAME,
    OPENSHIFT_SECONDARY_SCHEDULER_NAMESPACE,
    READINESS_CHECK_INTERVAL_FOR_SECONDARY_SCHEDULER,
    READINESS_MAX_RETRIES_FOR_SECONDARY_SCHEDULER,
    ReadinessStatus,
    ReadinessStatusList,
    collect_readiness_statuses,
    create_readiness_config_map,
    is_all_ready,
    is_patching_enabled,
    new_extender_readiness_options,
)
from .vanilla import create_vanilla_config

_log = logging.getLogger(__name__)

_HTTP_TIMEOUT = 5.0
_OPENSHIFT_SCHEDULER_KIND = "Scheduler"
_SECONDARY_SCHEDULER_KIND = "SecondaryScheduler"


def _http_get_status(url: str) -> int:
    """Send a GET request and return the response status code."""
    request = Request(url, headers={"Accept": "application/json"}, method="GET")
    try:
        with urlopen(request, timeout=_HTTP_TIMEOUT) as response:
            return response.status
    except HTTPError as err:
        err.close()
        return err.code


def _unsupported(platform: str) -> ValueError:
    return ValueError(f"{platform} platform is not supported platform for the patcher")


@dataclass
class SchedulerPatcher:
    """Configures the scheduler of the cluster to use the CSI extender.

    On vanilla Kubernetes and RKE a patcher daemonset rewrites the
    kube-scheduler manifests; on OpenShift the scheduler resources are
    patched directly. ``security_check`` may veto the patcher daemonset by
    returning False; ``http_get`` returns the status code of a GET request;
    ``sleep`` waits between retries.
    """

    cluster: Cluster
    log: logging.Logger = field(default=_log)
    security_check: Callable[[Deployment], bool] | None = None
    http_get: Callable[[str], int] = field(default=_http_get_status)
    sleep: Callable[[float], None] = field(default=time.sleep)
    kubernetes_version: str = ""
    uses_secondary_scheduler: bool = False
    selected_scheduler_extender_ip: str = ""
    extender_pattern_checked: str = ""

    # -- common -----------------------------------------------------------

    def use_openshift_secondary_scheduler(self, platform: str) -> bool:
        """Whether OpenShift needs a secondary scheduler (Kubernetes 1.23 and newer)."""
        if platform == Platform.OPENSHIFT and not self.kubernetes_version:
            version = self.cluster.server_version
            if version is None:
                raise RuntimeError("unable to get the server version")
            major, minor = int(version[0]), int(version[1])
            self.kubernetes_version = f"{major}.{minor}"
            self.log.info("Kubernetes version: %s", self.kubernetes_version)
            self.uses_secondary_scheduler = major >= 1 and minor > 22
        return self.uses_secondary_scheduler

    def update(self, csi: Deployment) -> None:
        """Patch the scheduler for the deployment's platform and publish readiness."""
        if not is_patching_enabled(csi):
            self.log.warning(
                "Kubernetes scheduler configuration patching not enabled. "
                "Please update configuration manually"
            )
            return
        use_secondary = self.use_openshift_secondary_scheduler(csi.spec.platform)
        if use_secondary:
            self.extender_pattern_checked = EXTENDER_FILTER_PATTERN
        platform = csi.spec.platform
        if platform == Platform.OPENSHIFT:
            self._patch_openshift(csi, use_secondary)
        elif platform in (Platform.VANILLA, Platform.RKE):
            self.update_vanilla(csi)
        self.update_readiness_config_map(csi, use_secondary)

    def uninstall(self, csi: Deployment) -> None:
        """Undo the OpenShift scheduler patch; other platforms need nothing."""
        if is_patching_enabled(csi) and csi.spec.platform == Platform.OPENSHIFT:
            self._unpatch_openshift()

    def _apply_owned(self, csi: Deployment, obj: Resource) -> Resource:
        set_controller_reference(csi, obj)
        return self.cluster.apply(obj)

    # -- readiness --------------------------------------------------------

    def update_readiness_config_map(self, csi: Deployment, use_openshift_secondary_scheduler: bool) -> None:
        """Publish kube-scheduler restart statuses; retry patching after the timeout."""
        options = new_extender_readiness_options(csi, use_openshift_secondary_scheduler)
        watched = self.cluster.get(
            "ConfigMap", options.watched_config_map_name, options.watched_config_map_namespace
        )
        cm_creation_time = watched.metadata.creation_timestamp

        if use_openshift_secondary_scheduler:
            statuses = self.readiness_statuses_for_secondary_scheduler(
                options.kube_scheduler_label,
                cm_creation_time,
                READINESS_CHECK_INTERVAL_FOR_SECONDARY_SCHEDULER,
                READINESS_MAX_RETRIES_FOR_SECONDARY_SCHEDULER,
            )
        else:
            statuses = collect_readiness_statuses(
                self.cluster, options.kube_scheduler_label, cm_creation_time
            )

        self._apply_owned(csi, create_readiness_config_map(options, statuses))

        timeout = timedelta(minutes=csi.spec.scheduler.patcher.readiness_timeout)
        timeout_passed = cm_creation_time < datetime.now(timezone.utc) - timeout
        if is_all_ready(statuses) or not timeout_passed:
            return

        self.log.info("Retry patching")
        platform = csi.spec.platform
        if platform == Platform.OPENSHIFT:
            self._retry_patch_openshift(csi, use_openshift_secondary_scheduler)
        elif platform in (Platform.VANILLA, Platform.RKE):
            self._retry_patch_vanilla(csi)
        else:
            raise _unsupported(platform)

    def readiness_statuses_for_secondary_scheduler(
        self,
        kube_scheduler_label: str,
        cm_creation_time: datetime,
        check_interval: float,
        num_retries: int,
    ) -> ReadinessStatusList:
        """Wait for the secondary scheduler, then report it for every master node."""
        statuses = ReadinessStatusList()
        for _ in range(num_retries):
            statuses = collect_readiness_statuses(self.cluster, kube_scheduler_label, cm_creation_time)
            ready = len(statuses.items) == 1 and statuses.items[0].restarted
            if ready:
                break
            self.log.info("Number of Openshift Secondary Scheduler Pods: %d", len(statuses.items))
            self.log.info("Readiness of Openshift Secondary Scheduler Extender: %s", ready)
            self.sleep(check_interval)

        scheduler_name = statuses.items[0].kube_scheduler if statuses.items else ""
        masters = self.cluster.list("Node", label_selector=K8S_MASTER_NODE_LABEL_KEY)
        return ReadinessStatusList(
            items=[
                ReadinessStatus(node_name=node.name, kube_scheduler=scheduler_name, restarted=True)
                for node in masters
            ]
        )

    # -- OpenShift ----------------------------------------------------------

    def check_scheduler_extender(self, ip: str, port: str) -> None:
        """Raise ConnectionError unless the extender's filter endpoint answers 200."""
        url = EXTENDER_FILTER_URL_FORMAT.format(ip=ip, port=port, pattern=self.extender_pattern_checked)
        try:
            status = self.http_get(url)
        except (OSError, ValueError, OverflowError) as err:
            raise ConnectionError(f"scheduler extender filter {url} doesn't work: {err}") from err
        if status != 200:
            raise ConnectionError(f"scheduler extender filter {url} doesn't work")

    def scheduler_extender_ip(self, csi: Deployment) -> str:
        """Find the IP of a working scheduler extender; raise LookupError if none."""
        port = csi.spec.scheduler.extender_port
        if self.selected_scheduler_extender_ip:
            try:
                self.check_scheduler_extender(self.selected_scheduler_extender_ip, port)
                return self.selected_scheduler_extender_ip
            except ConnectionError as err:
                self.log.warning(
                    "Current selected scheduler extender %s doesn't work: %s",
                    self.selected_scheduler_extender_ip,
                    err,
                )

        try:
            stored = self.cluster.get(
                "ConfigMap", SELECTED_SCHEDULER_EXTENDER_IP_CONFIG_MAP_NAME, csi.namespace
            )
        except NotFoundError:
            stored = None
        if stored is not None:
            stored_ip = stored.data.get(SELECTED_SCHEDULER_EXTENDER_IP_CONFIG_MAP_DATA_KEY, "")
            if stored_ip != self.selected_scheduler_extender_ip:
                try:
                    self.check_scheduler_extender(stored_ip, port)
                    self.selected_scheduler_extender_ip = stored_ip
                    return stored_ip
                except ConnectionError as err:
                    self.log.warning(
                        "selectedSchedulerExtenderIPConfigMap's IP %s doesn't work: %s", stored_ip, err
                    )

        pods = self.cluster.list("Pod", label_selector={"name": CSI_EXTENDER_NAME})
        if not pods:
            raise LookupError("no scheduler extender found")
        for pod in pods:
            if pod.status.get("phase") != "Running":
                continue
            pod_ip = pod.status.get("podIP", "")
            if not pod_ip:
                continue
            try:
                self.check_scheduler_extender(pod_ip, port)
            except ConnectionError as err:
                self.log.warning("Scheduler extender %s doesn't work: %s", pod_ip, err)
                continue
            self.selected_scheduler_extender_ip = pod_ip
            self._store_selected_extender_ip(pod_ip, csi)
            return pod_ip
        raise LookupError("no working scheduler extender found")

    def _store_selected_extender_ip(self, extender_ip: str, csi: Deployment) -> None:
        config_map = create_selected_extender_ip_config_map(extender_ip, csi)
        try:
            set_controller_reference(csi, config_map)
        except ValueError as err:
            self.log.warning("Error in setting selectedSchedulerExtenderIPConfigMap's owner: %s", err)
        try:
            self.cluster.apply(config_map)
        except (LookupError, ValueError) as err:
            self.log.warning("Error in updating selectedSchedulerExtenderIPConfigMap: %s", err)

    def create_openshift_config(
        self,
        csi: Deployment,
        use_openshift_secondary_scheduler: bool,
        check_interval: float,
        max_retries: int,
    ) -> str:
        """The scheduler configuration document for OpenShift."""
        port = csi.spec.scheduler.extender_port
        if not use_openshift_secondary_scheduler:
            return scheduler_policy_config(port)

        last_error: LookupError | None = None
        for _ in range(max_retries):
            try:
                extender_ip = self.scheduler_extender_ip(csi)
                break
            except LookupError as err:
                last_error = err
                self.selected_scheduler_extender_ip = ""
                self.log.warning("Fail to get scheduler extender IP: %s", err)
                self.sleep(check_interval)
        else:
            if last_error is not None:
                raise last_error
            return ""
        self.log.info("Selected Scheduler Extender's IP: %s", extender_ip)
        return secondary_scheduler_config(extender_ip, port)

    def _patch_openshift(self, csi: Deployment, use_secondary: bool) -> None:
        config = self.create_openshift_config(
            csi, use_secondary, GET_SCHEDULER_EXTENDER_IP_INTERVAL, GET_SCHEDULER_EXTENDER_IP_MAX_RETRIES
        )
        self.cluster.apply(create_openshift_config_map(config, use_secondary))
        try:
            if use_secondary:
                self.patch_secondary_scheduler(csi)
            else:
                self.patch_scheduler(OPENSHIFT_SCHEDULER_POLICY_CONFIG_MAP_NAME)
        except (LookupError, ValueError, RuntimeError) as err:
            self.log.error("Failed to patch Openshift Scheduler: %s", err)
            raise

    def _unpatch_openshift(self) -> None:
        messages = []
        use_secondary = self.use_openshift_secondary_scheduler(Platform.OPENSHIFT)
        if use_secondary:
            cm_name = CSI_OPENSHIFT_SECONDARY_SCHEDULER_CONFIG_MAP_NAME
            cm_namespace = OPENSHIFT_SECONDARY_SCHEDULER_NAMESPACE
        else:
            cm_name = OPENSHIFT_SCHEDULER_POLICY_CONFIG_MAP_NAME
            cm_namespace = OPENSHIFT_CONFIG_NAMESPACE

        try:
            self.cluster.delete_by_name("ConfigMap", cm_name, cm_namespace)
        except (LookupError, ValueError) as err:
            self.log.error("Failed to delete Openshift extender ConfigMap: %s", err)
            messages.append(str(err))

        try:
            if use_secondary:
                self.unpatch_secondary_scheduler()
            else:
                self.unpatch_scheduler(OPENSHIFT_SCHEDULER_POLICY_CONFIG_MAP_NAME)
        except (LookupError, ValueError) as err:
            self.log.error("Failed to unpatch Scheduler: %s", err)
            messages.append(str(err))

        if messages:
            raise RuntimeError("\n".join(messages))

    def _retry_patch_openshift(self, csi: Deployment, use_secondary: bool) -> None:
        try:
            self._unpatch_openshift()
        except RuntimeError as err:
            self.log.error("Failed to unpatch Openshift Scheduler: %s", err)
            raise
        self._patch_openshift(csi, use_secondary)

    def patch_secondary_scheduler(self, csi: Deployment) -> Resource:
        """Create or update the CSI secondary scheduler; refuse foreign ones."""
        image = secondary_scheduler_image(csi)
        try:
            existing = self.cluster.get(
                _SECONDARY_SCHEDULER_KIND,
                OPENSHIFT_SCHEDULER_RESOURCE_NAME,
                OPENSHIFT_SECONDARY_SCHEDULER_NAMESPACE,
            )
        except NotFoundError:
            created = self.cluster.create(
                Resource(
                    kind=_SECONDARY_SCHEDULER_KIND,
                    metadata=ObjectMeta(
                        name=OPENSHIFT_SCHEDULER_RESOURCE_NAME,
                        namespace=OPENSHIFT_SECONDARY_SCHEDULER_NAMESPACE,
                    ),
                    spec={
                        "managementState": "Managed",
                        "operatorLogLevel": "Normal",
                        "logLevel": "Normal",
                        "schedulerConfig": CSI_OPENSHIFT_SECONDARY_SCHEDULER_CONFIG_MAP_NAME,
                        "schedulerImage": image,
                    },
                )
            )
            self.log.info("SecondaryScheduler CR cluster has been successfully created")
            return created

        if existing.spec.get("schedulerConfig") != CSI_OPENSHIFT_SECONDARY_SCHEDULER_CONFIG_MAP_NAME:
            self.log.error("Existing 3rd-party secondary scheduler! Baremetal CSI will not be installed!")
            raise SecondarySchedulerConflictError()
        if existing.spec.get("schedulerImage") != image:
            existing.spec["schedulerImage"] = image
            updated = self.cluster.update(existing)
            self.log.info("Secondary scheduler image has been successfully updated")
            return updated
        return existing

    def unpatch_secondary_scheduler(self) -> None:
        """Delete the secondary scheduler if CSI created it."""
        existing = self.cluster.get(
            _SECONDARY_SCHEDULER_KIND,
            OPENSHIFT_SCHEDULER_RESOURCE_NAME,
            OPENSHIFT_SECONDARY_SCHEDULER_NAMESPACE,
        )
        if existing.spec.get("schedulerConfig") == CSI_OPENSHIFT_SECONDARY_SCHEDULER_CONFIG_MAP_NAME:
            self.cluster.delete(existing)
            self.log.info("SecondaryScheduler CR cluster has been successfully deleted")
        else:
            self.log.info("3rd-party secondary scheduler still exists!")

    def _cluster_scheduler(self) -> tuple[Resource, dict]:
        scheduler = self.cluster.get(_OPENSHIFT_SCHEDULER_KIND, OPENSHIFT_SCHEDULER_RESOURCE_NAME)
        policy = scheduler.spec.setdefault("policy", {})
        return scheduler, policy

    def patch_scheduler(self, config: str) -> None:
        """Point the cluster scheduler's policy at ``config``."""
        scheduler, policy = self._cluster_scheduler()
        name = policy.get("name", "")
        if not name:
            policy["name"] = config
            self.cluster.update(scheduler)
            return
        if name != config:
            raise ValueError(f"scheduler is already patched with the config name: {name}")

    def unpatch_scheduler(self, config: str) -> None:
        """Clear the cluster scheduler's policy if it points at ``config``."""
        scheduler, policy = self._cluster_scheduler()
        name = policy.get("name", "")
        if not name:
            return
        if name != config:
            raise ValueError(f"scheduler was patched with the config name: {name}")
        policy["name"] = ""
        self.cluster.update(scheduler)

    # -- vanilla and RKE ----------------------------------------------------

    def update_vanilla(self, csi: Deployment) -> None:
        """Deploy the patcher config map and daemonset; failures are only logged."""
        try:
            self._apply_owned(csi, create_vanilla_config(csi))
            self._update_vanilla_daemonset(csi)
        except (LookupError, ValueError) as err:
            self.log.error("Failed to update scheduler patcher: %s", err)

    def _update_vanilla_daemonset(self, csi: Deployment) -> None:
        if self.security_check is not None and not self.security_check(csi):
            return
        cfg = new_patcher_configuration(csi)
        self._apply_owned(csi, cfg.daemonset())

    def _retry_patch_vanilla(self, csi: Deployment) -> None:
        try:
            self.cluster.delete_by_name("DaemonSet", PATCHER_NAME, csi.namespace)
        except NotFoundError as err:
            self.log.error("Failed to delete patcher daemonset: %s", err)
            raise
        try:
            self.cluster.delete_by_name("ConfigMap", csi.spec.scheduler.patcher.config_map_name, csi.namespace)
        except NotFoundError as err:
            self.log.error("Failed to delete patcher configmap: %s", err)
            raise
        self.update_vanilla(csi)