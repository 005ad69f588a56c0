"""The deployment custom resource: the desired state of the CSI installation."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from .kube import ObjectMeta

CSI_NAME = "csi-baremetal"
DEFAULT_NAMESPACE = "default"
DEFAULT_EXTENDER_PORT = "8889"


class Platform(str, enum.Enum):
    """Kubernetes distributions the operator knows how to patch."""

    OPENSHIFT = "openshift"
    VANILLA = "vanilla"
    RKE = "rke"


@dataclass
class Image:
    """A container image reference without its registry."""

    name: str = ""
    tag: str = ""


@dataclass
class Log:
    """Logging settings of a component."""

    level: str = "info"
    format: str = "text"


@dataclass
class ResourceRequirements:
    """Compute resource limits and requests of a container."""

    limits: dict[str, str] = field(default_factory=dict)
    requests: dict[str, str] = field(default_factory=dict)

    def to_manifest(self) -> dict[str, dict[str, str]]:
        """The requirements in manifest form, leaving out empty parts."""
        manifest = {}
        if self.limits:
            manifest["limits"] = dict(self.limits)
        if self.requests:
            manifest["requests"] = dict(self.requests)
        return manifest


@dataclass
class Patcher:
    """Settings of the kube-scheduler patcher."""

    enable: bool = False
    image: Image | None = None
    config_map_name: str = ""
    interval: int = 0
    restore_on_shutdown: bool = False
    readiness_timeout: int = 0
    resources: ResourceRequirements | None = None


@dataclass
class SecurityContext:
    """Container security settings, applied only when enabled."""

    enable: bool = False
    privileged: bool | None = None


@dataclass
class OpenshiftSecondaryScheduler:
    """Settings of the secondary scheduler used on newer OpenShift."""

    image: Image | None = None


@dataclass
class NodeSelector:
    """A single label that selects the nodes CSI runs on."""

    key: str = ""
    value: str = ""


@dataclass
class Scheduler:
    """Settings of the scheduler extender and its patcher."""

    image: Image | None = None
    log: Log = field(default_factory=Log)
    patcher: Patcher = field(default_factory=Patcher)
    extender_port: str = DEFAULT_EXTENDER_PORT
    service_account: str = ""
    resources: ResourceRequirements | None = None
    security_context: SecurityContext | None = None
    openshift_secondary_scheduler: OpenshiftSecondaryScheduler | None = None


@dataclass
class DeploymentSpec:
    """Desired state of the whole CSI installation."""

    platform: str = ""
    scheduler: Scheduler = field(default_factory=Scheduler)
    global_registry: str = ""
    registry_secret: str = ""
    pull_policy: str = ""
    node_id_annotation: bool = False
    node_selector: NodeSelector | None = None


@dataclass
class Deployment:
    """The CSI deployment resource."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: DeploymentSpec = field(default_factory=DeploymentSpec)
    kind: str = "Deployment"

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace


def construct_full_image_name(image: Image | None, global_registry: str = "") -> str:
    """Join registry, name and tag into a pullable image reference."""
    if image is None:
        return ""
    reference = f"{image.name}:{image.tag}" if image.tag else image.name
    if not global_registry:
        return reference
    return f"{global_registry.rstrip('/')}/{reference}"