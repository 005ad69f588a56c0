"""In-memory store of cluster objects with Kubernetes-like semantics."""

from __future__ import annotations

import copy
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

LabelSelector = Union[str, Mapping[str, str], None]
FieldSelector = Union[Mapping[str, str], None]


@dataclass
class ObjectMeta:
    """Identity and bookkeeping data shared by every stored object."""

    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    owner_references: list[dict[str, Any]] = field(default_factory=list)
    creation_timestamp: datetime | None = None
    uid: str = ""


@dataclass
class Resource:
    """A generic cluster object: pods, nodes, config maps, custom resources."""

    kind: str
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: dict[str, Any] = field(default_factory=dict)
    status: dict[str, Any] = field(default_factory=dict)
    data: dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace


class NotFoundError(LookupError):
    """Raised when a requested object does not exist."""

    def __init__(self, kind: str, name: str, namespace: str = "") -> None:
        self.kind = kind
        self.name = name
        self.namespace = namespace
        super().__init__(f'{kind} "{name}" not found')


class AlreadyExistsError(ValueError):
    """Raised when creating an object whose key is already taken."""

    def __init__(self, kind: str, name: str, namespace: str = "") -> None:
        self.kind = kind
        self.name = name
        self.namespace = namespace
        super().__init__(f'{kind} "{name}" already exists')


def parse_label_selector(selector: LabelSelector) -> list[tuple[str, str, str]]:
    """Parse a label selector into (key, operator, value) requirements.

    Accepts a mapping (equality on every pair) or a string such as
    ``"app=x,tier!=db,role,!legacy"``. ``None`` or ``""`` selects everything.
    """
    if selector is None:
        return []
    if isinstance(selector, Mapping):
        return [(key, "=", value) for key, value in selector.items()]
    requirements = []
    for part in (piece.strip() for piece in selector.split(",")):
        if not part:
            continue
        if "!=" in part:
            key, value = part.split("!=", 1)
            operator = "!="
        elif "==" in part:
            key, value = part.split("==", 1)
            operator = "="
        elif "=" in part:
            key, value = part.split("=", 1)
            operator = "="
        elif part.startswith("!"):
            key, value, operator = part[1:], "", "!exists"
        else:
            key, value, operator = part, "", "exists"
        key = key.strip()
        if not key:
            raise ValueError(f"invalid label selector: {selector!r}")
        requirements.append((key, operator, value.strip()))
    return requirements


def _labels_match(labels: Mapping[str, str], requirements: Iterable[tuple[str, str, str]]) -> bool:
    for key, operator, value in requirements:
        if operator == "=" and labels.get(key) != value:
            return False
        if operator == "!=" and key in labels and labels[key] == value:
            return False
        if operator == "exists" and key not in labels:
            return False
        if operator == "!exists" and key in labels:
            return False
    return True


def _field_value(obj: Resource, path: str) -> str:
    head, _, rest = path.partition(".")
    if head == "metadata":
        value: Any = getattr(obj.metadata, rest, "")
        return "" if value is None else str(value)
    if head not in ("spec", "status", "data"):
        return ""
    value = getattr(obj, head)
    for part in rest.split(".") if rest else ():
        if not isinstance(value, Mapping):
            return ""
        value = value.get(part, "")
    return "" if value is None else str(value)


def _same_owner(left: Mapping[str, Any], right: Mapping[str, Any]) -> bool:
    return left.get("kind") == right.get("kind") and left.get("name") == right.get("name")


def set_controller_reference(owner: Any, obj: Resource) -> None:
    """Make ``owner`` (anything with ``kind`` and ``metadata``) the controller of ``obj``."""
    owner_namespace = owner.metadata.namespace
    if owner_namespace and obj.metadata.namespace != owner_namespace:
        raise ValueError(
            "cross-namespace owner references are disallowed, owner's namespace "
            f"{owner_namespace}, obj's namespace {obj.metadata.namespace}"
        )
    reference = {
        "kind": owner.kind,
        "name": owner.metadata.name,
        "uid": owner.metadata.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }
    for existing in obj.metadata.owner_references:
        if existing.get("controller") and not _same_owner(existing, reference):
            raise ValueError(
                f"object {obj.metadata.name} is already owned by another "
                f"{existing.get('kind')} controller {existing.get('name')}"
            )
    obj.metadata.owner_references = [
        existing for existing in obj.metadata.owner_references if not _same_owner(existing, reference)
    ] + [reference]


class Cluster:
    """An in-memory cluster keyed by kind, namespace and name.

    Objects are copied on the way in and out, so callers never share state
    with the store. ``server_version`` holds the (major, minor) version
    strings that the cluster reports, or ``None`` when it cannot tell.
    """

    def __init__(
        self,
        objects: Iterable[Resource] = (),
        server_version: tuple[str, str] | None = None,
    ) -> None:
        self._objects: dict[tuple[str, str, str], Resource] = {}
        self.server_version = server_version
        for obj in objects:
            self.create(obj)

    @staticmethod
    def _key(obj: Resource) -> tuple[str, str, str]:
        return obj.kind, obj.metadata.namespace, obj.metadata.name

    def create(self, obj: Resource) -> Resource:
        """Store a new object and return a copy of what was stored."""
        if not obj.metadata.name:
            raise ValueError(f"{obj.kind} must have a name")
        key = self._key(obj)
        if key in self._objects:
            raise AlreadyExistsError(*key[:1], obj.metadata.name, obj.metadata.namespace)
        stored = copy.deepcopy(obj)
        if not stored.metadata.uid:
            stored.metadata.uid = str(uuid.uuid4())
        if stored.metadata.creation_timestamp is None:
            stored.metadata.creation_timestamp = datetime.now(timezone.utc)
        self._objects[key] = stored
        return copy.deepcopy(stored)

    def get(self, kind: str, name: str, namespace: str = "") -> Resource:
        """Return a copy of one object."""
        try:
            return copy.deepcopy(self._objects[(kind, namespace, name)])
        except KeyError:
            raise NotFoundError(kind, name, namespace) from None

    def list(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: LabelSelector = None,
        field_selector: FieldSelector = None,
    ) -> list[Resource]:
        """Return copies of the matching objects, ordered by namespace and name."""
        requirements = parse_label_selector(label_selector)
        fields = dict(field_selector or {})
        found = [
            obj
            for (obj_kind, obj_namespace, _), obj in sorted(self._objects.items())
            if obj_kind == kind
            and (not namespace or obj_namespace == namespace)
            and _labels_match(obj.metadata.labels, requirements)
            and all(_field_value(obj, path) == value for path, value in fields.items())
        ]
        return copy.deepcopy(found)

    def update(self, obj: Resource) -> Resource:
        """Replace a stored object, keeping its server-assigned identity."""
        key = self._key(obj)
        try:
            current = self._objects[key]
        except KeyError:
            raise NotFoundError(obj.kind, obj.metadata.name, obj.metadata.namespace) from None
        stored = copy.deepcopy(obj)
        stored.metadata.uid = current.metadata.uid
        stored.metadata.creation_timestamp = current.metadata.creation_timestamp
        self._objects[key] = stored
        return copy.deepcopy(stored)

    def delete(self, obj: Resource) -> None:
        """Remove the stored object with the same key as ``obj``."""
        self.delete_by_name(obj.kind, obj.metadata.name, obj.metadata.namespace)

    def delete_by_name(self, kind: str, name: str, namespace: str = "") -> None:
        """Remove an object by its key."""
        try:
            del self._objects[(kind, namespace, name)]
        except KeyError:
            raise NotFoundError(kind, name, namespace) from None

    def apply(self, obj: Resource) -> Resource:
        """Create the object, or update it if it already exists."""
        try:
            self.get(obj.kind, obj.metadata.name, obj.metadata.namespace)
        except NotFoundError:
            return self.create(obj)
        return self.update(obj)