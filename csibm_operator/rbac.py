"""Checks that a service account is bound to a role granting given rules."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .kube import Cluster, Resource

_log = logging.getLogger(__name__)


@dataclass
class PolicyRule:
    """One rule of a role: which verbs apply to which resources."""

    verbs: list[str] = field(default_factory=list)
    api_groups: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)
    resource_names: list[str] = field(default_factory=list)


@dataclass
class Subject:
    """An account a role binding refers to."""

    name: str
    namespace: str = ""
    kind: str = "ServiceAccount"


@dataclass
class Role:
    """A namespaced set of policy rules."""

    name: str = ""
    namespace: str = ""
    rules: list[PolicyRule] = field(default_factory=list)


@dataclass
class RoleBinding:
    """Binds subjects to the role named by ``role_ref``."""

    name: str = ""
    namespace: str = ""
    subjects: list[Subject] = field(default_factory=list)
    role_ref: str = ""


@dataclass
class ServiceAccountIsRoleBoundData:
    """What to check: a service account bound to a role with these rules."""

    role: Role
    service_account_name: str
    namespace: str


class RBACError(Exception):
    """Raised when the requested RBAC condition does not hold."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"failed to validate rbac: {message}")

    def orig_message(self) -> str:
        """The message without the validation prefix."""
        return self.message


class Matcher:
    """Matches actual RBAC objects against requested ones."""

    def match_policy_rules(self, actual: Sequence[PolicyRule], requested: Sequence[PolicyRule]) -> bool:
        """True if one actual rule covers every requested rule."""
        if not requested:
            return False
        return any(
            all(self.match_policy_rule(rule, wanted) for wanted in requested) for rule in actual
        )

    def match_policy_rule(self, actual: PolicyRule, requested: PolicyRule) -> bool:
        """True if every requested verb, group, resource and name is granted."""
        return (
            set(requested.verbs) <= set(actual.verbs)
            and set(requested.api_groups) <= set(actual.api_groups)
            and set(requested.resources) <= set(actual.resources)
            and set(requested.resource_names) <= set(actual.resource_names)
        )

    def match_role_bindings_subjects(
        self, role_bindings: Iterable[RoleBinding], subject_name: str, namespace: str
    ) -> list[RoleBinding]:
        """The bindings that name the given subject."""
        return [
            binding
            for binding in role_bindings
            if self.match_role_binding_subjects(binding, subject_name, namespace)
        ]

    def match_role_binding_subjects(self, role_binding: RoleBinding, subject_name: str, namespace: str) -> bool:
        """True if the binding names the given subject in the given namespace."""
        return any(
            subject.name == subject_name and subject.namespace == namespace
            for subject in role_binding.subjects
        )

    def match_roles(self, roles: Iterable[Role], names: Iterable[str]) -> list[Role]:
        """The roles whose names are among ``names``."""
        wanted = set(names)
        return [role for role in roles if role.name in wanted]


def _policy_rule(raw: PolicyRule | Mapping[str, Any]) -> PolicyRule:
    if isinstance(raw, PolicyRule):
        return raw
    return PolicyRule(
        verbs=list(raw.get("verbs", ())),
        api_groups=list(raw.get("apiGroups", ())),
        resources=list(raw.get("resources", ())),
        resource_names=list(raw.get("resourceNames", ())),
    )


def _role(resource: Resource) -> Role:
    return Role(
        name=resource.metadata.name,
        namespace=resource.metadata.namespace,
        rules=[_policy_rule(raw) for raw in resource.spec.get("rules", ())],
    )


def _role_binding(resource: Resource) -> RoleBinding:
    return RoleBinding(
        name=resource.metadata.name,
        namespace=resource.metadata.namespace,
        subjects=[
            Subject(
                name=raw.get("name", ""),
                namespace=raw.get("namespace", ""),
                kind=raw.get("kind", ""),
            )
            for raw in resource.spec.get("subjects", ())
        ],
        role_ref=resource.spec.get("roleRef", {}).get("name", ""),
    )


class RBACValidator:
    """Validates RBAC conditions against the roles stored in a cluster.

    Roles are ``Role`` resources with ``spec["rules"]``; bindings are
    ``RoleBinding`` resources with ``spec["subjects"]`` and ``spec["roleRef"]``.
    """

    def __init__(
        self,
        cluster: Cluster,
        matcher: Matcher | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cluster = cluster
        self.matcher = matcher or Matcher()
        self.log = logger or _log

    def validate_service_account_is_bound(self, rules: ServiceAccountIsRoleBoundData) -> None:
        """Raise RBACError unless the service account holds a matching role."""
        who = f"service account: '{rules.service_account_name}', namespace: '{rules.namespace}'"

        bindings = [_role_binding(res) for res in self.cluster.list("RoleBinding", rules.namespace)]
        matched_bindings = self.matcher.match_role_bindings_subjects(
            bindings, rules.service_account_name, rules.namespace
        )
        if not matched_bindings:
            raise RBACError(f"service account not matched, {who}")

        roles = [_role(res) for res in self.cluster.list("Role", rules.namespace)]
        matched_roles = self.matcher.match_roles(roles, (binding.role_ref for binding in matched_bindings))
        if not matched_roles:
            raise RBACError(f"roles not matched, {who}")

        for role in matched_roles:
            if rules.role.name and rules.role.name != role.name:
                continue
            if rules.role.namespace and rules.role.namespace != role.namespace:
                continue
            if self.matcher.match_policy_rules(role.rules, rules.role.rules):
                return
        raise RBACError(f"failed to find any roles, matched to passed service account, {who}")