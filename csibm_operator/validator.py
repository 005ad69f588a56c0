"""Generic validator dispatching rule bundles to the matching checker."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Protocol

from .rbac import ServiceAccountIsRoleBoundData


class RuleType(enum.Enum):
    """Kinds of RBAC validation."""

    SERVICE_ACCOUNT_IS_ROLE_BOUND = "ServiceAccountIsRoleBound"


@dataclass
class RBACRules:
    """Data for one RBAC validation and the kind of validation it is for."""

    data: Any
    type: RuleType = RuleType.SERVICE_ACCOUNT_IS_ROLE_BOUND


class _RBACChecker(Protocol):
    def validate_service_account_is_bound(self, rules: ServiceAccountIsRoleBoundData) -> None: ...


class Validator:
    """Validates RBAC conditions through an RBAC checker."""

    def __init__(self, rbac_validator: _RBACChecker) -> None:
        self.rbac_validator = rbac_validator

    def validate_rbac(self, rules: RBACRules) -> None:
        """Run the validation named by ``rules.type``; raise if it fails."""
        if rules.type is RuleType.SERVICE_ACCOUNT_IS_ROLE_BOUND:
            if not isinstance(rules.data, ServiceAccountIsRoleBoundData):
                raise TypeError("unknown data for service account is role bound validation")
            self.rbac_validator.validate_service_account_is_bound(rules.data)
            return
        raise ValueError(f"unknown validation rule type, {rules.type}")