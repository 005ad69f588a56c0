import pytest

from csibm_operator.kube import Cluster, ObjectMeta, Resource
from csibm_operator.rbac import (
    PolicyRule,
    RBACError,
    RBACValidator,
    Role,
    ServiceAccountIsRoleBoundData,
)
from csibm_operator.validator import RBACRules, RuleType, Validator


class _Recorder:
    def __init__(self):
        self.calls = []

    def validate_service_account_is_bound(self, rules):
        self.calls.append(rules)


def _data():
    return ServiceAccountIsRoleBoundData(
        role=Role(rules=[PolicyRule(verbs=["use"], api_groups=["policy"])]),
        service_account_name="sa",
        namespace="ns",
    )


def test_dispatches_to_rbac_validator():
    recorder = _Recorder()
    data = _data()
    Validator(recorder).validate_rbac(RBACRules(data=data))
    assert recorder.calls == [data]


def test_wrong_data_raises():
    recorder = _Recorder()
    with pytest.raises(TypeError, match="unknown data"):
        Validator(recorder).validate_rbac(RBACRules(data={"not": "data"}))
    assert recorder.calls == []


def test_unknown_rule_type_raises():
    with pytest.raises(ValueError, match="unknown validation rule type"):
        Validator(_Recorder()).validate_rbac(RBACRules(data=_data(), type="other"))


def test_default_rule_type():
    assert RBACRules(data=None).type is RuleType.SERVICE_ACCOUNT_IS_ROLE_BOUND


def test_real_rbac_validator_error_propagates():
    validator = Validator(RBACValidator(Cluster()))
    with pytest.raises(RBACError, match="service account not matched"):
        validator.validate_rbac(RBACRules(data=_data()))


def test_real_rbac_validator_success():
    cluster = Cluster(
        [
            Resource(
                kind="Role",
                metadata=ObjectMeta(name="r", namespace="ns"),
                spec={"rules": [{"verbs": ["use"], "apiGroups": ["policy"]}]},
            ),
            Resource(
                kind="RoleBinding",
                metadata=ObjectMeta(name="b", namespace="ns"),
                spec={"subjects": [{"name": "sa", "namespace": "ns"}], "roleRef": {"name": "r"}},
            ),
        ]
    )
    assert Validator(RBACValidator(cluster)).validate_rbac(RBACRules(data=_data())) is None