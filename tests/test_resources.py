from datetime import datetime, timedelta, timezone

import pytest

from runnerctl.resources import (
    ObjectMeta,
    Pod,
    Runner,
    RunnerConfig,
    RunnerRegistration,
    RunnerReplicaSet,
    RunnerSpec,
    RunnerStatus,
)

NOW = datetime(2021, 5, 1, tzinfo=timezone.utc)


def _runner(token="token", repository="test/valid", expires_at=NOW + timedelta(hours=1)):
    return Runner(
        metadata=ObjectMeta(name="example", namespace="default"),
        spec=RunnerSpec(config=RunnerConfig(repository="test/valid")),
        status=RunnerStatus(
            registration=RunnerRegistration(
                repository=repository, token=token, expires_at=expires_at
            )
        ),
    )


def test_has_annotation():
    meta = ObjectMeta(annotations={"a": ""})
    assert meta.has_annotation("a") is True
    assert meta.has_annotation("b") is False


def test_has_annotation_without_annotations():
    assert ObjectMeta().has_annotation("a") is False


def test_set_controller_and_is_controlled_by():
    owner = RunnerReplicaSet(metadata=ObjectMeta(name="rs"))
    other = RunnerReplicaSet(metadata=ObjectMeta(name="rs2"))
    meta = ObjectMeta(name="child")
    meta.set_controller(owner.kind, owner.name)
    assert meta.is_controlled_by(owner) is True
    assert meta.is_controlled_by(other) is False


def test_is_controlled_by_checks_kind():
    meta = ObjectMeta(name="child")
    meta.set_controller("RunnerReplicaSet", "x")
    assert meta.is_controlled_by(Pod(metadata=ObjectMeta(name="x"))) is False


def test_uncontrolled_object_has_no_controller():
    owner = RunnerReplicaSet(metadata=ObjectMeta(name="rs"))
    assert ObjectMeta(name="child").is_controlled_by(owner) is False


def test_set_controller_same_owner_twice_is_allowed():
    meta = ObjectMeta(name="child")
    meta.set_controller("Runner", "a")
    meta.set_controller("Runner", "a")
    assert (meta.controller_kind, meta.controller_name) == ("Runner", "a")


def test_set_controller_refuses_second_controller():
    meta = ObjectMeta(name="child")
    meta.set_controller("Runner", "a")
    with pytest.raises(ValueError):
        meta.set_controller("Runner", "b")


def test_is_registerable_with_valid_token():
    assert _runner().is_registerable(NOW) is True


def test_is_registerable_without_token():
    assert _runner(token="").is_registerable(NOW) is False


def test_is_registerable_expired():
    assert _runner(expires_at=NOW - timedelta(seconds=1)).is_registerable(NOW) is False


def test_is_registerable_without_expiry():
    assert _runner(expires_at=None).is_registerable(NOW) is False


def test_is_registerable_repository_changed():
    assert _runner(repository="other/repo").is_registerable(NOW) is False


def test_name_and_namespace_properties():
    runner = _runner()
    assert (runner.name, runner.namespace) == ("example", "default")


def test_default_collections_are_independent():
    first, second = Runner(), Runner()
    first.metadata.finalizers.append("f")
    first.spec.config.labels.append("l")
    assert second.metadata.finalizers == []
    assert second.spec.config.labels == []