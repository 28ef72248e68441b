import copy
from datetime import datetime, timedelta, timezone

import pytest

from runnerctl.cluster import EventRecorder, InMemoryCluster, Result
from runnerctl.deployment import (
    LABEL_KEY_RUNNER_DEPLOYMENT_NAME,
    RunnerDeploymentReconciler,
    new_runner_replica_set,
)
from runnerctl.labels import LABEL_KEY_RUNNER_TEMPLATE_HASH, LabelSelector
from runnerctl.resources import (
    EnvVar,
    ObjectMeta,
    RunnerConfig,
    RunnerDeployment,
    RunnerDeploymentSpec,
    RunnerReplicaSet,
    RunnerSpec,
    RunnerTemplate,
)

NS = "testns"


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def example_rd():
    return RunnerDeployment(
        metadata=ObjectMeta(name="example"),
        spec=RunnerDeploymentSpec(
            selector=LabelSelector(match_labels={"foo": "bar"}),
            template=RunnerTemplate(
                metadata=ObjectMeta(labels={"foo": "bar"}),
                spec=RunnerSpec(config=RunnerConfig(labels=["project1"])),
            ),
        ),
    )


def test_new_runner_replica_set():
    reconciler = RunnerDeploymentReconciler(InMemoryCluster(), common_runner_labels=["dev"])
    rd = example_rd()

    rs = reconciler.new_runner_replica_set(rd)
    assert rs.metadata.labels["foo"] == "bar"
    hash1 = rs.metadata.labels[LABEL_KEY_RUNNER_TEMPLATE_HASH]
    assert rs.spec.template.spec.config.labels == ["project1", "dev"]
    assert rd.spec.template.spec.config.labels == ["project1"]

    rd2 = copy.deepcopy(rd)
    rd2.spec.template.spec.config.labels = ["project2"]
    hash2 = reconciler.new_runner_replica_set(rd2).metadata.labels[LABEL_KEY_RUNNER_TEMPLATE_HASH]
    assert hash1 != hash2

    rd3 = copy.deepcopy(rd)
    rd3.spec.template.metadata.labels["foo"] = "baz"
    hash3 = reconciler.new_runner_replica_set(rd3).metadata.labels[LABEL_KEY_RUNNER_TEMPLATE_HASH]
    assert hash1 != hash3


def test_new_runner_replica_set_metadata_and_selector():
    rd = example_rd()
    rd.metadata.namespace = NS
    rd.spec.replicas = 3
    rs = new_runner_replica_set(rd, [])
    assert rs.metadata.generate_name == "example-"
    assert rs.metadata.namespace == NS
    assert rs.metadata.labels[LABEL_KEY_RUNNER_DEPLOYMENT_NAME] == "example"
    assert rs.spec.replicas == 3
    assert rs.metadata.is_controlled_by(rd)
    assert rs.spec.selector.matches(rs.metadata.labels)
    assert rs.spec.selector.matches(rs.spec.template.metadata.labels)
    assert not rs.spec.selector.matches({"foo": "bar"})


def test_hash_is_stable():
    rd = example_rd()
    first = new_runner_replica_set(rd, ["dev"])
    second = new_runner_replica_set(rd, ["dev"])
    assert (
        first.metadata.labels[LABEL_KEY_RUNNER_TEMPLATE_HASH]
        == second.metadata.labels[LABEL_KEY_RUNNER_TEMPLATE_HASH]
    )


@pytest.fixture
def env():
    clock = Clock(datetime(2021, 5, 1, tzinfo=timezone.utc))
    cluster = InMemoryCluster(clock=clock)
    recorder = EventRecorder()
    reconciler = RunnerDeploymentReconciler(cluster, recorder=recorder)
    return clock, cluster, recorder, reconciler


def make_rd(name, with_selector):
    rd = RunnerDeployment(
        metadata=ObjectMeta(name=name, namespace=NS),
        spec=RunnerDeploymentSpec(
            replicas=1,
            template=RunnerTemplate(
                spec=RunnerSpec(
                    config=RunnerConfig(repository="test/valid", image="bar"),
                    env=[EnvVar("FOO", "FOOVALUE")],
                ),
            ),
        ),
    )
    if with_selector:
        rd.spec.selector = LabelSelector(match_labels={"foo": "bar"})
        rd.spec.template.metadata = ObjectMeta(labels={"foo": "bar"})
    return rd


def set_replicas(cluster, name, replicas):
    rd = cluster.get(RunnerDeployment.kind, NS, name)
    rd.spec.replicas = replicas
    cluster.update(rd)


@pytest.mark.parametrize(
    "name, with_selector, selector",
    [
        ("example-runnerdeploy-1", True, LabelSelector(match_labels={"foo": "bar"})),
        (
            "example-runnerdeploy-2",
            False,
            LabelSelector(match_labels={LABEL_KEY_RUNNER_DEPLOYMENT_NAME: "example-runnerdeploy-2"}),
        ),
    ],
)
def test_creates_and_scales_replica_set(env, name, with_selector, selector):
    _, cluster, _, reconciler = env
    cluster.create(make_rd(name, with_selector))

    assert reconciler.reconcile(NS, name) == Result()
    sets = cluster.list(RunnerReplicaSet.kind, NS, selector)
    assert len(sets) == 1
    assert sets[0].spec.replicas == 1

    set_replicas(cluster, name, 2)
    reconciler.reconcile(NS, name)
    sets = cluster.list(RunnerReplicaSet.kind, NS, selector)
    assert len(sets) == 1
    assert sets[0].spec.replicas == 2


def test_adopts_replica_set_without_selector(env):
    _, cluster, _, reconciler = env
    name = "example-runnerdeploy-2"
    cluster.create(make_rd(name, False))
    reconciler.reconcile(NS, name)

    (rs,) = cluster.list(RunnerReplicaSet.kind, NS)
    assert rs.spec.selector is not None
    rs.spec.selector = None
    cluster.update(rs)

    result = reconciler.reconcile(NS, name)
    assert result.requeue_after == timedelta(seconds=5)
    (rs,) = cluster.list(RunnerReplicaSet.kind, NS)
    assert rs.spec.selector.matches(rs.metadata.labels)


def test_status_summarizes_replica_sets(env):
    _, cluster, _, reconciler = env
    name = "example-runnerdeploy-1"
    cluster.create(make_rd(name, True))
    reconciler.reconcile(NS, name)

    (rs,) = cluster.list(RunnerReplicaSet.kind, NS)
    rs.status.replicas = 1
    rs.status.available_replicas = 1
    rs.status.ready_replicas = 1
    cluster.patch_status(rs)

    reconciler.reconcile(NS, name)
    status = cluster.get(RunnerDeployment.kind, NS, name).status
    assert status.available_replicas == 1
    assert status.ready_replicas == 1
    assert status.desired_replicas == 1
    assert status.replicas == 1
    assert status.updated_replicas == 1


def test_template_change_rolls_over(env):
    clock, cluster, recorder, reconciler = env
    name = "example-runnerdeploy-1"
    cluster.create(make_rd(name, True))
    reconciler.reconcile(NS, name)
    (old,) = cluster.list(RunnerReplicaSet.kind, NS)

    clock.advance(seconds=10)
    rd = cluster.get(RunnerDeployment.kind, NS, name)
    rd.spec.template.spec.config.image = "baz"
    cluster.update(rd)

    result = reconciler.reconcile(NS, name)
    assert result.requeue_after == timedelta(seconds=5)
    sets = cluster.list(RunnerReplicaSet.kind, NS)
    assert len(sets) == 2
    (newest,) = [s for s in sets if s.metadata.name != old.metadata.name]
    assert newest.spec.template.spec.config.image == "baz"

    # The old set stays until the newest is fully ready.
    assert reconciler.reconcile(NS, name) == Result()
    assert len(cluster.list(RunnerReplicaSet.kind, NS)) == 2

    newest.status.ready_replicas = 1
    cluster.patch_status(newest)
    reconciler.reconcile(NS, name)
    remaining = cluster.list(RunnerReplicaSet.kind, NS)
    assert [s.metadata.name for s in remaining] == [newest.metadata.name]
    assert [e.reason for e in recorder.events] == ["RunnerReplicaSetDeleted"]
    assert recorder.events[0].message == f"Deleted runnerreplicaset '{old.metadata.name}'"


def test_missing_deployment(env):
    _, _, _, reconciler = env
    assert reconciler.reconcile(NS, "missing") == Result()