from datetime import datetime, timedelta, timezone

import pytest

from runnerctl.cluster import (
    EventRecorder,
    InMemoryCluster,
    RateLimitError,
    Result,
    RunnerNotFound,
    RunnerOffline,
)
from runnerctl.labels import LabelSelector
from runnerctl.replicaset import RunnerReplicaSetReconciler, registration_only_runner_name_for
from runnerctl.resources import (
    EnvVar,
    ObjectMeta,
    Runner,
    RunnerConfig,
    RunnerReplicaSet,
    RunnerReplicaSetSpec,
    RunnerSpec,
    RunnerTemplate,
)
from runnerctl.runnerpod import ANNOTATION_KEY_REGISTRATION_ONLY

NS = "testns"
NAME = "example-runnerreplicaset"


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeGitHub:
    github_base_url = ""

    def __init__(self):
        self.states = {}
        self.error = None

    def sync(self, runners):
        for runner in runners:
            self.states.setdefault(runner.metadata.name, "idle")

    def is_runner_busy(self, enterprise, org, repo, name):
        if self.error is not None:
            raise self.error
        state = self.states.get(name)
        if state is None:
            raise RunnerNotFound(name)
        if state == "offline":
            raise RunnerOffline(name)
        return state == "busy"


FOO = LabelSelector(match_labels={"foo": "bar"})


@pytest.fixture
def env():
    clock = Clock(datetime(2021, 5, 1, tzinfo=timezone.utc))
    cluster = InMemoryCluster(clock=clock)
    github = FakeGitHub()
    recorder = EventRecorder()
    reconciler = RunnerReplicaSetReconciler(cluster, github, recorder=recorder, clock=clock)
    return clock, cluster, github, recorder, reconciler


def make_rs(replicas):
    return RunnerReplicaSet(
        metadata=ObjectMeta(name=NAME, namespace=NS),
        spec=RunnerReplicaSetSpec(
            replicas=replicas,
            selector=LabelSelector(match_labels={"foo": "bar"}),
            template=RunnerTemplate(
                metadata=ObjectMeta(labels={"foo": "bar"}),
                spec=RunnerSpec(
                    config=RunnerConfig(repository="test/valid", image="bar"),
                    env=[EnvVar("FOO", "FOOVALUE")],
                ),
            ),
        ),
    )


def set_replicas(cluster, replicas):
    rs = cluster.get(RunnerReplicaSet.kind, NS, NAME)
    rs.spec.replicas = replicas
    cluster.update(rs)


def runners(cluster):
    return cluster.list(Runner.kind, NS, FOO)


def test_registration_only_runner_name():
    assert registration_only_runner_name_for("foo") == "foo-registration-only"


def test_new_runner_from_template(env):
    _, _, _, _, reconciler = env
    rs = make_rs(1)
    runner = reconciler.new_runner(rs)
    assert runner.metadata.generate_name == NAME + "-"
    assert runner.metadata.namespace == NS
    assert runner.metadata.labels == {"foo": "bar"}
    assert runner.spec.config.repository == "test/valid"
    assert runner.metadata.is_controlled_by(rs)
    runner.spec.config.labels.append("x")
    assert rs.spec.template.spec.config.labels == []


def test_missing_replica_set(env):
    _, _, _, _, reconciler = env
    assert reconciler.reconcile(NS, "nothing") == Result()


def test_scale_up_and_down_to_zero(env):
    _, cluster, github, recorder, reconciler = env
    cluster.create(make_rs(1))

    reconciler.reconcile(NS, NAME)
    assert len(runners(cluster)) == 1
    github.sync(runners(cluster))

    set_replicas(cluster, 2)
    reconciler.reconcile(NS, NAME)
    assert len(runners(cluster)) == 2
    github.sync(runners(cluster))

    set_replicas(cluster, 0)
    reconciler.reconcile(NS, NAME)
    reg_only = cluster.get(Runner.kind, NS, registration_only_runner_name_for(NAME))
    assert reg_only.metadata.has_annotation(ANNOTATION_KEY_REGISTRATION_ONLY)
    assert reg_only.metadata.labels is None
    assert len(runners(cluster)) == 2

    # Still unregistered: nothing is deleted yet.
    reconciler.reconcile(NS, NAME)
    assert len(runners(cluster)) == 2

    reg_only.status.phase = "Completed"
    cluster.patch_status(reg_only)
    github.states[reg_only.metadata.name] = "offline"

    reconciler.reconcile(NS, NAME)
    assert runners(cluster) == []
    assert [e.reason for e in recorder.events] == ["RunnerDeleted", "RunnerDeleted"]


def test_registration_only_runner_removed_after_scale_from_zero(env):
    _, cluster, github, _, reconciler = env
    cluster.create(make_rs(0))
    reconciler.reconcile(NS, NAME)
    reg_name = registration_only_runner_name_for(NAME)
    reg_only = cluster.get(Runner.kind, NS, reg_name)
    reg_only.status.phase = "Completed"
    cluster.patch_status(reg_only)

    set_replicas(cluster, 1)
    reconciler.reconcile(NS, NAME)
    assert len(runners(cluster)) == 1
    assert cluster.get(Runner.kind, NS, reg_name).metadata.name == reg_name

    reconciler.reconcile(NS, NAME)
    assert len(runners(cluster)) == 1
    assert [r.metadata.name for r in cluster.list(Runner.kind, NS)] != [reg_name]
    assert all(r.metadata.name != reg_name for r in cluster.list(Runner.kind, NS))


def test_status_counts_running_runners(env):
    _, cluster, _, _, reconciler = env
    cluster.create(make_rs(2))
    reconciler.reconcile(NS, NAME)
    first = runners(cluster)[0]
    first.status.phase = "Running"
    cluster.patch_status(first)

    reconciler.reconcile(NS, NAME)
    status = cluster.get(RunnerReplicaSet.kind, NS, NAME).status
    assert status.replicas == 2
    assert status.ready_replicas == 1
    assert status.available_replicas == 1


def test_busy_runners_are_kept(env):
    _, cluster, github, _, reconciler = env
    cluster.create(make_rs(2))
    reconciler.reconcile(NS, NAME)
    for runner in runners(cluster):
        github.states[runner.metadata.name] = "busy"
    set_replicas(cluster, 1)
    reconciler.reconcile(NS, NAME)
    assert len(runners(cluster)) == 2


def test_offline_runner_is_deleted(env):
    _, cluster, github, _, reconciler = env
    cluster.create(make_rs(2))
    reconciler.reconcile(NS, NAME)
    first, second = runners(cluster)
    github.states[first.metadata.name] = "busy"
    github.states[second.metadata.name] = "offline"
    set_replicas(cluster, 1)
    reconciler.reconcile(NS, NAME)
    assert [r.metadata.name for r in runners(cluster)] == [first.metadata.name]


def test_unregistered_runners_deleted_only_after_timeout(env):
    clock, cluster, _, _, reconciler = env
    cluster.create(make_rs(2))
    reconciler.reconcile(NS, NAME)
    set_replicas(cluster, 1)

    reconciler.reconcile(NS, NAME)
    assert len(runners(cluster)) == 2

    clock.advance(minutes=16)
    reconciler.reconcile(NS, NAME)
    assert len(runners(cluster)) == 1


def test_rate_limit_is_raised(env):
    _, cluster, github, _, reconciler = env
    cluster.create(make_rs(2))
    reconciler.reconcile(NS, NAME)
    set_replicas(cluster, 1)
    github.error = RateLimitError("limit")
    with pytest.raises(RateLimitError):
        reconciler.reconcile(NS, NAME)
    assert len(runners(cluster)) == 2


def test_deleting_replica_set_is_ignored(env):
    _, cluster, _, _, reconciler = env
    rs = make_rs(1)
    rs.metadata.finalizers = ["keep"]
    cluster.create(rs)
    cluster.delete(cluster.get(RunnerReplicaSet.kind, NS, NAME))
    assert reconciler.reconcile(NS, NAME) == Result()
    assert runners(cluster) == []