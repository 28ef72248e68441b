# runnerctl

`runnerctl` holds the decision logic for keeping a fleet of self-hosted CI
runners in the desired state. It works on plain Python dataclasses: runners,
runner pods, replica sets, deployments and stateful runner sets. On each pass
a reconciler decides what to create, replace, scale or delete.

The reconcilers act on `InMemoryCluster`, a small object store that keeps
objects by kind, namespace and name, copies on every read and write, and
raises `NotFoundError`, `AlreadyExistsError` and `InvalidError`. Any object
with the same methods (`get`, `list`, `create`, `update`, `patch`,
`patch_status`, `delete`) can take its place.

## What is inside

| Module | Contents |
| --- | --- |
| `runnerctl.schedule` | `RecurrenceRule`, `Period`, `match_schedule`, `ScheduleError`: the active and the next window of a one-time or recurring override. |
| `runnerctl.labels` | `LabelSelector`, `LabelSelectorRequirement`, `filter_labels`, `clone_and_add_label`, `clone_selector_and_add_label`, `compute_hash`. |
| `runnerctl.resources` | Dataclasses for pods, containers, runners, replica sets, deployments, stateful sets and runner sets. |
| `runnerctl.runnerpod` | `new_runner_pod`, `build_runner_pod`, `mutate_pod`, `add_finalizer`, `remove_finalizer`: these build the runner pod with its docker sidecar, volumes and environment. |
| `runnerctl.cluster` | `InMemoryCluster`, `EventRecorder`, `Event`, `Result` and the errors the reconcilers react to, including `RateLimitError`, `RunnerNotFound`, `RunnerOffline` and `RunnerBusyError`. |
| `runnerctl.runner_reconciler` | `RunnerReconciler` keeps one pod per runner. It refreshes registration tokens and restarts pods that have finished, changed, or never registered in time. |
| `runnerctl.runner_pod_reconciler` | `RunnerPodReconciler` does the same for pods that belong to a runner set, and unregisters them when they are deleted. |
| `runnerctl.replicaset` | `RunnerReplicaSetReconciler` scales runners up and down. For scaling from and to zero it keeps a registration-only runner, named by `registration_only_runner_name_for`. |
| `runnerctl.deployment` | `RunnerDeploymentReconciler` and `new_runner_replica_set` handle rollouts. A new replica set is created when the template hash changes, and old sets are removed once the newest one is fully ready. |
| `runnerctl.runnerset` | `RunnerSetReconciler` turns a runner set into a stateful set, recreating it when an update touches fields that cannot change. |

## Scheduled overrides

`match_schedule` gives the override window that is active at `now` and the
next one that starts within one recurrence period. Either of the two may be
`None`. The supported frequencies are `"Daily"`, `"Weekly"`, `"Monthly"` and
`"Yearly"`. An empty frequency means a one-time window.

```python
from datetime import datetime, timedelta, timezone

from runnerctl.schedule import RecurrenceRule, match_schedule

jst = timezone(timedelta(hours=9))
start = datetime(2021, 5, 1, tzinfo=jst)
end = datetime(2021, 5, 3, tzinfo=jst)
rule = RecurrenceRule(frequency="Weekly", until_time=datetime(2022, 5, 1, tzinfo=jst))

active, upcoming = match_schedule(datetime(2021, 5, 8, tzinfo=jst), start, end, rule)
print(active)    # 2021-05-08T00:00:00+09:00-2021-05-10T00:00:00+09:00
print(upcoming)  # 2021-05-15T00:00:00+09:00-2021-05-17T00:00:00+09:00
```

`ScheduleError` is raised for an unknown frequency. It is also raised when a
window lasts longer than the period it recurs with.

## Labels and template hashes

```python
from runnerctl.labels import clone_and_add_label, filter_labels

labels = {"runner-template-hash": "abc", "pod-template-hash": "def"}
print(filter_labels(labels, "runner-template-hash"))  # {'pod-template-hash': 'def'}
print(clone_and_add_label({"foo": "bar"}, "team", "ci"))  # {'foo': 'bar', 'team': 'ci'}
```

`compute_hash` gives a short, stable string for any template, built from all
of its fields, so two templates that differ only in their labels get
different hashes. This hash decides when a deployment rolls out a new replica
set and when a runner pod is replaced.

## Reconciling

Each reconciler has a `reconcile(namespace, name)` method. It returns a
`Result` that tells whether to requeue and after how long. Errors that the
caller should retry are raised, for example a `RateLimitError` from the
runner service. Events such as `PodCreated`, `PodDeleted` and
`RunnerDeleted` go to the `EventRecorder`, which keeps them in its `events`
list.

```python
from runnerctl.cluster import InMemoryCluster
from runnerctl.deployment import RunnerDeploymentReconciler
from runnerctl.resources import (
    ObjectMeta,
    RunnerConfig,
    RunnerDeployment,
    RunnerDeploymentSpec,
    RunnerReplicaSet,
    RunnerSpec,
    RunnerTemplate,
)

cluster = InMemoryCluster()
cluster.create(
    RunnerDeployment(
        metadata=ObjectMeta(name="example", namespace="default"),
        spec=RunnerDeploymentSpec(
            replicas=2,
            template=RunnerTemplate(spec=RunnerSpec(config=RunnerConfig(repository="example/repo"))),
        ),
    )
)

RunnerDeploymentReconciler(cluster).reconcile("default", "example")
sets = cluster.list(RunnerReplicaSet.kind, "default")
print(len(sets), sets[0].spec.replicas)  # 1 2
```

`RunnerReconciler`, `RunnerPodReconciler` and `RunnerReplicaSetReconciler`
also take a `github_client`. It is any object with `github_base_url` and the
methods `list_runners`, `remove_runner`, `is_runner_busy` and
`get_registration_token` (each taking enterprise, organization and repository
first), as their docstrings describe. `is_runner_busy` signals an unknown or
offline runner by raising `RunnerNotFound` or `RunnerOffline`.

Reconcilers accept a `clock` (and, where jitter is used, an `rng`), so that
time-dependent decisions can be driven deterministically.

## What it does not do

- It does not connect to a real cluster. `InMemoryCluster` is the only store
  provided; it has no watches, no work queue and no resync loop, so the caller
  decides when to call `reconcile` and honours the returned `Result`.
- It does not include a client for the runner service's API. The
  `github_client` must be supplied by the caller.
- It has no command-line program, no server and no webhooks.