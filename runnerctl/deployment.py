"""Rolls runner replica sets over as the template of a runner deployment changes."""

from __future__ import annotations

import copy
import logging
from collections.abc import Sequence
from datetime import timedelta

from runnerctl.cluster import EVENT_TYPE_NORMAL, EventRecorder, InMemoryCluster, NotFoundError, Result
from runnerctl.labels import (
    LABEL_KEY_RUNNER_TEMPLATE_HASH,
    LabelSelector,
    clone_and_add_label,
    clone_selector_and_add_label,
    compute_hash,
)
from runnerctl.resources import (
    ObjectMeta,
    RunnerDeployment,
    RunnerDeploymentStatus,
    RunnerReplicaSet,
    RunnerReplicaSetSpec,
)

__all__ = [
    "LABEL_KEY_RUNNER_DEPLOYMENT_NAME",
    "RunnerDeploymentReconciler",
    "new_runner_replica_set",
]

LABEL_KEY_RUNNER_DEPLOYMENT_NAME = "runner-deployment-name"

_DEFAULT_REPLICAS = 1
_CLEANUP_REQUEUE = timedelta(seconds=5)

_log = logging.getLogger(__name__)


def _selector_of(rd: RunnerDeployment) -> LabelSelector:
    if rd.spec.selector is not None:
        return rd.spec.selector
    return LabelSelector(match_labels={LABEL_KEY_RUNNER_DEPLOYMENT_NAME: rd.metadata.name})


def new_runner_replica_set(
    rd: RunnerDeployment, common_runner_labels: Sequence[str]
) -> RunnerReplicaSet:
    """Build the replica set the deployment ``rd`` currently asks for, labelled with its template hash."""
    template = copy.deepcopy(rd.spec.template)
    template.spec.config.labels.extend(common_runner_labels)

    template_hash = compute_hash(template)

    labels = clone_and_add_label(
        template.metadata.labels or {}, LABEL_KEY_RUNNER_TEMPLATE_HASH, template_hash
    )
    # Used by the default selector when the deployment has none.
    labels = clone_and_add_label(labels, LABEL_KEY_RUNNER_DEPLOYMENT_NAME, rd.metadata.name)
    template.metadata.labels = labels

    selector = clone_selector_and_add_label(
        _selector_of(rd), LABEL_KEY_RUNNER_TEMPLATE_HASH, template_hash
    )

    rs = RunnerReplicaSet(
        metadata=ObjectMeta(
            generate_name=rd.metadata.name + "-",
            namespace=rd.metadata.namespace,
            labels=dict(labels),
        ),
        spec=RunnerReplicaSetSpec(
            replicas=rd.spec.replicas,
            selector=selector,
            template=template,
        ),
    )
    rs.metadata.set_controller(rd.kind, rd.metadata.name)
    return rs


def _replicas_or_default(value: int | None) -> int:
    return _DEFAULT_REPLICAS if value is None else value


class RunnerDeploymentReconciler:
    """Reconciles RunnerDeployment objects."""

    def __init__(
        self,
        cluster: InMemoryCluster,
        *,
        recorder: EventRecorder | None = None,
        common_runner_labels: Sequence[str] = (),
        name: str = "runnerdeployment-controller",
    ) -> None:
        self.cluster = cluster
        self.recorder = recorder if recorder is not None else EventRecorder()
        self.common_runner_labels = list(common_runner_labels)
        self.name = name or "runnerdeployment-controller"

    def new_runner_replica_set(self, rd: RunnerDeployment) -> RunnerReplicaSet:
        """Build the desired replica set of ``rd`` with this controller's common labels."""
        return new_runner_replica_set(rd, self.common_runner_labels)

    def _owned_replica_sets(self, rd: RunnerDeployment) -> list[RunnerReplicaSet]:
        owned = [
            rs
            for rs in self.cluster.list(RunnerReplicaSet.kind, rd.metadata.namespace)
            if rs.metadata.controller_kind == rd.kind
            and rs.metadata.controller_name == rd.metadata.name
        ]

        def newest_first(rs: RunnerReplicaSet):
            created = rs.metadata.creation_timestamp
            return (0,) if created is None else (1, created)

        return sorted(owned, key=newest_first, reverse=True)

    def reconcile(self, namespace: str, name: str) -> Result:
        """Bring the deployment ``namespace/name`` and its replica sets one step closer to the desired state."""
        try:
            rd = self.cluster.get(RunnerDeployment.kind, namespace, name)
        except NotFoundError:
            return Result()

        if rd.metadata.deletion_timestamp is not None:
            return Result()

        replica_sets = self._owned_replica_sets(rd)
        newest = replica_sets[0] if replica_sets else None
        old_sets = replica_sets[1:]

        try:
            desired = self.new_runner_replica_set(rd)
        except Exception as exc:
            self.recorder.event(rd, EVENT_TYPE_NORMAL, "RunnerAutoscalingFailure", str(exc))
            _log.error("Could not create runnerreplicaset: %s", exc)
            raise

        if newest is None:
            self.cluster.create(desired)
            return Result()

        newest_hash = (newest.metadata.labels or {}).get(LABEL_KEY_RUNNER_TEMPLATE_HASH)
        if newest_hash is None:
            _log.info(
                "Failed to get template hash of newest runnerreplicaset. Please delete it manually "
                "so that it is recreated"
            )
            return Result()

        desired_hash = (desired.metadata.labels or {}).get(LABEL_KEY_RUNNER_TEMPLATE_HASH)
        if desired_hash is None:
            _log.info("Failed to get template hash of desired runnerreplicaset")
            return Result()

        if newest_hash != desired_hash:
            self.cluster.create(desired)
            # Requeue to clean up the old replica sets before the next resync.
            return Result(requeue_after=_CLEANUP_REQUEUE)

        if newest.spec.selector != desired.spec.selector:
            # Replica sets made by older controllers lack the selector; adopt it in place.
            update_set = copy.deepcopy(newest)
            update_set.spec = copy.deepcopy(desired.spec)
            self.cluster.update(update_set)
            return Result(requeue_after=_CLEANUP_REQUEUE)

        current_desired = _replicas_or_default(newest.spec.replicas)
        new_desired = _replicas_or_default(desired.spec.replicas)

        if current_desired != new_desired:
            newest.spec.replicas = new_desired
            self.cluster.update(newest)
            return Result()

        if old_sets:
            ready = newest.status.ready_replicas or 0
            if ready < current_desired:
                _log.info(
                    "Waiting until the newest runnerreplicaset %s is 100%% available "
                    "(ready=%d, desired=%d, old=%d)",
                    newest.metadata.name,
                    ready,
                    current_desired,
                    len(old_sets),
                )
                return Result()

            _log.info("The newest runnerreplicaset is 100% available. Deleting old runnerreplicasets")
            for old in old_sets:
                self.cluster.delete(old)
                self.recorder.event(
                    rd,
                    EVENT_TYPE_NORMAL,
                    "RunnerReplicaSetDeleted",
                    f"Deleted runnerreplicaset '{old.metadata.name}'",
                )
                _log.info("Deleted runnerreplicaset %s of %s", old.metadata.name, rd.metadata.name)

        total_current = sum(rs.status.replicas or 0 for rs in [newest, *old_sets])
        total_available = sum(rs.status.available_replicas or 0 for rs in [newest, *old_sets])

        status = RunnerDeploymentStatus(
            available_replicas=total_available,
            ready_replicas=total_available,
            desired_replicas=new_desired,
            replicas=total_current,
            updated_replicas=newest.status.replicas or 0,
        )

        if rd.status != status:
            updated = copy.deepcopy(rd)
            updated.status = status
            try:
                self.cluster.patch_status(updated)
            except Exception as exc:  # noqa: BLE001 - retried immediately
                _log.info("Failed to patch runnerdeployment status. Retrying immediately: %s", exc)
                return Result(requeue=True)

        return Result()