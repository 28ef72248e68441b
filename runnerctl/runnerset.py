"""Keeps the stateful set behind each runner set in line with the runner set."""

from __future__ import annotations

import copy
import logging
from datetime import timedelta

from runnerctl.cluster import (
    EVENT_TYPE_NORMAL,
    EventRecorder,
    InMemoryCluster,
    InvalidError,
    NotFoundError,
    Result,
)
from runnerctl.labels import (
    LABEL_KEY_RUNNER_SET_NAME,
    LABEL_KEY_RUNNER_TEMPLATE_HASH,
    LabelSelector,
    clone_and_add_label,
    clone_selector_and_add_label,
    compute_hash,
)
from runnerctl.resources import ObjectMeta, Pod, RunnerSet, StatefulSet
from runnerctl.runnerpod import new_runner_pod

__all__ = [
    "LABEL_KEY_POD_MUTATION",
    "LABEL_VALUE_POD_MUTATION",
    "RunnerSetReconciler",
]

LABEL_KEY_POD_MUTATION = "actions-runner-controller/inject-registration-token"
LABEL_VALUE_POD_MUTATION = "true"

_DEFAULT_REPLICAS = 1
_CLEANUP_REQUEUE = timedelta(seconds=5)
# Stateful sets accept no other restart policy.
_STATEFUL_SET_RESTART_POLICY = "Always"

_log = logging.getLogger(__name__)


def _selector_of(runner_set: RunnerSet) -> LabelSelector:
    selector = runner_set.spec.stateful_set.selector
    if selector is not None:
        return selector
    return LabelSelector(match_labels={LABEL_KEY_RUNNER_SET_NAME: runner_set.metadata.name})


def _replicas_or_default(value: int | None) -> int:
    return _DEFAULT_REPLICAS if value is None else value


class RunnerSetReconciler:
    """Reconciles RunnerSet objects into stateful sets of runner pods."""

    def __init__(
        self,
        cluster: InMemoryCluster,
        *,
        recorder: EventRecorder | None = None,
        github_base_url: str = "",
        runner_image: str = "",
        docker_image: str = "",
        name: str = "runnerset-controller",
    ) -> None:
        self.cluster = cluster
        self.recorder = recorder if recorder is not None else EventRecorder()
        self.github_base_url = github_base_url
        self.runner_image = runner_image
        self.docker_image = docker_image
        self.name = name or "runnerset-controller"

    def new_stateful_set(self, runner_set: RunnerSet) -> StatefulSet:
        """Build the stateful set ``runner_set`` asks for, labelled with its template hash."""
        spec = copy.deepcopy(runner_set.spec.stateful_set)
        set_name = runner_set.metadata.name

        template_meta = spec.template.metadata
        labels = clone_and_add_label(template_meta.labels or {}, LABEL_KEY_RUNNER_SET_NAME, set_name)
        labels = clone_and_add_label(labels, LABEL_KEY_POD_MUTATION, LABEL_VALUE_POD_MUTATION)
        template_meta.labels = labels

        template = Pod(metadata=copy.deepcopy(template_meta), spec=copy.deepcopy(spec.template.spec))
        pod = new_runner_pod(
            template,
            runner_set.spec.config,
            self.runner_image,
            self.docker_image,
            self.github_base_url,
            False,
        )

        spec.template.metadata = copy.deepcopy(pod.metadata)
        spec.template.spec = copy.deepcopy(pod.spec)
        spec.template.spec.restart_policy = _STATEFUL_SET_RESTART_POLICY

        template_hash = compute_hash(pod.spec)

        spec.template.metadata.labels = clone_and_add_label(
            spec.template.metadata.labels or {}, LABEL_KEY_RUNNER_TEMPLATE_HASH, template_hash
        )

        selector = clone_selector_and_add_label(
            _selector_of(runner_set), LABEL_KEY_RUNNER_TEMPLATE_HASH, template_hash
        )
        selector = clone_selector_and_add_label(selector, LABEL_KEY_RUNNER_SET_NAME, set_name)
        selector = clone_selector_and_add_label(
            selector, LABEL_KEY_POD_MUTATION, LABEL_VALUE_POD_MUTATION
        )
        spec.selector = selector

        stateful_set = StatefulSet(
            metadata=ObjectMeta(
                name=set_name,
                namespace=runner_set.metadata.namespace,
                labels=clone_and_add_label(
                    runner_set.metadata.labels or {}, LABEL_KEY_RUNNER_TEMPLATE_HASH, template_hash
                ),
            ),
            spec=spec,
        )
        stateful_set.metadata.set_controller(runner_set.kind, set_name)
        return stateful_set

    def reconcile(self, namespace: str, name: str) -> Result:
        """Bring the runner set ``namespace/name`` and its stateful set one step closer to the desired state."""
        try:
            runner_set = self.cluster.get(RunnerSet.kind, namespace, name)
        except NotFoundError:
            return Result()

        if runner_set.metadata.deletion_timestamp is not None:
            return Result()

        try:
            desired = self.new_stateful_set(runner_set)
        except Exception as exc:
            self.recorder.event(runner_set, EVENT_TYPE_NORMAL, "RunnerAutoscalingFailure", str(exc))
            _log.error("Could not create statefulset: %s", exc)
            raise

        try:
            live = self.cluster.get(StatefulSet.kind, namespace, name)
        except NotFoundError:
            self.cluster.create(desired)
            return Result()

        live_hash = (live.metadata.labels or {}).get(LABEL_KEY_RUNNER_TEMPLATE_HASH)
        if live_hash is None:
            _log.info(
                "Failed to get template hash of the live statefulset. Please delete it manually "
                "so that it is recreated"
            )
            return Result()

        desired_hash = (desired.metadata.labels or {}).get(LABEL_KEY_RUNNER_TEMPLATE_HASH)
        if desired_hash is None:
            _log.info("Failed to get template hash of the desired statefulset")
            return Result()

        if live_hash != desired_hash:
            updated = copy.deepcopy(live)
            updated.spec = copy.deepcopy(desired.spec)
            try:
                self.cluster.patch(updated)
            except InvalidError:
                # Changes to immutable fields are handled by recreating the stateful set.
                _log.error("Failed to patch statefulset %s; deleting it for force-update", name)
                self.cluster.delete(live)
                _log.info("Deleted statefulset for force-update")
                raise
            # Requeue to finish the rollout before the next resync.
            return Result(requeue_after=_CLEANUP_REQUEUE)

        current_desired = _replicas_or_default(live.spec.replicas)
        new_desired = _replicas_or_default(desired.spec.replicas)

        if current_desired != new_desired:
            updated = copy.deepcopy(live)
            updated.spec.replicas = new_desired
            self.cluster.patch(updated)
            return Result()

        status = copy.deepcopy(runner_set.status)
        status.current_replicas = live.status.current_replicas
        status.ready_replicas = live.status.ready_replicas
        status.desired_replicas = new_desired
        status.replicas = live.status.replicas
        status.updated_replicas = live.status.updated_replicas

        if runner_set.status != status:
            updated = copy.deepcopy(runner_set)
            updated.status = status
            try:
                self.cluster.patch_status(updated)
            except Exception as exc:  # noqa: BLE001 - retried immediately
                _log.info("Failed to patch runnerset status. Retrying immediately: %s", exc)
                return Result(requeue=True)

        return Result()