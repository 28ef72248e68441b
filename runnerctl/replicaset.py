"""Keeps the number of runners of a runner replica set at the desired count."""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from runnerctl.cluster import (
    EVENT_TYPE_NORMAL,
    EventRecorder,
    InMemoryCluster,
    NotFoundError,
    RateLimitError,
    Result,
    RunnerNotFound,
    RunnerOffline,
)
from runnerctl.resources import Runner, RunnerReplicaSet, RunnerReplicaSetStatus
from runnerctl.runner_reconciler import RETRY_DELAY_ON_RATE_LIMIT
from runnerctl.runnerpod import ANNOTATION_KEY_REGISTRATION_ONLY

__all__ = ["RunnerReplicaSetReconciler", "registration_only_runner_name_for"]

_REGISTRATION_TIMEOUT = timedelta(minutes=15)

_log = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def registration_only_runner_name_for(rs_name: str) -> str:
    """Name of the registration-only runner kept for scaling ``rs_name`` from and to zero."""
    return rs_name + "-registration-only"


class RunnerReplicaSetReconciler:
    """Reconciles RunnerReplicaSet objects.

    ``github_client`` provides ``is_runner_busy(enterprise, organization,
    repository, name)``, which raises RunnerNotFound or RunnerOffline when the
    runner is not registered or not online.
    """

    def __init__(
        self,
        cluster: InMemoryCluster,
        github_client: Any,
        *,
        recorder: EventRecorder | None = None,
        name: str = "runnerreplicaset-controller",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.cluster = cluster
        self.github_client = github_client
        self.recorder = recorder if recorder is not None else EventRecorder()
        self.name = name or "runnerreplicaset-controller"
        self._clock = clock or _utc_now

    def new_runner(self, rs: RunnerReplicaSet) -> Runner:
        """Build a new runner from the template of ``rs``, controlled by ``rs``."""
        metadata = copy.deepcopy(rs.spec.template.metadata)
        metadata.generate_name = rs.metadata.name + "-"
        metadata.namespace = rs.metadata.namespace
        runner = Runner(metadata=metadata, spec=copy.deepcopy(rs.spec.template.spec))
        runner.metadata.set_controller(rs.kind, rs.metadata.name)
        return runner

    def reconcile(self, namespace: str, name: str) -> Result:
        """Create or delete runners of the replica set ``namespace/name`` as needed."""
        try:
            rs = self.cluster.get(RunnerReplicaSet.kind, namespace, name)
        except NotFoundError:
            return Result()

        if rs.metadata.deletion_timestamp is not None:
            return Result()

        selector = rs.spec.selector
        # A missing selector selects nothing.
        all_runners = [] if selector is None else self.cluster.list(Runner.kind, namespace, selector)

        current = ready = available = 0
        for runner in all_runners:
            # Runners of older replica sets share the namespace; only count our own.
            if runner.metadata.is_controlled_by(rs) and not runner.metadata.has_annotation(
                ANNOTATION_KEY_REGISTRATION_ONLY
            ):
                current += 1
                if runner.status.phase == "Running":
                    ready += 1
                    # Available equals ready as long as runners have no minimum ready time.
                    available += 1

        desired = rs.spec.replicas if rs.spec.replicas is not None else 1

        reg_only_name = registration_only_runner_name_for(rs.metadata.name)
        try:
            reg_only = self.cluster.get(Runner.kind, namespace, reg_only_name)
        except NotFoundError:
            reg_only = None

        # Scaling to zero needs a registered registration-only runner before others go;
        # scaling from zero keeps it until another runner exists.
        reg_only_needed = desired == 0 or (reg_only is not None and current == 0)

        if reg_only_needed:
            if reg_only is not None:
                if reg_only.status.phase == "":
                    _log.info("Still waiting for the registration-only runner to be registered")
                    return Result()
            else:
                runner = self.new_runner(rs)
                runner.metadata.name = reg_only_name
                runner.metadata.generate_name = ""
                runner.metadata.labels = None
                annotations = dict(runner.metadata.annotations or {})
                annotations[ANNOTATION_KEY_REGISTRATION_ONLY] = "true"
                runner.metadata.annotations = annotations
                self.cluster.create(runner)
                # Other runners are deleted only once this one has registered.
                return Result()
        elif reg_only is not None:
            try:
                self.cluster.delete(reg_only)
            except Exception as exc:  # noqa: BLE001 - any failure is retried soon
                _log.error("Retrying soon because deleting the registration-only runner failed: %s", exc)
                return Result(requeue=True)

        if current > desired:
            count = current - desired
            _log.info(
                "Deleting %d runners (desired=%d, current=%d, ready=%d)", count, desired, current, ready
            )
            candidates = self._deletion_candidates(all_runners)
            count = min(count, len(candidates))
            for candidate in candidates[:count]:
                try:
                    self.cluster.delete(candidate)
                except NotFoundError:
                    pass
                self.recorder.event(
                    rs, EVENT_TYPE_NORMAL, "RunnerDeleted", f"Deleted runner '{candidate.metadata.name}'"
                )
                _log.info("Deleted runner %s", candidate.metadata.name)
        elif desired > current:
            count = desired - current
            _log.info(
                "Creating %d runner(s) (desired=%d, available=%d, ready=%d)", count, desired, current, ready
            )
            for _ in range(count):
                self.cluster.create(self.new_runner(rs))

        status = RunnerReplicaSetStatus(
            replicas=current, ready_replicas=ready, available_replicas=available
        )
        if rs.status != status:
            updated = copy.deepcopy(rs)
            updated.status = status
            try:
                self.cluster.patch_status(updated)
            except Exception as exc:  # noqa: BLE001 - retried immediately
                _log.info("Failed to update runnerreplicaset status. Retrying immediately: %s", exc)
                return Result(requeue=True)

        return Result()

    def _deletion_candidates(self, runners: list[Runner]) -> list[Runner]:
        """Runners that are idle, offline, or never registered in time."""
        candidates = []
        for runner in runners:
            config = runner.spec.config
            not_registered = False
            offline = False
            try:
                busy = self.github_client.is_runner_busy(
                    config.enterprise, config.organization, config.repository, runner.metadata.name
                )
            except RunnerNotFound:
                _log.debug("Runner %s is not registered on GitHub yet", runner.metadata.name)
                not_registered = True
            except RunnerOffline:
                offline = True
            except RateLimitError:
                _log.error(
                    "Failed to check if runner is busy due to GitHub API rate limit. "
                    "Retrying in %s to avoid excessive GitHub API calls",
                    RETRY_DELAY_ON_RATE_LIMIT,
                )
                raise
            else:
                if not busy:
                    candidates.append(runner)
                continue

            created = runner.metadata.creation_timestamp
            now = self._clock()
            timed_out = created is None or now > created + _REGISTRATION_TIMEOUT
            if not_registered and timed_out:
                _log.info(
                    "Runner %s failed to register itself to GitHub in timely manner. "
                    "Marking the runner for scale down.",
                    runner.metadata.name,
                )
                candidates.append(runner)
            # Offline runners are always good targets for scaling down.
            if offline:
                candidates.append(runner)
        return candidates