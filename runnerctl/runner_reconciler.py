"""Keeps the pod of each runner in line with the runner and its GitHub registration."""

from __future__ import annotations

import copy
import logging
import random
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from runnerctl.cluster import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    AlreadyExistsError,
    EventRecorder,
    InMemoryCluster,
    NotFoundError,
    RateLimitError,
    Result,
    RunnerBusyError,
    RunnerNotFound,
    RunnerOffline,
)
from runnerctl.labels import LABEL_KEY_POD_TEMPLATE_HASH
from runnerctl.resources import EnvVar, Pod, Runner, RunnerRegistration
from runnerctl.runnerpod import (
    ANNOTATION_KEY_REGISTRATION_ONLY,
    CONTAINER_NAME,
    FINALIZER_NAME,
    add_finalizer,
    build_runner_pod,
    remove_finalizer,
)

__all__ = ["RETRY_DELAY_ON_RATE_LIMIT", "RunnerReconciler"]

RETRY_DELAY_ON_RATE_LIMIT = timedelta(seconds=30)

_DELETION_TIMEOUT = timedelta(minutes=1)
_REGISTRATION_TIMEOUT = timedelta(minutes=10)
_DEFAULT_CHECK_INTERVAL = timedelta(minutes=1)
_DEFAULT_RECHECK_JITTER = timedelta(seconds=10)
_FORCED_DELETION_REQUEUE = timedelta(seconds=3)

_log = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RunnerReconciler:
    """Reconciles Runner objects.

    ``github_client`` provides ``github_base_url`` and the methods
    ``list_runners``, ``remove_runner``, ``is_runner_busy`` and
    ``get_registration_token``, each taking enterprise, organization and
    repository first. Listed runners carry ``name``, ``id``, ``busy`` and
    ``status``; tokens carry ``token`` and ``expires_at``.
    """

    def __init__(
        self,
        cluster: InMemoryCluster,
        github_client: Any,
        *,
        recorder: EventRecorder | None = None,
        runner_image: str = "",
        docker_image: str = "",
        name: str = "runner-controller",
        registration_recheck_interval: timedelta = timedelta(0),
        registration_recheck_jitter: timedelta = timedelta(0),
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.cluster = cluster
        self.github_client = github_client
        self.recorder = recorder if recorder is not None else EventRecorder()
        self.runner_image = runner_image
        self.docker_image = docker_image
        self.name = name or "runner-controller"
        self.registration_recheck_interval = registration_recheck_interval
        self.registration_recheck_jitter = registration_recheck_jitter
        self._clock = clock or _utc_now
        self._rng = rng or random.Random()

    def reconcile(self, namespace: str, name: str) -> Result:
        """Bring the runner ``namespace/name`` and its pod one step closer to the desired state."""
        try:
            runner = self.cluster.get(Runner.kind, namespace, name)
        except NotFoundError:
            return Result()

        meta = runner.metadata
        if meta.deletion_timestamp is not None:
            return self._finalize(runner)

        finalizers, added = add_finalizer(meta.finalizers, FINALIZER_NAME)
        if added:
            updated = copy.deepcopy(runner)
            updated.metadata.finalizers = finalizers
            self.cluster.update(updated)
            return Result()

        registration_only = meta.has_annotation(ANNOTATION_KEY_REGISTRATION_ONLY)
        if registration_only and runner.status.phase != "":
            # The registration-only runner has registered and stopped; its pod only wastes resources.
            return self._delete_registration_only_pod(runner)

        try:
            pod = self.cluster.get(Pod.kind, namespace, name)
        except NotFoundError:
            return self._create_pod(runner)
        return self._reconcile_pod(runner, pod, registration_only)

    def _finalize(self, runner: Runner) -> Result:
        finalizers, removed = remove_finalizer(runner.metadata.finalizers, FINALIZER_NAME)
        if not removed:
            return Result()

        config = runner.spec.config
        if runner.status.registration.token:
            try:
                ok = self._unregister_runner(
                    config.enterprise, config.organization, config.repository, runner.name
                )
            except RateLimitError:
                _log.error(
                    "Failed to unregister runner due to GitHub API rate limits. "
                    "Delaying retry for %s to avoid excessive GitHub API calls",
                    RETRY_DELAY_ON_RATE_LIMIT,
                )
                raise
            if not ok:
                _log.debug("Runner %s no longer exists on GitHub", runner.name)
        else:
            _log.debug("Runner %s was never registered on GitHub", runner.name)

        updated = copy.deepcopy(runner)
        updated.metadata.finalizers = finalizers
        self.cluster.patch(updated)
        _log.info(
            "Removed runner %s from GitHub (repository=%s, organization=%s)",
            runner.name,
            config.repository,
            config.organization,
        )
        return Result()

    def _delete_registration_only_pod(self, runner: Runner) -> Result:
        try:
            pod = self.cluster.get(Pod.kind, runner.namespace, runner.name)
            self.cluster.delete(pod)
        except NotFoundError:
            pass
        except Exception as exc:  # noqa: BLE001 - any other failure is retried soon
            _log.info("Retrying soon as handling the registration-only runner pod failed: %s", exc)
            return Result(requeue=True)
        _log.info("Deleted registration-only runner pod to free node and cluster resources")
        return Result()

    def _create_pod(self, runner: Runner) -> Result:
        if self._update_registration_token(runner):
            return Result(requeue=True)

        new_pod = self._new_pod(runner)
        try:
            self.cluster.create(new_pod)
        except AlreadyExistsError:
            # The pod may have been created by an earlier pass that is not yet visible.
            _log.info("Pod %s already exists; will retry when it is observed", new_pod.metadata.name)
            return Result()

        self.recorder.event(
            runner, EVENT_TYPE_NORMAL, "PodCreated", f"Created pod '{new_pod.metadata.name}'"
        )
        _log.info("Created runner pod (repository=%s)", runner.spec.config.repository)
        return Result()

    def _reconcile_pod(self, runner: Runner, pod: Pod, registration_only: bool) -> Result:
        if pod.metadata.deletion_timestamp is not None:
            return self._handle_terminating_pod(runner, pod)

        stopped = _has_stopped(pod)
        restart = stopped
        if registration_only and stopped:
            restart = False
            _log.info(
                "Registration-only runner has stopped; it is recreated only when its spec changes"
            )

        if self._update_registration_token(runner):
            return Result(requeue=True)

        new_pod = self._new_pod(runner)
        if registration_only:
            new_pod.spec.containers[0].env.append(EnvVar("RUNNER_REGISTRATION_ONLY", "true"))

        recheck_delay = timedelta(0)
        if not restart:
            interval = self.registration_recheck_interval
            if interval <= timedelta(0):
                interval = _DEFAULT_CHECK_INTERVAL

            last_check = runner.status.last_registration_check_time
            if last_check is not None:
                next_check = last_check + interval
                # A requeue may fire slightly early; ignore remaining delays under a second.
                requeue_after = next_check - self._clock() - timedelta(seconds=1)
                if requeue_after > timedelta(0):
                    _log.info(
                        "Skipped registration check because it's deferred until %s. "
                        "Retrying in %s at latest",
                        next_check,
                        requeue_after,
                    )
                    return Result(requeue_after=requeue_after)

            restart, recheck_delay = self._check_registration(
                runner, pod, new_pod, registration_only, interval
            )

        if not restart:
            if recheck_delay > timedelta(0):
                _log.debug("Rechecking the runner registration in %s", recheck_delay)
                updated = copy.deepcopy(runner)
                updated.status.last_registration_check_time = self._clock()
                self.cluster.patch_status(updated)
                return Result(requeue_after=recheck_delay)

            if runner.status.phase != pod.status.phase:
                if pod.status.phase == "Running":
                    _log.info("Runner appears to have registered and running.")
                updated = copy.deepcopy(runner)
                updated.status.phase = pod.status.phase
                updated.status.reason = pod.status.reason
                updated.status.message = pod.status.message
                self.cluster.patch_status(updated)
            return Result()

        self.cluster.delete(pod)
        self.recorder.event(
            runner, EVENT_TYPE_NORMAL, "PodDeleted", f"Deleted pod '{new_pod.metadata.name}'"
        )
        _log.info("Deleted runner pod (repository=%s)", runner.spec.config.repository)
        return Result()

    def _check_registration(
        self,
        runner: Runner,
        pod: Pod,
        new_pod: Pod,
        registration_only: bool,
        interval: timedelta,
    ) -> tuple[bool, timedelta]:
        """Decide from the GitHub side whether to restart, and when to check again."""
        config = runner.spec.config
        not_found = False
        offline = False
        busy = False
        try:
            busy = self.github_client.is_runner_busy(
                config.enterprise, config.organization, config.repository, runner.name
            )
        except RunnerNotFound:
            not_found = True
        except RunnerOffline:
            offline = True
        except RateLimitError:
            _log.error(
                "Failed to check if runner is busy due to GitHub API rate limit. "
                "Retrying in %s to avoid excessive GitHub API calls",
                RETRY_DELAY_ON_RATE_LIMIT,
            )
            raise

        now = self._clock()
        restart = False

        current_hash = (pod.metadata.labels or {}).get(LABEL_KEY_POD_TEMPLATE_HASH, "")
        new_hash = (new_pod.metadata.labels or {}).get(LABEL_KEY_POD_TEMPLATE_HASH, "")
        if not busy and current_hash != new_hash:
            restart = True

        created = pod.metadata.creation_timestamp
        registration_did_timeout = created is None or now > created + _REGISTRATION_TIMEOUT

        if not_found:
            if registration_did_timeout:
                _log.info(
                    "Runner failed to register itself to GitHub in timely manner. "
                    "Recreating the pod to see if it resolves the issue."
                )
                restart = True
            else:
                _log.debug("Runner pod %s exists but is not registered yet", runner.name)
        elif offline:
            if registration_only:
                _log.info("Registration-only runner has successfully been registered.")
            elif registration_did_timeout:
                _log.info(
                    "Already existing GitHub runner still appears offline. "
                    "Recreating the pod to see if it resolves the issue."
                )
                restart = True
            else:
                _log.debug("Runner %s still appears offline; waiting", runner.name)

        delay = timedelta(0)
        if (not_found or (offline and not registration_only)) and not registration_did_timeout:
            jitter = self.registration_recheck_jitter
            if jitter <= timedelta(0):
                jitter = _DEFAULT_RECHECK_JITTER
            delay = interval + jitter + jitter * (self._rng.random() * 0.1)

        return restart, delay

    def _handle_terminating_pod(self, runner: Runner, pod: Pod) -> Result:
        now = self._clock()
        if now <= pod.metadata.deletion_timestamp + _DELETION_TIMEOUT:
            return Result()

        _log.info(
            "Failed to delete pod within %s. This is typically the case when a node became "
            "unreachable. Forcefully deleting the pod to not get stuck.",
            _DELETION_TIMEOUT,
        )
        try:
            self.cluster.delete(pod, grace_period_seconds=0)
        except NotFoundError:
            return Result(requeue=True)

        self.recorder.event(
            runner, EVENT_TYPE_NORMAL, "PodDeleted", f"Forcefully deleted pod '{pod.metadata.name}'"
        )
        _log.info("Forcefully deleted runner pod (repository=%s)", runner.spec.config.repository)
        return Result(requeue_after=_FORCED_DELETION_REQUEUE)

    def _unregister_runner(self, enterprise: str, org: str, repo: str, name: str) -> bool:
        runner_id = 0
        for listed in self.github_client.list_runners(enterprise, org, repo):
            if listed.name == name:
                if listed.busy:
                    raise RunnerBusyError("runner is busy")
                runner_id = listed.id
                break

        if runner_id == 0:
            return False

        self.github_client.remove_runner(enterprise, org, repo, runner_id)
        return True

    def _update_registration_token(self, runner: Runner) -> bool:
        if runner.is_registerable(self._clock()):
            return False

        config = runner.spec.config
        try:
            issued = self.github_client.get_registration_token(
                config.enterprise, config.organization, config.repository, runner.name
            )
        except Exception:
            self.recorder.event(
                runner,
                EVENT_TYPE_WARNING,
                "FailedUpdateRegistrationToken",
                "Updating registration token failed",
            )
            _log.error("Failed to get new registration token for %s", runner.name)
            raise

        updated = copy.deepcopy(runner)
        updated.status.registration = RunnerRegistration(
            organization=config.organization,
            repository=config.repository,
            labels=list(config.labels),
            token=issued.token,
            expires_at=issued.expires_at,
        )
        self.cluster.patch_status(updated)

        self.recorder.event(
            runner,
            EVENT_TYPE_NORMAL,
            "RegistrationTokenUpdated",
            "Successfully update registration token",
        )
        _log.info("Updated registration token (repository=%s)", config.repository)
        return True

    def _new_pod(self, runner: Runner) -> Pod:
        return build_runner_pod(
            runner, self.runner_image, self.docker_image, self.github_client.github_base_url
        )


def _has_stopped(pod: Pod) -> bool:
    """A pod that succeeded, or whose runner container exited cleanly, must be restarted."""
    if pod.status.phase == "Succeeded":
        return True
    if pod.status.phase != "Running":
        return False
    return any(
        status.name == CONTAINER_NAME and status.terminated_exit_code == 0
        for status in pod.status.container_statuses
    )