"""Keeps runner pods of runner sets registered on GitHub, and unregisters them on deletion."""

from __future__ import annotations

import copy
import logging
import random
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
    RunnerBusyError,
    RunnerNotFound,
    RunnerOffline,
)
from runnerctl.labels import LABEL_KEY_RUNNER_SET_NAME
from runnerctl.resources import Pod
from runnerctl.runner_reconciler import RETRY_DELAY_ON_RATE_LIMIT
from runnerctl.runnerpod import (
    CONTAINER_NAME,
    ENV_VAR_ENTERPRISE,
    ENV_VAR_ORG,
    ENV_VAR_REPO,
    add_finalizer,
    remove_finalizer,
)

__all__ = [
    "RUNNER_POD_FINALIZER_NAME",
    "ANNOTATION_KEY_LAST_REGISTRATION_CHECK_TIME",
    "RunnerPodReconciler",
]

# The finalizer name needs at least one slash.
RUNNER_POD_FINALIZER_NAME = "actions.summerwind.dev/runner-pod"

ANNOTATION_KEY_LAST_REGISTRATION_CHECK_TIME = (
    "actions-runner-controller/last-registration-check-time"
)

_DELETION_TIMEOUT = timedelta(minutes=1)
_REGISTRATION_TIMEOUT = timedelta(minutes=10)
_DEFAULT_CHECK_INTERVAL = timedelta(minutes=1)
_DEFAULT_RECHECK_JITTER = timedelta(seconds=10)
_FORCED_DELETION_REQUEUE = timedelta(seconds=3)

_log = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_rfc3339(moment: datetime) -> str:
    text = moment.replace(microsecond=0).isoformat()
    if text.endswith("+00:00"):
        text = text[: -len("+00:00")] + "Z"
    return text


def _parse_rfc3339(text: str) -> datetime:
    normalized = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    if "T" not in normalized and "t" not in normalized:
        raise ValueError(f"{text!r} is not an RFC 3339 timestamp")
    moment = datetime.fromisoformat(normalized.replace("t", "T"))
    if moment.tzinfo is None:
        raise ValueError(f"{text!r} lacks a time zone offset")
    return moment


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


class RunnerPodReconciler:
    """Reconciles the pods of runner sets.

    ``github_client`` provides ``list_runners``, ``remove_runner`` and
    ``is_runner_busy``, each taking enterprise, organization and repository
    first. Listed runners carry ``name``, ``id``, ``busy`` and ``status``.
    """

    def __init__(
        self,
        cluster: InMemoryCluster,
        github_client: Any,
        *,
        recorder: EventRecorder | None = None,
        name: str = "runnerpod-controller",
        registration_recheck_interval: timedelta = timedelta(0),
        registration_recheck_jitter: timedelta = timedelta(0),
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.cluster = cluster
        self.github_client = github_client
        self.recorder = recorder if recorder is not None else EventRecorder()
        self.name = name or "runnerpod-controller"
        self.registration_recheck_interval = registration_recheck_interval
        self.registration_recheck_jitter = registration_recheck_jitter
        self._clock = clock or _utc_now
        self._rng = rng or random.Random()

    def reconcile(self, namespace: str, name: str) -> Result:
        """Bring the runner pod ``namespace/name`` one step closer to the desired state."""
        try:
            pod = self.cluster.get(Pod.kind, namespace, name)
        except NotFoundError:
            return Result()

        if LABEL_KEY_RUNNER_SET_NAME not in (pod.metadata.labels or {}):
            return Result()

        enterprise, org, repo = _registration_target(pod)

        if pod.metadata.deletion_timestamp is not None:
            return self._finalize(pod, enterprise, org, repo)

        finalizers, added = add_finalizer(pod.metadata.finalizers, RUNNER_POD_FINALIZER_NAME)
        if added:
            updated = copy.deepcopy(pod)
            updated.metadata.finalizers = finalizers
            self.cluster.patch(updated)
            return Result()

        restart = _has_stopped(pod)
        recheck_delay = timedelta(0)

        if not restart:
            interval = self.registration_recheck_interval
            if interval <= timedelta(0):
                interval = _DEFAULT_CHECK_INTERVAL

            last_check_text = (pod.metadata.annotations or {}).get(
                ANNOTATION_KEY_LAST_REGISTRATION_CHECK_TIME, ""
            )
            if last_check_text:
                try:
                    last_check = _parse_rfc3339(last_check_text)
                except ValueError:
                    _log.error("failed to parse last check time %r", last_check_text)
                    return Result()

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

            restart, recheck_delay = self._check_registration(pod, enterprise, org, repo, interval)

        if not restart:
            if recheck_delay > timedelta(0):
                _log.debug("Rechecking the runner registration in %s", recheck_delay)
                updated = copy.deepcopy(pod)
                annotations = dict(updated.metadata.annotations or {})
                annotations[ANNOTATION_KEY_LAST_REGISTRATION_CHECK_TIME] = _format_rfc3339(
                    self._clock()
                )
                updated.metadata.annotations = annotations
                self.cluster.patch(updated)
                return Result(requeue_after=recheck_delay)

            _log.info("Runner appears to have registered and running.")
            return Result()

        self.cluster.delete(pod)
        self.recorder.event(
            pod, EVENT_TYPE_NORMAL, "PodDeleted", f"Deleted pod '{pod.metadata.name}'"
        )
        _log.info("Deleted runner pod %s", pod.metadata.name)
        return Result()

    def _finalize(self, pod: Pod, enterprise: str, org: str, repo: str) -> Result:
        finalizers, removed = remove_finalizer(pod.metadata.finalizers, RUNNER_POD_FINALIZER_NAME)
        if removed:
            try:
                ok = self._unregister_runner(enterprise, org, repo, pod.metadata.name)
            except RateLimitError:
                _log.error(
                    "Failed to unregister runner due to GitHub API rate limits. "
                    "Delaying retry for %s to avoid excessive GitHub API calls",
                    RETRY_DELAY_ON_RATE_LIMIT,
                )
                raise
            if not ok:
                _log.debug("Runner %s no longer exists on GitHub", pod.metadata.name)

            updated = copy.deepcopy(pod)
            updated.metadata.finalizers = finalizers
            self.cluster.patch(updated)
            _log.info(
                "Removed runner %s from GitHub (repository=%s, organization=%s)",
                pod.metadata.name,
                repo,
                org,
            )

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
            pod, EVENT_TYPE_NORMAL, "PodDeleted", f"Forcefully deleted pod '{pod.metadata.name}'"
        )
        _log.info("Forcefully deleted runner pod (repository=%s)", repo)
        return Result(requeue_after=_FORCED_DELETION_REQUEUE)

    def _check_registration(
        self, pod: Pod, enterprise: str, org: str, repo: str, interval: timedelta
    ) -> tuple[bool, timedelta]:
        """Decide from the GitHub side whether to restart, and when to check again."""
        not_found = False
        offline = False
        try:
            self.github_client.is_runner_busy(enterprise, org, repo, pod.metadata.name)
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
        created = pod.metadata.creation_timestamp
        registration_did_timeout = created is None or now > created + _REGISTRATION_TIMEOUT

        restart = False
        if not_found:
            if registration_did_timeout:
                _log.info(
                    "Runner failed to register itself to GitHub in timely manner. "
                    "Recreating the pod to see if it resolves the issue."
                )
                restart = True
            else:
                _log.debug("Runner pod %s exists but is not registered yet", pod.metadata.name)
        elif offline:
            if registration_did_timeout:
                _log.info(
                    "Already existing GitHub runner still appears offline. "
                    "Recreating the pod to see if it resolves the issue."
                )
                restart = True
            else:
                _log.debug("Runner %s still appears offline; waiting", pod.metadata.name)

        delay = timedelta(0)
        if (not_found or offline) and not registration_did_timeout:
            jitter = self.registration_recheck_jitter
            if jitter <= timedelta(0):
                jitter = _DEFAULT_RECHECK_JITTER
            delay = interval + jitter + jitter * (self._rng.random() * 0.1)

        return restart, delay

    def _unregister_runner(self, enterprise: str, org: str, repo: str, name: str) -> bool:
        busy = False
        runner_id = 0
        for listed in self.github_client.list_runners(enterprise, org, repo):
            if listed.name == name:
                # A runner can stay "busy" after going offline; only an online busy one blocks.
                busy = listed.busy
                if listed.status != "offline" and busy:
                    _log.info(
                        "Runner %s delays pod deletion until it becomes offline or non-busy "
                        "(status=%s, busy=%s)",
                        listed.name,
                        listed.status,
                        listed.busy,
                    )
                    raise RunnerBusyError("runner is busy")
                runner_id = listed.id
                break

        if runner_id == 0:
            return False

        # Removing an offline but busy runner fails on GitHub's side, so it is left alone.
        if not busy:
            self.github_client.remove_runner(enterprise, org, repo, runner_id)
        return True


def _registration_target(pod: Pod) -> tuple[str, str, str]:
    enterprise = org = repo = ""
    containers = pod.spec.containers
    for env in containers[0].env if containers else []:
        if env.name == ENV_VAR_ENTERPRISE:
            enterprise = env.value
        elif env.name == ENV_VAR_ORG:
            org = env.value
        elif env.name == ENV_VAR_REPO:
            repo = env.value
    return enterprise, org, repo