"""An in-memory object store with the semantics the controllers rely on, plus shared errors."""

from __future__ import annotations

import copy
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from runnerctl.labels import LabelSelector

__all__ = [
    "EVENT_TYPE_NORMAL",
    "EVENT_TYPE_WARNING",
    "ClusterError",
    "NotFoundError",
    "AlreadyExistsError",
    "InvalidError",
    "GitHubError",
    "RateLimitError",
    "RunnerNotFound",
    "RunnerOffline",
    "RunnerBusyError",
    "Result",
    "Event",
    "EventRecorder",
    "InMemoryCluster",
]

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

# Characters used for generated name suffixes.
_NAME_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"
_NAME_SUFFIX_LENGTH = 5


class ClusterError(Exception):
    """Base class of errors reported by the object store."""


class NotFoundError(ClusterError, LookupError):
    """The requested object does not exist."""


class AlreadyExistsError(ClusterError):
    """An object with the same name already exists."""


class InvalidError(ClusterError):
    """The object or the requested change is not acceptable."""


class GitHubError(Exception):
    """Base class of errors reported when talking to GitHub."""


class RateLimitError(GitHubError):
    """The GitHub API rate limit was hit."""


class RunnerNotFound(GitHubError):
    """The runner is not registered on GitHub."""


class RunnerOffline(GitHubError):
    """The runner is registered on GitHub but offline."""


class RunnerBusyError(GitHubError):
    """The runner is running a job and cannot be removed now."""


@dataclass(frozen=True)
class Result:
    """What a reconciliation asks for: an immediate or a delayed retry, or nothing."""

    requeue: bool = False
    requeue_after: timedelta = timedelta(0)


@dataclass(frozen=True)
class Event:
    """An event recorded against an object."""

    kind: str
    namespace: str
    name: str
    event_type: str
    reason: str
    message: str


@dataclass
class EventRecorder:
    """Collects the events emitted by controllers."""

    events: list[Event] = field(default_factory=list)

    def event(self, obj: Any, event_type: str, reason: str, message: str) -> None:
        """Record an event about ``obj``."""
        self.events.append(
            Event(
                kind=type(obj).kind,
                namespace=obj.metadata.namespace,
                name=obj.metadata.name,
                event_type=event_type,
                reason=reason,
                message=message,
            )
        )


def _kind_of(kind: Any) -> str:
    return kind if isinstance(kind, str) else kind.kind


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryCluster:
    """Stores objects by kind, namespace and name; every read and write copies."""

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._clock = clock or _utc_now
        self._rng = rng or random.Random()
        self._objects: dict[tuple[str, str, str], Any] = {}

    @staticmethod
    def _key(obj: Any) -> tuple[str, str, str]:
        return type(obj).kind, obj.metadata.namespace, obj.metadata.name

    def _stored(self, obj: Any) -> Any:
        key = self._key(obj)
        try:
            return self._objects[key]
        except KeyError:
            raise NotFoundError(f"{key[0]} {key[1]}/{key[2]} not found") from None

    def get(self, kind: Any, namespace: str, name: str) -> Any:
        """Return a copy of the object, or raise NotFoundError."""
        key = (_kind_of(kind), namespace, name)
        try:
            return copy.deepcopy(self._objects[key])
        except KeyError:
            raise NotFoundError(f"{key[0]} {namespace}/{name} not found") from None

    def list(self, kind: Any, namespace: str, selector: LabelSelector | None = None) -> list[Any]:
        """Return copies of the objects of a kind in a namespace matching ``selector``, by name."""
        wanted = _kind_of(kind)
        found = [
            obj
            for (obj_kind, obj_namespace, _), obj in self._objects.items()
            if obj_kind == wanted
            and obj_namespace == namespace
            and (selector is None or selector.matches(obj.metadata.labels))
        ]
        return [copy.deepcopy(obj) for obj in sorted(found, key=lambda o: o.metadata.name)]

    def create(self, obj: Any) -> Any:
        """Store a new object, naming it from ``generate_name`` if needed; return the stored copy."""
        new = copy.deepcopy(obj)
        meta = new.metadata
        if not meta.name:
            if not meta.generate_name:
                raise InvalidError("name or generate_name is required")
            meta.name = meta.generate_name + "".join(
                self._rng.choice(_NAME_ALPHABET) for _ in range(_NAME_SUFFIX_LENGTH)
            )
        key = self._key(new)
        if key in self._objects:
            raise AlreadyExistsError(f"{key[0]} {key[1]}/{key[2]} already exists")
        if meta.creation_timestamp is None:
            meta.creation_timestamp = self._clock()
        meta.deletion_timestamp = None
        self._objects[key] = new
        return copy.deepcopy(new)

    def _check_immutable(self, stored: Any, new: Any) -> None:
        if type(stored).kind != "StatefulSet":
            return
        if (
            stored.spec.selector != new.spec.selector
            or stored.spec.service_name != new.spec.service_name
        ):
            raise InvalidError(
                f"StatefulSet {new.metadata.name!r} is invalid: updates to statefulset spec for "
                "fields other than 'replicas', 'template', and 'updateStrategy' are forbidden"
            )

    def _replace(self, obj: Any) -> Any:
        stored = self._stored(obj)
        self._check_immutable(stored, obj)
        new = copy.deepcopy(obj)
        new.metadata.creation_timestamp = stored.metadata.creation_timestamp
        new.metadata.deletion_timestamp = stored.metadata.deletion_timestamp
        if hasattr(stored, "status"):
            new.status = copy.deepcopy(stored.status)
        key = self._key(new)
        self._objects[key] = new
        if new.metadata.deletion_timestamp is not None and not new.metadata.finalizers:
            self._remove(key)
        return copy.deepcopy(new)

    def update(self, obj: Any) -> Any:
        """Replace metadata and spec of an existing object; its status is kept."""
        return self._replace(obj)

    def patch(self, obj: Any) -> Any:
        """Merge metadata and spec of ``obj`` into the stored object; its status is kept."""
        return self._replace(obj)

    def patch_status(self, obj: Any) -> Any:
        """Replace only the status of an existing object."""
        stored = self._stored(obj)
        stored.status = copy.deepcopy(obj.status)
        return copy.deepcopy(stored)

    def delete(self, obj: Any, grace_period_seconds: int | None = None) -> None:
        """Delete an object; one with finalizers is only marked unless forced with a zero grace period."""
        stored = self._stored(obj)
        key = self._key(stored)
        if grace_period_seconds == 0 or not stored.metadata.finalizers:
            self._remove(key)
            return
        if stored.metadata.deletion_timestamp is None:
            stored.metadata.deletion_timestamp = self._clock()

    def _remove(self, key: tuple[str, str, str]) -> None:
        owner = self._objects.pop(key, None)
        if owner is None:
            return
        kind, namespace, name = key
        dependents = [
            obj
            for (_, obj_namespace, _), obj in self._objects.items()
            if obj_namespace == namespace
            and obj.metadata.controller_kind == kind
            and obj.metadata.controller_name == name
        ]
        for dependent in dependents:
            if self._key(dependent) in self._objects:
                self.delete(dependent)