"""Data model of the cluster objects handled by the runner controllers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from runnerctl.labels import LabelSelector

__all__ = [
    "EnvVar",
    "VolumeMount",
    "Volume",
    "SecurityContext",
    "Container",
    "ContainerStatus",
    "PodSpec",
    "PodStatus",
    "ObjectMeta",
    "Pod",
    "RunnerConfig",
    "RunnerSpec",
    "RunnerRegistration",
    "RunnerStatus",
    "Runner",
    "RunnerTemplate",
    "RunnerReplicaSetSpec",
    "RunnerReplicaSetStatus",
    "RunnerReplicaSet",
    "RunnerDeploymentSpec",
    "RunnerDeploymentStatus",
    "RunnerDeployment",
    "StatefulSetSpec",
    "StatefulSetStatus",
    "StatefulSet",
    "RunnerSetSpec",
    "RunnerSetStatus",
    "RunnerSet",
]


@dataclass
class EnvVar:
    """An environment variable of a container."""

    name: str
    value: str = ""


@dataclass
class VolumeMount:
    """Where a volume is mounted inside a container."""

    name: str
    mount_path: str
    read_only: bool = False


@dataclass
class Volume:
    """A pod volume; an empty directory unless ``source`` describes another kind."""

    name: str
    empty_dir: bool = True
    size_limit: str | None = None
    source: dict[str, Any] | None = None


@dataclass
class SecurityContext:
    """Security settings of a pod or a container."""

    privileged: bool | None = None
    se_linux_options: dict[str, str] | None = None


@dataclass
class Container:
    """A container of a pod."""

    name: str
    image: str = ""
    image_pull_policy: str = ""
    env: list[EnvVar] = field(default_factory=list)
    env_from: list[Any] = field(default_factory=list)
    resources: Any = None
    volume_mounts: list[VolumeMount] = field(default_factory=list)
    security_context: SecurityContext | None = None
    args: list[str] = field(default_factory=list)


@dataclass
class ContainerStatus:
    """Observed state of one container; ``terminated_exit_code`` is set once it ended."""

    name: str
    terminated_exit_code: int | None = None


@dataclass
class PodSpec:
    """Desired state of a pod."""

    containers: list[Container] = field(default_factory=list)
    init_containers: list[Container] = field(default_factory=list)
    ephemeral_containers: list[Container] = field(default_factory=list)
    volumes: list[Volume] = field(default_factory=list)
    security_context: SecurityContext | None = None
    restart_policy: str = ""
    node_selector: dict[str, str] | None = None
    service_account_name: str = ""
    automount_service_account_token: bool | None = None
    image_pull_secrets: list[str] = field(default_factory=list)
    affinity: Any = None
    tolerations: list[Any] = field(default_factory=list)
    termination_grace_period_seconds: int | None = None
    host_aliases: list[Any] = field(default_factory=list)
    runtime_class_name: str | None = None
    enable_service_links: bool | None = None


@dataclass
class PodStatus:
    """Observed state of a pod."""

    phase: str = ""
    reason: str = ""
    message: str = ""
    container_statuses: list[ContainerStatus] = field(default_factory=list)


@dataclass
class ObjectMeta:
    """Identity, labels, annotations and lifecycle data of an object."""

    name: str = ""
    namespace: str = ""
    generate_name: str = ""
    labels: dict[str, str] | None = None
    annotations: dict[str, str] | None = None
    finalizers: list[str] = field(default_factory=list)
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None
    controller_kind: str = ""
    controller_name: str = ""

    def has_annotation(self, key: str) -> bool:
        """Tell whether the annotation ``key`` is set, whatever its value."""
        return key in (self.annotations or {})

    def is_controlled_by(self, owner: Any) -> bool:
        """Tell whether ``owner`` is the controller of this object."""
        return (
            self.controller_kind != ""
            and self.controller_kind == owner.kind
            and self.controller_name == owner.metadata.name
        )

    def set_controller(self, owner_kind: str, owner_name: str) -> None:
        """Record the controlling owner; refuses to replace a different controller."""
        if self.controller_kind and (self.controller_kind, self.controller_name) != (
            owner_kind,
            owner_name,
        ):
            raise ValueError(
                f"object {self.name or self.generate_name!r} is already owned by another "
                f"{self.controller_kind} controller {self.controller_name!r}"
            )
        self.controller_kind = owner_kind
        self.controller_name = owner_name


@dataclass
class _Resource:
    kind: ClassVar[str] = ""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace


@dataclass
class Pod(_Resource):
    """A pod: its metadata, desired spec and observed status."""

    kind: ClassVar[str] = "Pod"

    spec: PodSpec = field(default_factory=PodSpec)
    status: PodStatus = field(default_factory=PodStatus)


@dataclass
class RunnerConfig:
    """Where a runner registers and how its docker daemon is set up."""

    repository: str = ""
    organization: str = ""
    enterprise: str = ""
    labels: list[str] = field(default_factory=list)
    group: str = ""
    image: str = ""
    work_dir: str = ""
    dockerd_within_runner_container: bool | None = None
    docker_enabled: bool | None = None
    ephemeral: bool | None = None
    docker_mtu: int | None = None
    docker_registry_mirror: str | None = None
    volume_size_limit: str | None = None


@dataclass
class RunnerSpec:
    """Desired state of a runner: its registration settings and pod settings."""

    config: RunnerConfig = field(default_factory=RunnerConfig)
    containers: list[Container] = field(default_factory=list)
    image_pull_policy: str = ""
    env_from: list[Any] = field(default_factory=list)
    env: list[EnvVar] = field(default_factory=list)
    resources: Any = None
    docker_volume_mounts: list[VolumeMount] = field(default_factory=list)
    dockerd_container_resources: Any = None
    security_context: SecurityContext | None = None
    enable_service_links: bool | None = None
    volume_mounts: list[VolumeMount] = field(default_factory=list)
    volumes: list[Volume] = field(default_factory=list)
    init_containers: list[Container] = field(default_factory=list)
    node_selector: dict[str, str] | None = None
    service_account_name: str = ""
    automount_service_account_token: bool | None = None
    sidecar_containers: list[Container] = field(default_factory=list)
    image_pull_secrets: list[str] = field(default_factory=list)
    affinity: Any = None
    tolerations: list[Any] = field(default_factory=list)
    ephemeral_containers: list[Container] = field(default_factory=list)
    termination_grace_period_seconds: int | None = None
    host_aliases: list[Any] = field(default_factory=list)
    runtime_class_name: str | None = None


@dataclass
class RunnerRegistration:
    """The registration token a runner was last given, and what it was issued for."""

    organization: str = ""
    repository: str = ""
    labels: list[str] = field(default_factory=list)
    token: str = ""
    expires_at: datetime | None = None


@dataclass
class RunnerStatus:
    """Observed state of a runner."""

    registration: RunnerRegistration = field(default_factory=RunnerRegistration)
    phase: str = ""
    reason: str = ""
    message: str = ""
    last_registration_check_time: datetime | None = None


@dataclass
class Runner(_Resource):
    """A self-hosted runner backed by one pod."""

    kind: ClassVar[str] = "Runner"

    spec: RunnerSpec = field(default_factory=RunnerSpec)
    status: RunnerStatus = field(default_factory=RunnerStatus)

    def is_registerable(self, now: datetime) -> bool:
        """Tell whether the stored registration token is still usable at ``now``."""
        registration = self.status.registration
        if registration.repository != self.spec.config.repository:
            return False
        if registration.organization != self.spec.config.organization:
            return False
        if registration.token == "":
            return False
        if registration.expires_at is None or registration.expires_at < now:
            return False
        return True


@dataclass
class RunnerTemplate:
    """Metadata and spec from which runners are created."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: RunnerSpec = field(default_factory=RunnerSpec)


@dataclass
class RunnerReplicaSetSpec:
    """Desired number of runners, how to select them and how to create them."""

    replicas: int | None = None
    selector: LabelSelector | None = None
    template: RunnerTemplate = field(default_factory=RunnerTemplate)


@dataclass
class RunnerReplicaSetStatus:
    """Observed runner counts of a replica set."""

    replicas: int | None = None
    ready_replicas: int | None = None
    available_replicas: int | None = None


@dataclass
class RunnerReplicaSet(_Resource):
    """A set of identical runners kept at a desired count."""

    kind: ClassVar[str] = "RunnerReplicaSet"

    spec: RunnerReplicaSetSpec = field(default_factory=RunnerReplicaSetSpec)
    status: RunnerReplicaSetStatus = field(default_factory=RunnerReplicaSetStatus)


@dataclass
class RunnerDeploymentSpec:
    """Desired state of a runner deployment."""

    replicas: int | None = None
    selector: LabelSelector | None = None
    template: RunnerTemplate = field(default_factory=RunnerTemplate)


@dataclass
class RunnerDeploymentStatus:
    """Observed runner counts of a deployment."""

    available_replicas: int | None = None
    ready_replicas: int | None = None
    desired_replicas: int | None = None
    replicas: int | None = None
    updated_replicas: int | None = None


@dataclass
class RunnerDeployment(_Resource):
    """Rolls runner replica sets over as its template changes."""

    kind: ClassVar[str] = "RunnerDeployment"

    spec: RunnerDeploymentSpec = field(default_factory=RunnerDeploymentSpec)
    status: RunnerDeploymentStatus = field(default_factory=RunnerDeploymentStatus)


@dataclass
class StatefulSetSpec:
    """Desired state of a stateful set."""

    replicas: int | None = None
    selector: LabelSelector | None = None
    template: Pod = field(default_factory=Pod)
    service_name: str = ""


@dataclass
class StatefulSetStatus:
    """Observed pod counts of a stateful set."""

    replicas: int = 0
    ready_replicas: int = 0
    current_replicas: int = 0
    updated_replicas: int = 0


@dataclass
class StatefulSet(_Resource):
    """A stateful set of pods."""

    kind: ClassVar[str] = "StatefulSet"

    spec: StatefulSetSpec = field(default_factory=StatefulSetSpec)
    status: StatefulSetStatus = field(default_factory=StatefulSetStatus)


@dataclass
class RunnerSetSpec:
    """Runner settings together with the stateful set that runs the runners."""

    config: RunnerConfig = field(default_factory=RunnerConfig)
    stateful_set: StatefulSetSpec = field(default_factory=StatefulSetSpec)


@dataclass
class RunnerSetStatus:
    """Observed runner counts of a runner set."""

    current_replicas: int | None = None
    ready_replicas: int | None = None
    desired_replicas: int | None = None
    replicas: int | None = None
    updated_replicas: int | None = None


@dataclass
class RunnerSet(_Resource):
    """Runners managed through a stateful set."""

    kind: ClassVar[str] = "RunnerSet"

    spec: RunnerSetSpec = field(default_factory=RunnerSetSpec)
    status: RunnerSetStatus = field(default_factory=RunnerSetStatus)