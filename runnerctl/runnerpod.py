"""Building the pod that runs a self-hosted runner."""

from __future__ import annotations

import copy
from collections.abc import Sequence

from runnerctl.labels import LABEL_KEY_POD_TEMPLATE_HASH, LABEL_KEY_RUNNER_TEMPLATE_HASH, compute_hash, filter_labels
from runnerctl.resources import (
    Container,
    EnvVar,
    ObjectMeta,
    Pod,
    Runner,
    RunnerConfig,
    SecurityContext,
    Volume,
    VolumeMount,
)

__all__ = [
    "CONTAINER_NAME",
    "FINALIZER_NAME",
    "ANNOTATION_KEY_REGISTRATION_ONLY",
    "ENV_VAR_ORG",
    "ENV_VAR_REPO",
    "ENV_VAR_ENTERPRISE",
    "add_finalizer",
    "remove_finalizer",
    "mutate_pod",
    "new_runner_pod",
    "build_runner_pod",
]

CONTAINER_NAME = "runner"
DOCKER_CONTAINER_NAME = "docker"
FINALIZER_NAME = "runner.actions.summerwind.dev"

# Internal to the controllers; may change in backward-incompatible ways.
ANNOTATION_KEY_REGISTRATION_ONLY = "actions-runner-controller/registration-only"

ENV_VAR_ORG = "RUNNER_ORG"
ENV_VAR_REPO = "RUNNER_REPO"
ENV_VAR_ENTERPRISE = "RUNNER_ENTERPRISE"

_DEFAULT_WORK_DIR = "/runner/_work"
_RUNNER_VOLUME_NAME = "runner"
_RUNNER_VOLUME_MOUNT_PATH = "/runner"
_CERTS_CLIENT_PATH = "/certs/client"


def add_finalizer(finalizers: Sequence[str], finalizer_name: str) -> tuple[list[str], bool]:
    """Return the finalizers with ``finalizer_name`` present, and whether it was added."""
    if finalizer_name in finalizers:
        return list(finalizers), False
    return [*finalizers, finalizer_name], True


def remove_finalizer(finalizers: Sequence[str], finalizer_name: str) -> tuple[list[str], bool]:
    """Return the finalizers without ``finalizer_name``, and whether it was there."""
    result = [name for name in finalizers if name != finalizer_name]
    return result, len(result) != len(finalizers)


def mutate_pod(pod: Pod, token: str) -> Pod:
    """Return a copy of ``pod`` whose runner containers know their name and token."""
    updated = copy.deepcopy(pod)
    for container in updated.spec.containers:
        if container.name == CONTAINER_NAME:
            container.env.extend(
                [
                    EnvVar(name="RUNNER_NAME", value=pod.metadata.name),
                    EnvVar(name="RUNNER_TOKEN", value=token),
                ]
            )
    return updated


def new_runner_pod(
    template: Pod,
    runner_config: RunnerConfig,
    default_runner_image: str,
    default_docker_image: str,
    github_base_url: str,
    registration_only: bool,
) -> Pod:
    """Complete ``template`` into a runner pod, with a docker sidecar unless disabled."""
    dockerd_in_runner = bool(runner_config.dockerd_within_runner_container)
    docker_enabled = runner_config.docker_enabled is None or bool(runner_config.docker_enabled)
    ephemeral = runner_config.ephemeral is None or bool(runner_config.ephemeral)
    privileged = True
    dockerd_in_runner_privileged = dockerd_in_runner
    with_docker_sidecar = not dockerd_in_runner and docker_enabled

    runner_image = runner_config.image or default_runner_image
    work_dir = runner_config.work_dir or _DEFAULT_WORK_DIR

    env = [
        EnvVar(ENV_VAR_ORG, runner_config.organization),
        EnvVar(ENV_VAR_REPO, runner_config.repository),
        EnvVar(ENV_VAR_ENTERPRISE, runner_config.enterprise),
        EnvVar("RUNNER_LABELS", ",".join(runner_config.labels)),
        EnvVar("RUNNER_GROUP", runner_config.group),
        EnvVar("DOCKERD_IN_RUNNER", str(dockerd_in_runner).lower()),
        EnvVar("GITHUB_URL", github_base_url),
        EnvVar("RUNNER_WORKDIR", work_dir),
        EnvVar("RUNNER_EPHEMERAL", str(ephemeral).lower()),
    ]
    if registration_only:
        env.append(EnvVar("RUNNER_REGISTRATION_ONLY", "true"))

    se_linux_options = None
    if template.spec.security_context is not None:
        se_linux_options = template.spec.security_context.se_linux_options
        if se_linux_options is not None:
            privileged = False
            dockerd_in_runner_privileged = False

    runner_index: int | None = None
    docker_index: int | None = None
    for index, container in enumerate(template.spec.containers):
        if container.name == CONTAINER_NAME:
            runner_index = index
        elif container.name == DOCKER_CONTAINER_NAME:
            docker_index = index

    if runner_index is None:
        runner_container = Container(name=CONTAINER_NAME)
    else:
        runner_container = copy.deepcopy(template.spec.containers[runner_index])

    if docker_index is None:
        docker_container = Container(name=DOCKER_CONTAINER_NAME)
    else:
        docker_container = copy.deepcopy(template.spec.containers[docker_index])

    runner_container.image = runner_image
    if runner_container.image_pull_policy == "":
        runner_container.image_pull_policy = "Always"
    runner_container.env.extend(env)

    if runner_container.security_context is None:
        runner_container.security_context = SecurityContext()
    # The runner must be privileged when it hosts the docker daemon itself.
    runner_container.security_context.privileged = dockerd_in_runner_privileged

    pod = copy.deepcopy(template)
    if pod.spec.restart_policy == "":
        pod.spec.restart_policy = "OnFailure"

    mtu = runner_config.docker_mtu
    mirror = runner_config.docker_registry_mirror

    if mtu is not None and dockerd_in_runner:
        runner_container.env.append(EnvVar("MTU", str(mtu)))
    if mirror is not None and dockerd_in_runner:
        runner_container.env.append(EnvVar("DOCKER_REGISTRY_MIRROR", mirror))

    # /runner is populated at runtime from the image and shared with the docker sidecar.
    pod.spec.volumes.append(
        Volume(name=_RUNNER_VOLUME_NAME, size_limit=runner_config.volume_size_limit)
    )
    runner_container.volume_mounts.append(
        VolumeMount(name=_RUNNER_VOLUME_NAME, mount_path=_RUNNER_VOLUME_MOUNT_PATH)
    )

    if with_docker_sidecar:
        pod.spec.volumes.extend([Volume(name="work"), Volume(name="certs-client")])
        runner_container.volume_mounts.extend(
            [
                VolumeMount(name="work", mount_path=work_dir),
                VolumeMount(name="certs-client", mount_path=_CERTS_CLIENT_PATH, read_only=True),
            ]
        )
        runner_container.env.extend(
            [
                EnvVar("DOCKER_HOST", "tcp://localhost:2376"),
                EnvVar("DOCKER_TLS_VERIFY", "1"),
                EnvVar("DOCKER_CERT_PATH", _CERTS_CLIENT_PATH),
            ]
        )

        if docker_container.image == "":
            docker_container.image = default_docker_image
        docker_container.env.append(EnvVar("DOCKER_TLS_CERTDIR", "/certs"))

        if docker_container.security_context is None:
            docker_container.security_context = SecurityContext(
                privileged=privileged,
                se_linux_options=copy.deepcopy(se_linux_options),
            )

        docker_container.volume_mounts.extend(
            [
                VolumeMount(name="work", mount_path=work_dir),
                VolumeMount(name=_RUNNER_VOLUME_NAME, mount_path=_RUNNER_VOLUME_MOUNT_PATH),
                VolumeMount(name="certs-client", mount_path=_CERTS_CLIENT_PATH),
            ]
        )

        if mtu is not None:
            docker_container.env.append(EnvVar("DOCKERD_ROOTLESS_ROOTLESSKIT_MTU", str(mtu)))
            docker_container.args.extend(["--mtu", str(mtu)])
        if mirror is not None:
            docker_container.args.append(f"--registry-mirror={mirror}")

    if runner_index is None:
        pod.spec.containers.insert(0, runner_container)
        if docker_index is not None:
            docker_index += 1
    else:
        pod.spec.containers[runner_index] = runner_container

    if with_docker_sidecar:
        if docker_index is None:
            pod.spec.containers.append(docker_container)
        else:
            pod.spec.containers[docker_index] = docker_container

    return pod


def build_runner_pod(
    runner: Runner, runner_image: str, docker_image: str, github_base_url: str
) -> Pod:
    """Build the pod of ``runner``, labelled with a hash of everything that warrants a restart."""
    meta = runner.metadata
    spec = copy.deepcopy(runner.spec)

    labels = dict(meta.labels or {})
    # The registration token is left out on purpose: it rotates without the pod needing to.
    labels[LABEL_KEY_POD_TEMPLATE_HASH] = compute_hash(
        (
            filter_labels(meta.labels, LABEL_KEY_RUNNER_TEMPLATE_HASH),
            meta.annotations,
            runner.spec,
            github_base_url,
        )
    )

    template = Pod(
        metadata=ObjectMeta(
            name=meta.name,
            namespace=meta.namespace,
            labels=labels,
            annotations=dict(meta.annotations) if meta.annotations is not None else None,
        )
    )

    if not spec.containers:
        template.spec.containers = [
            Container(
                name=CONTAINER_NAME,
                image_pull_policy=spec.image_pull_policy,
                env_from=spec.env_from,
                env=spec.env,
                resources=spec.resources,
            ),
            Container(
                name=DOCKER_CONTAINER_NAME,
                volume_mounts=spec.docker_volume_mounts,
                resources=spec.dockerd_container_resources,
            ),
        ]
    else:
        template.spec.containers = spec.containers

    template.spec.security_context = spec.security_context
    template.spec.enable_service_links = spec.enable_service_links

    registration_only = meta.has_annotation(ANNOTATION_KEY_REGISTRATION_ONLY)

    pod = new_runner_pod(
        template, spec.config, runner_image, docker_image, github_base_url, registration_only
    )

    if spec.volume_mounts:
        pod.spec.containers[0].volume_mounts.extend(spec.volume_mounts)
    if spec.volumes:
        pod.spec.volumes.extend(spec.volumes)
    if spec.init_containers:
        pod.spec.init_containers.extend(spec.init_containers)
    if spec.node_selector is not None:
        pod.spec.node_selector = spec.node_selector
    if spec.service_account_name:
        pod.spec.service_account_name = spec.service_account_name
    if spec.automount_service_account_token is not None:
        pod.spec.automount_service_account_token = spec.automount_service_account_token
    if spec.sidecar_containers:
        pod.spec.containers.extend(spec.sidecar_containers)
    if spec.image_pull_secrets:
        pod.spec.image_pull_secrets = spec.image_pull_secrets
    if spec.affinity is not None:
        pod.spec.affinity = spec.affinity
    if spec.tolerations:
        pod.spec.tolerations = spec.tolerations
    if spec.ephemeral_containers:
        pod.spec.ephemeral_containers = spec.ephemeral_containers
    if spec.termination_grace_period_seconds is not None:
        pod.spec.termination_grace_period_seconds = spec.termination_grace_period_seconds
    if spec.host_aliases:
        pod.spec.host_aliases = spec.host_aliases
    if spec.runtime_class_name is not None:
        pod.spec.runtime_class_name = spec.runtime_class_name

    pod.metadata.name = meta.name

    updated = mutate_pod(pod, runner.status.registration.token)
    updated.metadata.set_controller(runner.kind, meta.name)
    return updated