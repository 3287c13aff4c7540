"""
Container Lifecycle Manager

This module drives Docker for a suite: it builds the Synapse image with the
suite's modules baked in, creates the suite network, generates and patches
homeserver.yaml, starts the homeserver container and tears all of it down.

Resource Naming:
- Image: derived from the Synapse image and the suite name
- Network: ``net-<image tag>``, so suites on different Synapse versions
  never share a network
- Containers: one short-lived setup container that generates
  homeserver.yaml, one long-running container for up/run/down

Teardown operations are best-effort: a resource that is already gone is
not an error, so they are safe to call from any cleanup path.
"""

import logging
import os
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.types import LogConfig
from docker.utils import parse_repository_tag

from .config import (
    HARDCODED_GUEST_PORT,
    HARDCODED_MAIN_PROCESS_HTTP_LISTENER_PORT,
    SuiteConfig,
)
from .errors import ContainerEngineError
from .homeserver import OVERLAY_FILE_NAME, patch_homeserver_config, render_overlay
from .scripts import ScriptEnvironment, run_script

logger = logging.getLogger(__name__)

# The amount of memory to reserve for the homeserver.
MEMORY_ALLOCATION_BYTES = 4 * 1024 * 1024 * 1024

# Synapse sometimes stops at startup (port not yet available, module
# errors), so let Docker restart it a few times.
MAX_SYNAPSE_RESTART_COUNT = 20

# Alias under which the host is reachable from inside the container.
HOST_ALIAS = "host.docker.internal"

# How long to wait for the log follower once the container is stopped.
LOG_FOLLOWER_JOIN_TIMEOUT = 10

WORKER_TYPES = (
    "event_persister, event_persister, background_worker, frontend_proxy, "
    "event_creator, user_dir, media_repository, federation_inbound, "
    "federation_reader, federation_sender, synchrotron, appservice, pusher"
)


@dataclass
class ServerHandle:
    """
    Runtime handle on a started homeserver.

    Created by ``up`` and threaded explicitly into ``down``; never persisted.
    """

    network: str
    container_name: str
    container_id: Optional[str]
    host_port: int
    base_url: str
    reachable: bool = False
    log_follower: Optional[threading.Thread] = field(default=None, repr=False)


def _is_not_modified(error: APIError) -> bool:
    return error.response is not None and error.response.status_code == 304


def _current_uid() -> Optional[int]:
    return os.getuid() if hasattr(os, "getuid") else None


def _clear_directory(directory: Path, keep: Path) -> None:
    """Remove everything in ``directory`` except ``keep``."""
    if not directory.is_dir():
        return
    for child in directory.iterdir():
        if child == keep:
            continue
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child, ignore_errors=True)
        else:
            child.unlink()


def _follow_logs(container: Any, dest: Path) -> None:
    """Copy the logs of ``container`` into ``dest`` until it stops."""
    logger.debug("Starting log watcher for %s", container.name)
    try:
        with open(dest, "ab") as log_file:
            for chunk in container.logs(stream=True, follow=True, stdout=True, stderr=True):
                logger.debug("synapse: %s", chunk.decode("utf-8", errors="replace").rstrip())
                log_file.write(chunk)
                log_file.flush()
    except (DockerException, OSError) as e:
        logger.warning("Log watcher for %s stopped: %s", container.name, e)
    logger.debug("Stopped log watcher for %s", container.name)


class ContainerManager:
    """
    Builds, starts and tears down the homeserver for one suite.

    The Docker client is created lazily so that commands which do not
    need Docker (e.g. `run`) never connect to the daemon.
    """

    def __init__(self, config: SuiteConfig, client: Optional[docker.DockerClient] = None):
        self.config = config
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise ContainerEngineError(f"Cannot connect to the Docker daemon: {e}")
        return self._client

    # ------------------------------------------------------------------
    # build
    # ------------------------------------------------------------------

    def build_image(self) -> str:
        """
        Build the suite image: base Synapse image plus every module.

        Returns:
            The tag of the built image

        Raises:
            ScriptFailure: If a module build script fails
            ContainerEngineError: If a module leaves no sources behind, or
                if Docker fails to pull or build
        """
        config = self.config
        tag = config.tag()
        logger.info("* build step: starting")

        # Rebuilding replaces whatever a previous build left behind.
        self._remove_container(config.run_container_name())
        self._remove_container(config.setup_container_name())
        try:
            self.client.images.remove(tag, force=True)
        except NotFound:
            pass
        except APIError as e:
            raise ContainerEngineError(f"Could not remove previous image {tag}: {e}", phase="build")

        self._prepare_directories()
        self._build_modules()
        self._write_build_context()
        self._pull_base_image()
        self._docker_build(tag)

        logger.info("* build step: success")
        return tag

    def _prepare_directories(self) -> None:
        config = self.config
        synapse_root = config.synapse_root()
        scratch = config.script_tmpdir()
        try:
            # Clean the test root, except the scripts' scratch directory.
            _clear_directory(config.test_root(), keep=synapse_root)
            _clear_directory(synapse_root, keep=scratch)

            for directory in (
                config.synapse_data_dir(),
                config.synapse_workers_dir(),
                config.etc_dir() / "nginx",
                config.etc_dir() / "supervisor",
                config.logs_dir() / "docker",
                config.logs_dir() / "nginx",
                config.logs_dir() / "workers",
                config.scripts_logs_dir() / "modules",
                scratch,
            ):
                directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ContainerEngineError(
                f"Could not prepare test directory {config.test_root()}: {e}", phase="build"
            ) from e

    def _build_modules(self) -> None:
        config = self.config
        if not config.modules:
            return
        logger.info("** building modules")
        env = ScriptEnvironment.for_suite(config)
        for module in config.modules:
            module_dir = config.module_dir(module)
            logger.debug("Calling build script for module %s with MX_TEST_MODULE_DIR=%s", module.name, module_dir)
            run_script(
                module.build,
                env.with_module_dir(module_dir),
                stage=f"build.{module.name}",
                log_dir=config.scripts_logs_dir() / "modules" / module.name,
            )
            if not module_dir.is_dir() or not any(module_dir.iterdir()):
                raise ContainerEngineError(
                    f"Build script of module `{module.name}` did not copy the module into {module_dir}",
                    phase=f"build.{module.name}",
                )
            self._copy_module_resources(module)
        logger.info("** building modules success")

    def _copy_module_resources(self, module) -> None:
        for dest, source in module.copy.items():
            source_path = Path(source).expanduser()
            target = self.config.synapse_root() / "resources" / module.name / dest
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                if source_path.is_dir():
                    shutil.copytree(source_path, target, dirs_exist_ok=True)
                else:
                    shutil.copy2(source_path, target)
            except OSError as e:
                raise ContainerEngineError(
                    f"Could not copy resource {source} for module `{module.name}`: {e}",
                    phase=f"build.{module.name}",
                )

    def dockerfile(self) -> str:
        """Render the Dockerfile that layers the modules over Synapse."""
        config = self.config
        uid = _current_uid()
        maybe_uid = f"--uid {uid}" if uid else ""

        lines: List[str] = [
            "# A custom Dockerfile to rebuild synapse from the official release + plugins",
            f"FROM {config.synapse_image}",
            'VOLUME ["/data", "/conf/workers", "/etc/nginx/conf.d", "/etc/supervisor/conf.d", "/var/log/workers"]',
            # Run as the host user so that files written in /data stay
            # readable and removable on the host.
            f"RUN useradd mx-tester {maybe_uid} --groups sudo,tty",
            'RUN echo "mx-tester:password" | chpasswd',
            "RUN pip show matrix-synapse",
        ]
        if config.workers_enabled:
            lines.append(
                "RUN apt-get update && apt-get install -y postgresql postgresql-client "
                "supervisor redis nginx sudo lsof"
            )
        lines.append("RUN mkdir /mx-tester")
        lines.append(f"COPY {OVERLAY_FILE_NAME} /mx-tester/{OVERLAY_FILE_NAME}")
        for module in config.modules:
            if module.install:
                lines.append(f"## Setup {module.name}")
                lines.extend(f"RUN {line}" for line in module.install)
        for module in config.modules:
            lines.extend(f"ENV {key}={value}" for key, value in sorted(module.env.items()))
        for module in config.modules:
            lines.append(f"COPY {module.name} /mx-tester/{module.name}")
        for module in config.modules:
            for dest in sorted(module.copy):
                lines.append(f"COPY resources/{module.name}/{dest} /mx-tester/{module.name}/{dest}")
        for module in config.modules:
            lines.append(f"RUN /usr/local/bin/python -m pip install /mx-tester/{module.name}")
        lines.append("ENTRYPOINT []")
        lines.append(f"EXPOSE {HARDCODED_GUEST_PORT}/tcp 8009/tcp 8448/tcp")
        return "\n".join(lines) + "\n"

    def _write_build_context(self) -> None:
        synapse_root = self.config.synapse_root()
        try:
            (synapse_root / OVERLAY_FILE_NAME).write_text(render_overlay(self.config), encoding="utf-8")
            (synapse_root / "Dockerfile").write_text(self.dockerfile(), encoding="utf-8")
            # Runtime directories and the scripts' scratch space stay out of the image.
            (synapse_root / ".dockerignore").write_text("data\nworkers\nscripts\n", encoding="utf-8")
        except OSError as e:
            raise ContainerEngineError(f"Could not write build context in {synapse_root}: {e}", phase="build") from e

    def _pull_base_image(self) -> None:
        repository, tag = parse_repository_tag(self.config.synapse_image)
        auth_config = self.config.credentials.auth_config()
        logger.info("** pulling %s", self.config.synapse_image)
        try:
            self.client.images.pull(repository, tag=tag or "latest", auth_config=auth_config)
        except APIError as e:
            try:
                self.client.images.get(self.config.synapse_image)
            except (ImageNotFound, APIError):
                raise ContainerEngineError(
                    f"Could not pull {self.config.synapse_image}: {e}", phase="build"
                )
            logger.warning("Could not pull %s, using the local image: %s", self.config.synapse_image, e)

    def _docker_build(self, tag: str) -> None:
        logs_path = self.config.logs_dir() / "docker" / "build.log"
        logger.info("** building Docker image. Logs will be stored at %s", logs_path)
        try:
            with open(logs_path, "w", encoding="utf-8") as log:
                for chunk in self.client.api.build(
                    path=str(self.config.synapse_root()),
                    tag=tag,
                    rm=True,
                    nocache=True,
                    pull=False,
                    decode=True,
                ):
                    if "error" in chunk:
                        log.write(f"ERROR: {chunk['error']}\n")
                        raise ContainerEngineError(
                            f"Error while building image {tag}: {chunk['error'].strip()}",
                            phase="build",
                        )
                    text = chunk.get("stream") or chunk.get("status")
                    if text:
                        log.write(text if text.endswith("\n") else text + "\n")
                        logger.debug("docker build: %s", text.rstrip())
        except APIError as e:
            raise ContainerEngineError(f"Docker failed to build image {tag}: {e}", phase="build")
        logger.info("** building Docker image success")

    # ------------------------------------------------------------------
    # up
    # ------------------------------------------------------------------

    def ensure_network(self) -> str:
        """Create the suite network unless it already exists."""
        name = self.config.network()
        try:
            existing = self.client.networks.list(names=[name])
            if any(network.name == name for network in existing):
                logger.debug("Network %s already exists", name)
                return name
            logger.debug("Creating network %s", name)
            self.client.networks.create(name, driver="bridge", attachable=True, check_duplicate=True)
        except APIError as e:
            raise ContainerEngineError(f"Could not create network {name}: {e}", phase="up")
        return name

    def _container_env(self) -> Dict[str, str]:
        config = self.config
        env = {
            "SYNAPSE_SERVER_NAME": config.homeserver.server_name,
            "SYNAPSE_REPORT_STATS": "no",
            "SYNAPSE_CONFIG_DIR": "/data",
            "SYNAPSE_HTTP_PORT": str(
                HARDCODED_MAIN_PROCESS_HTTP_LISTENER_PORT
                if config.workers_enabled
                else HARDCODED_GUEST_PORT
            ),
        }
        if config.workers_enabled:
            env["SYNAPSE_WORKER_TYPES"] = WORKER_TYPES
            env["SYNAPSE_WORKERS_WRITE_LOGS_TO_DISK"] = "1"
        return env

    def _volumes(self) -> Dict[str, Dict[str, str]]:
        config = self.config
        binds = {
            config.synapse_data_dir(): "/data",
            config.synapse_workers_dir(): "/conf/workers",
            config.etc_dir() / "nginx": "/etc/nginx/conf.d",
            config.etc_dir() / "supervisor": "/etc/supervisor/conf.d",
            config.logs_dir() / "nginx": "/var/log/nginx",
            config.logs_dir() / "workers": "/var/log/workers",
        }
        volumes = {}
        for host_path, guest_path in binds.items():
            try:
                host_path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ContainerEngineError(f"Could not create volume {host_path}: {e}", phase="up") from e
            volumes[str(host_path)] = {"bind": guest_path, "mode": "rw"}
        return volumes

    def _ports(self) -> Dict[str, int]:
        ports = {f"{HARDCODED_GUEST_PORT}/tcp": self.config.homeserver.host_port}
        for mapping in self.config.docker.port_mapping:
            ports[f"{mapping.guest}/tcp"] = mapping.host
        return ports

    def _common_run_args(self) -> Dict[str, Any]:
        args: Dict[str, Any] = {
            "environment": self._container_env(),
            "volumes": self._volumes(),
            "detach": True,
        }
        uid = _current_uid()
        if uid is not None:
            args["user"] = str(uid)
        return args

    def generate_config(self) -> Path:
        """
        Let Synapse generate homeserver.yaml, then merge the overlay into it.

        Returns:
            Path of the patched homeserver.yaml
        """
        config = self.config
        data_dir = config.synapse_data_dir()
        homeserver_path = data_dir / "homeserver.yaml"
        try:
            data_dir.mkdir(parents=True, exist_ok=True)
            (config.logs_dir() / "docker").mkdir(parents=True, exist_ok=True)
            if homeserver_path.exists():
                homeserver_path.unlink()
        except OSError as e:
            raise ContainerEngineError(f"Could not prepare {data_dir}: {e}", phase="up") from e

        name = config.setup_container_name()
        self._remove_container(name)
        command = ["/workers_start.py", "generate"] if config.workers_enabled else ["/start.py", "generate"]
        logger.debug("Generating homeserver.yaml with %s", command)
        try:
            container = self.client.containers.run(
                config.tag(), command=command, name=name, **self._common_run_args()
            )
            status = container.wait()
            output = container.logs().decode("utf-8", errors="replace")
            with open(config.logs_dir() / "docker" / "build.out", "a", encoding="utf-8") as f:
                f.write(output)
        except ImageNotFound:
            raise ContainerEngineError(
                f"Image {config.tag()} not found, run `build` first", phase="up"
            )
        except APIError as e:
            raise ContainerEngineError(f"Could not generate homeserver.yaml: {e}", phase="up")
        finally:
            self._remove_container(name)

        if status.get("StatusCode", 1) != 0 or not homeserver_path.exists():
            raise ContainerEngineError(
                f"Synapse could not generate homeserver.yaml (exit code {status.get('StatusCode')}): "
                f"{output[-2000:]}",
                phase="up",
            )
        patch_homeserver_config(config, homeserver_path)
        return homeserver_path

    def start_container(self) -> ServerHandle:
        """
        Start the homeserver container on the suite network.

        If the container is already running (``up`` called twice), it is
        reused as-is.

        Returns:
            A ServerHandle for the running container
        """
        config = self.config
        network = self.ensure_network()
        name = config.run_container_name()

        existing = self._find_container(name)
        if existing is not None and existing.status == "running":
            logger.info("** Synapse container %s is already running", name)
            return self._handle(existing, network)
        if existing is not None:
            self._remove_container(name)

        self.generate_config()

        log_path = config.logs_dir() / "docker" / "up-run-down.log"
        logger.info("** starting Synapse. Logs will be stored at %s", log_path)
        command = ["/workers_start.py", "start"] if config.workers_enabled else ["/start.py"]
        try:
            container = self.client.containers.run(
                config.tag(),
                command=command,
                name=name,
                hostname=config.docker.hostname,
                network=network,
                ports=self._ports(),
                extra_hosts={HOST_ALIAS: "host-gateway"},
                restart_policy={"Name": "on-failure", "MaximumRetryCount": MAX_SYNAPSE_RESTART_COUNT},
                mem_reservation=MEMORY_ALLOCATION_BYTES,
                memswap_limit=-1,
                log_config=LogConfig(type=LogConfig.types.JSON),
                tty=False,
                **self._common_run_args(),
            )
        except ImageNotFound:
            raise ContainerEngineError(f"Image {config.tag()} not found, run `build` first", phase="up")
        except APIError as e:
            raise ContainerEngineError(f"Failed to start Synapse: {e}", phase="up")

        handle = self._handle(container, network)
        handle.log_follower = threading.Thread(
            target=_follow_logs, args=(container, log_path), name=f"logs-{name}", daemon=True
        )
        handle.log_follower.start()
        return handle

    def _handle(self, container: Any, network: str) -> ServerHandle:
        return ServerHandle(
            network=network,
            container_name=self.config.run_container_name(),
            container_id=container.id,
            host_port=self.config.homeserver.host_port,
            base_url=self.config.base_url(),
        )

    def is_container_running(self, name: Optional[str] = None) -> bool:
        container = self._find_container(name or self.config.run_container_name())
        return container is not None and container.status == "running"

    # ------------------------------------------------------------------
    # down
    # ------------------------------------------------------------------

    def _find_container(self, name: str) -> Optional[Any]:
        try:
            return self.client.containers.get(name)
        except NotFound:
            return None
        except APIError as e:
            raise ContainerEngineError(f"Could not inspect container {name}: {e}")

    def _remove_container(self, name: str) -> bool:
        """
        Stop and remove a container. Missing containers are fine.

        A failed stop does not prevent the forced removal; only a failed
        removal is an error.

        Returns:
            True if a container was removed
        """
        container = self._find_container(name)
        if container is None:
            logger.debug("Container %s not found, nothing to remove", name)
            return False
        stop_error = None
        try:
            container.stop()
        except NotFound:
            return False
        except APIError as e:
            if not _is_not_modified(e):
                logger.warning("Error stopping container %s, removing it anyway: %s", name, e)
                stop_error = e
        try:
            container.remove(force=True)
        except NotFound:
            logger.debug("Container %s was already removed", name)
        except APIError as e:
            if not _is_not_modified(e):
                message = f"Error removing container {name}: {e}"
                if stop_error is not None:
                    message += f" (stopping it failed too: {stop_error})"
                raise ContainerEngineError(message, phase="down") from (stop_error or e)
        logger.debug("Container %s removed", name)
        return True

    def stop_container(self, handle: Optional[ServerHandle] = None) -> None:
        """Stop and remove the homeserver container. Best-effort and idempotent."""
        name = handle.container_name if handle is not None else self.config.run_container_name()
        logger.debug("Taking down synapse container %s", name)
        self._remove_container(name)
        if handle is not None:
            handle.reachable = False
            if handle.log_follower is not None:
                handle.log_follower.join(timeout=LOG_FOLLOWER_JOIN_TIMEOUT)

    def remove_network(self, handle: Optional[ServerHandle] = None) -> None:
        """Remove the suite network. Best-effort and idempotent."""
        name = handle.network if handle is not None else self.config.network()
        logger.debug("Taking down network %s", name)
        try:
            self.client.networks.get(name).remove()
        except NotFound:
            logger.debug("Network %s not found, nothing to remove", name)
        except APIError as e:
            if not _is_not_modified(e):
                raise ContainerEngineError(f"Error removing network {name}: {e}", phase="down")

    def cleanup(self) -> None:
        """
        Remove every container and the network of the suite.

        Used after a failed or interrupted `build`/`up`. Each step runs
        even if a previous one failed; failures are only logged.
        """
        logger.warning("Auto-cleanup...")
        steps = (
            lambda: self._remove_container(self.config.setup_container_name()),
            lambda: self._remove_container(self.config.run_container_name()),
            self.remove_network,
        )
        for step in steps:
            try:
                step()
            except ContainerEngineError as e:
                logger.warning("Auto-cleanup step failed: %s", e)
        logger.warning("Auto-cleanup... DONE")
