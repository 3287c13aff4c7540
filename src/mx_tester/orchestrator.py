"""
Phase Orchestrator

This module implements the four lifecycle verbs and the state machine that
ties them together:

    Idle -> Built -> Up -> Ran(Success|Failure) -> Down

Phase Contract:
- build: build the image; any module script failure aborts
- up: network, `up.before`, container, reachability probe, fixtures,
  `up.after`; nothing is provisioned if an earlier step failed
- run: `run` scripts; a failure becomes a PhaseResult, not an exception
- down: `down.success` or `down.failure` (neither for a bare `down`),
  then `down.finally`, then container and network removal. Every step
  runs even after an earlier failure; failures are collected and
  reported once teardown is complete

Verbs may be chained in one invocation (`up run down`) through
run_commands, which keeps the `run` result for a later `down` and cleans
up after a failed or interrupted `build`/`up`.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from docker.errors import DockerException

from .config import SuiteConfig
from .docker_manager import ContainerManager, ServerHandle
from .errors import MxTesterError, ServerUnreachable, TeardownError
from .matrix_client import MatrixClient
from .provisioning import FixtureProvisioner, ProvisioningReport
from .scripts import ScriptEnvironment, run_script

logger = logging.getLogger(__name__)

# Reachability polling: 0.5s, 1s, 2s... capped at 10s, ~2 minutes total.
PROBE_ATTEMPTS = 16
PROBE_INITIAL_DELAY = 0.5
PROBE_MAX_DELAY = 10.0

COMMANDS = ("build", "up", "run", "down")
DEFAULT_COMMANDS = ("up", "run", "down")


class Status(Enum):
    """The result of the test, as seen by `down`."""

    SUCCESS = "success"
    FAILURE = "failure"
    # `run` was not executed in this process, we just ran `down`.
    MANUAL = "manual"


class State(Enum):
    IDLE = "idle"
    BUILT = "built"
    UP = "up"
    RAN = "ran"
    DOWN = "down"


@dataclass(frozen=True)
class PhaseResult:
    """Outcome of `run`; drives which `down` scripts execute."""

    status: Status
    error: Optional[MxTesterError] = None

    @classmethod
    def success(cls) -> "PhaseResult":
        return cls(Status.SUCCESS)

    @classmethod
    def failure(cls, error: MxTesterError) -> "PhaseResult":
        return cls(Status.FAILURE, error)

    @property
    def succeeded(self) -> bool:
        return self.status is Status.SUCCESS


class Orchestrator:
    """
    Runs the lifecycle verbs for one suite.

    The orchestrator owns the ServerHandle created by `up` and threads it
    into `down`; nothing else keeps track of the running container.
    """

    def __init__(
        self,
        config: SuiteConfig,
        containers: Optional[ContainerManager] = None,
        client_factory: Callable[[str], MatrixClient] = MatrixClient,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.containers = containers or ContainerManager(config)
        self.client_factory = client_factory
        self.sleep = sleep
        self.state = State.IDLE
        self.handle: Optional[ServerHandle] = None
        self.last_result: Optional[PhaseResult] = None
        self.provisioning: Optional[ProvisioningReport] = None

    def _transition(self, state: State) -> None:
        logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state

    def _run_scripts(self, commands: Sequence[str], stage: str) -> None:
        if not commands:
            return
        env = ScriptEnvironment.for_suite(self.config)
        run_script(commands, env, stage, log_dir=self.config.scripts_logs_dir())

    def build(self) -> str:
        """
        Build the suite image.

        Raises:
            ScriptFailure: If a module build script fails
            ContainerEngineError: If Docker fails
        """
        tag = self.containers.build_image()
        self._transition(State.BUILT)
        return tag

    def wait_until_reachable(self, handle: ServerHandle) -> None:
        """
        Poll the liveness probe with exponential backoff.

        Raises:
            ServerUnreachable: If the attempt budget is exhausted
        """
        client = self.client_factory(handle.base_url)
        delay = PROBE_INITIAL_DELAY
        for attempt in range(1, PROBE_ATTEMPTS + 1):
            if client.is_alive():
                logger.debug("Homeserver answered after %d attempt(s)", attempt)
                handle.reachable = True
                return
            if attempt < PROBE_ATTEMPTS:
                logger.debug("Homeserver not ready, retrying in %.1fs", delay)
                self.sleep(delay)
                delay = min(delay * 2, PROBE_MAX_DELAY)
        raise ServerUnreachable(handle.base_url, PROBE_ATTEMPTS)

    def up(self) -> ServerHandle:
        """
        Bring the homeserver up and provision fixtures.

        A failure in `up.after` leaves the container running: the handle
        is kept so that a later `down` tears it down.

        Raises:
            ScriptFailure, ContainerEngineError, ServerUnreachable,
            ProvisioningError
        """
        logger.info("* up step: starting")
        self.containers.ensure_network()
        self._run_scripts(self.config.up.before, "up.before")

        handle = self.containers.start_container()
        self.handle = handle
        self._transition(State.UP)

        self.wait_until_reachable(handle)
        provisioner = FixtureProvisioner(self.config, self.client_factory(handle.base_url))
        self.provisioning = provisioner.provision()

        self._run_scripts(self.config.up.after, "up.after")
        logger.info("* up step: success")
        return handle

    def run(self) -> PhaseResult:
        """Run the test scripts. Never raises on a script failure."""
        logger.info("* run step: starting")
        try:
            self._run_scripts(self.config.run, "run")
        except MxTesterError as e:
            logger.error("* run step: failure: %s", e)
            result = PhaseResult.failure(e)
        else:
            logger.info("* run step: success")
            result = PhaseResult.success()
        self.last_result = result
        self._transition(State.RAN)
        return result

    def down(
        self,
        phase_result: Optional[PhaseResult] = None,
        handle: Optional[ServerHandle] = None,
    ) -> None:
        """
        Tear everything down, running every step even after failures.

        Tearing down when nothing is up only runs `down.finally`.

        Args:
            phase_result: Result of `run`; None for a bare `down`
            handle: The handle returned by `up`, if any

        Raises:
            TeardownError: If any step failed. ``resources_cleaned`` tells
                whether the container and network are gone regardless.
        """
        logger.info("* down step: starting")
        handle = handle or self.handle
        status = phase_result.status if phase_result is not None else Status.MANUAL
        down = self.config.down

        script_steps: List[Tuple[str, Callable[[], None]]] = []
        if status is Status.SUCCESS:
            script_steps.append(("down.success", lambda: self._run_scripts(down.success, "down.success")))
        elif status is Status.FAILURE:
            script_steps.append(("down.failure", lambda: self._run_scripts(down.failure, "down.failure")))
        script_steps.append(("down.finally", lambda: self._run_scripts(down.finally_, "down.finally")))
        resource_steps: List[Tuple[str, Callable[[], None]]] = [
            ("stop container", lambda: self.containers.stop_container(handle)),
            ("remove network", lambda: self.containers.remove_network(handle)),
        ]

        script_failures = self._run_steps(script_steps)
        resource_failures = self._run_steps(resource_steps)

        self.handle = None
        self._transition(State.DOWN)
        if script_failures or resource_failures:
            logger.error("* down step: failure")
            raise TeardownError(
                script_failures + resource_failures,
                resources_cleaned=not resource_failures,
            )
        logger.info("* down step: success")

    @staticmethod
    def _run_steps(steps: Sequence[Tuple[str, Callable[[], None]]]) -> List[Exception]:
        failures: List[Exception] = []
        for name, step in steps:
            try:
                step()
            except (MxTesterError, DockerException, OSError) as e:
                logger.error("Teardown step `%s` failed: %s", name, e)
                failures.append(e)
        return failures

    def abort(self) -> None:
        """Best-effort removal of whatever `build`/`up` created."""
        self.containers.cleanup()
        if self.handle is not None and self.handle.log_follower is not None:
            self.handle.log_follower.join(timeout=1)
        self.handle = None


@dataclass
class CommandOutcome:
    """Aggregate result of a chain of verbs, for the command-line layer."""

    error: Optional[MxTesterError] = None
    run_result: Optional[PhaseResult] = None
    # Teardown script failures of a `down` that still removed everything.
    warnings: List[Exception] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error is None


def validate_commands(commands: Sequence[str]) -> None:
    """
    Check that chained verbs follow the lifecycle order.

    A verb may repeat, and `down` starts a new lifecycle.

    Raises:
        ValueError: On an unknown verb or an out-of-order chain
    """
    position = -1
    for command in commands:
        if command not in COMMANDS:
            raise ValueError(f"Invalid command `{command}`")
        index = COMMANDS.index(command)
        if index < position:
            raise ValueError(
                f"`{command}` cannot follow `{COMMANDS[position]}` in the same invocation"
            )
        position = -1 if command == "down" else index


def run_commands(
    config: SuiteConfig,
    commands: Sequence[str] = DEFAULT_COMMANDS,
    orchestrator: Optional[Orchestrator] = None,
) -> CommandOutcome:
    """
    Run a chain of verbs, e.g. ``["up", "run", "down"]``.

    `build` and `up` failures stop the chain (after auto-cleanup, if
    enabled). A `run` failure does not: a following `down` still runs,
    and the `run` error is reported before any `down` error.
    """
    validate_commands(commands)
    orchestrator = orchestrator or Orchestrator(config)
    outcome = CommandOutcome()
    result_run: Optional[PhaseResult] = None

    try:
        for command in commands:
            logger.info("mx-tester %s...", command)
            if command in ("build", "up"):
                try:
                    getattr(orchestrator, command)()
                except MxTesterError as e:
                    if config.autoclean_on_error:
                        orchestrator.abort()
                    outcome.error = e
                    return outcome
            elif command == "run":
                result_run = orchestrator.run()
                outcome.run_result = result_run
            else:
                try:
                    orchestrator.down(result_run)
                except TeardownError as e:
                    if not e.resources_cleaned:
                        outcome.error = result_run.error if result_run and result_run.error else e
                        return outcome
                    for failure in e.failures:
                        logger.warning("Teardown script failed: %s", failure)
                    outcome.warnings.extend(e.failures)
                if result_run is not None and not result_run.succeeded:
                    outcome.error = result_run.error
                    return outcome
                result_run = None
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        if config.autoclean_on_error:
            orchestrator.abort()
        raise

    if result_run is not None and not result_run.succeeded:
        outcome.error = result_run.error
    return outcome


def build(config: SuiteConfig) -> str:
    return Orchestrator(config).build()


def up(config: SuiteConfig) -> ServerHandle:
    return Orchestrator(config).up()


def run(config: SuiteConfig) -> PhaseResult:
    return Orchestrator(config).run()


def down(
    config: SuiteConfig,
    phase_result: Optional[PhaseResult] = None,
    handle: Optional[ServerHandle] = None,
) -> None:
    Orchestrator(config).down(phase_result, handle)
