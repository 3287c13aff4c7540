"""
Script Execution Engine

This module runs operator-supplied scripts: ordered lists of shell command
lines, each executed in the user's shell with a fixed set of environment
variables describing the test directories.

Key Functions:
- run_script: Run a list of commands, stopping at the first failure
- run_command: Run a single command, streaming its output

Execution Contract:
- Commands run strictly in sequence; later lines may rely on files that
  earlier lines wrote to MX_TEST_SCRIPT_TMPDIR
- stdout/stderr are streamed line by line to the logger while the
  command runs and captured to <stage>.out / <stage>.log
- The first non-zero exit raises ScriptFailure with the index, text and
  exit code of the failing command
- No timeout is applied here, callers impose their own
"""

import logging
import os
import re
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Dict, List, Mapping, Optional, Sequence

from .errors import ScriptFailure

logger = logging.getLogger(__name__)

# The directory where a given module should be copied. Passed to `build` scripts.
MX_TEST_MODULE_DIR = "MX_TEST_MODULE_DIR"
# The directory where the synapse modules are placed in sub directories.
MX_TEST_SYNAPSE_DIR = "MX_TEST_SYNAPSE_DIR"
# A directory where scripts can store data between phases.
MX_TEST_SCRIPT_TMPDIR = "MX_TEST_SCRIPT_TMPDIR"
# The directory where the test was launched.
MX_TEST_CWD = "MX_TEST_CWD"
MX_TEST_WORKERS_ENABLED = "MX_TEST_WORKERS_ENABLED"
MX_TEST_NETWORK_NAME = "MX_TEST_NETWORK_NAME"
MX_TEST_SETUP_CONTAINER_NAME = "MX_TEST_SETUP_CONTAINER_NAME"
MX_TEST_UP_RUN_DOWN_CONTAINER_NAME = "MX_TEST_UP_RUN_DOWN_CONTAINER_NAME"

_VARIABLE_PATTERN = re.compile(r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))")
_TILDE_PATTERN = re.compile(r"(^|(?<=\s))~(?=/|\s|$)")


@dataclass(frozen=True)
class ScriptEnvironment:
    """
    The environment contract passed to every script.

    Built per invocation; scripts only ever see a copy.
    """

    synapse_dir: Path
    script_tmpdir: Path
    cwd: Path
    module_dir: Optional[Path] = None
    extra: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def for_suite(cls, config) -> "ScriptEnvironment":
        """
        Build the environment shared by all scripts of a suite.

        Creates the script scratch directory if needed.
        """
        script_tmpdir = config.script_tmpdir()
        script_tmpdir.mkdir(parents=True, exist_ok=True)
        extra = {
            MX_TEST_NETWORK_NAME: config.network(),
            MX_TEST_SETUP_CONTAINER_NAME: config.setup_container_name(),
            MX_TEST_UP_RUN_DOWN_CONTAINER_NAME: config.run_container_name(),
        }
        if config.workers_enabled:
            extra[MX_TEST_WORKERS_ENABLED] = "true"
        return cls(
            synapse_dir=config.synapse_root(),
            script_tmpdir=script_tmpdir,
            cwd=Path.cwd(),
            extra=extra,
        )

    def with_module_dir(self, module_dir: Path) -> "ScriptEnvironment":
        return ScriptEnvironment(
            synapse_dir=self.synapse_dir,
            script_tmpdir=self.script_tmpdir,
            cwd=self.cwd,
            module_dir=module_dir,
            extra=self.extra,
        )

    def variables(self) -> Dict[str, str]:
        """The MX_TEST_* variables of this environment."""
        variables = dict(self.extra)
        variables[MX_TEST_SYNAPSE_DIR] = str(self.synapse_dir)
        variables[MX_TEST_SCRIPT_TMPDIR] = str(self.script_tmpdir)
        variables[MX_TEST_CWD] = str(self.cwd)
        if self.module_dir is not None:
            variables[MX_TEST_MODULE_DIR] = str(self.module_dir)
        return variables

    def to_process_env(self) -> Dict[str, str]:
        """The full environment of a child process: ours on top of the parent's."""
        env = dict(os.environ)
        env.update(self.variables())
        return env


@dataclass
class ExecutionResult:
    """Result of running one command line."""

    command: str
    exit_code: int
    elapsed_ms: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0


def expand_command(command: str, env: Mapping[str, str]) -> str:
    """
    Expand ``~`` and ``$VAR``/``${VAR}`` in a command line.

    Variables missing from ``env`` are left untouched for the shell.
    """

    def _replace(match: "re.Match[str]") -> str:
        name = match.group("braced") or match.group("bare")
        return env.get(name, match.group(0))

    expanded = _TILDE_PATTERN.sub(lambda _: os.path.expanduser("~"), command)
    return _VARIABLE_PATTERN.sub(_replace, expanded)


def find_shell() -> str:
    """The shell used to execute scripts."""
    return os.environ.get("SHELL") or "/bin/sh"


def _stream_output(stream: IO[str], name: str, dest: Optional[Path]) -> None:
    """Forward lines from ``stream`` to the logger and to ``dest``."""
    log_file = open(dest, "a", encoding="utf-8") if dest is not None else None
    try:
        for line in stream:
            line = line.rstrip("\n")
            logger.info("%s: %s", name, line)
            if log_file is not None:
                log_file.write(line + "\n")
                log_file.flush()
    finally:
        stream.close()
        if log_file is not None:
            log_file.close()


def _log_name(stage: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", stage)


def run_command(
    command: str,
    env: ScriptEnvironment,
    stage: str,
    log_dir: Optional[Path] = None,
) -> ExecutionResult:
    """
    Run a single command line in the shell, streaming its output.

    Args:
        command: The command line, as written by the operator
        env: The environment contract for this invocation
        stage: Name of the stage, used for log files and messages
        log_dir: Where to capture stdout/stderr (optional)

    Returns:
        ExecutionResult with the exit code of the command
    """
    process_env = env.to_process_env()
    expanded = expand_command(command, process_env)
    shell = find_shell()

    stdout_dest = stderr_dest = None
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        stdout_dest = log_dir / f"{_log_name(stage)}.out"
        stderr_dest = log_dir / f"{_log_name(stage)}.log"

    logger.info("*** %s", command)
    logger.debug("Running `%s` with %s", expanded, env.variables())
    start_time = time.time()

    try:
        process = subprocess.Popen(
            [shell, "-c", expanded],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            env=process_env,
        )
    except FileNotFoundError:
        logger.error("Shell not found: %s", shell)
        return ExecutionResult(command=command, exit_code=127, elapsed_ms=0)
    except PermissionError:
        logger.error("Permission denied executing shell: %s", shell)
        return ExecutionResult(command=command, exit_code=126, elapsed_ms=0)

    readers = [
        threading.Thread(
            target=_stream_output, args=(process.stdout, stage, stdout_dest), daemon=True
        ),
        threading.Thread(
            target=_stream_output, args=(process.stderr, stage, stderr_dest), daemon=True
        ),
    ]
    for reader in readers:
        reader.start()

    try:
        exit_code = process.wait()
    finally:
        # Interrupted: don't leave the command running behind us.
        if process.poll() is None:
            process.kill()
            process.wait()
        for reader in readers:
            reader.join()

    elapsed_ms = int((time.time() - start_time) * 1000)
    logger.debug("Command completed: exit_code=%s, elapsed=%sms", exit_code, elapsed_ms)
    return ExecutionResult(command=command, exit_code=exit_code, elapsed_ms=elapsed_ms)


def run_script(
    commands: Sequence[str],
    env: ScriptEnvironment,
    stage: str,
    log_dir: Optional[Path] = None,
) -> List[ExecutionResult]:
    """
    Run an ordered list of command lines, stopping at the first failure.

    Args:
        commands: The command lines
        env: The environment contract for this invocation
        stage: Name of the stage (e.g. ``run``, ``down.finally``)
        log_dir: Where to capture stdout/stderr (optional)

    Returns:
        One ExecutionResult per command, all successful

    Raises:
        ScriptFailure: On the first command exiting with a non-zero status
    """
    if not commands:
        return []

    if log_dir is not None:
        logger.info("** running %s script. See output captures in %s", stage, log_dir)
    else:
        logger.info("** running %s script", stage)

    results = []
    for index, command in enumerate(commands):
        result = run_command(command, env, stage, log_dir)
        results.append(result)
        if not result.success:
            logger.error(
                "** %s script failed at line %d `%s` with exit code %d",
                stage,
                index,
                command,
                result.exit_code,
            )
            raise ScriptFailure(stage, index, command, result.exit_code)

    logger.info("** running %s script success", stage)
    return results
