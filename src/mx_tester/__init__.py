"""
mx-tester - integration test harness for Synapse modules

This package builds a Synapse image with the modules under test, brings a
homeserver up in Docker with the users and rooms a suite declares, runs
the suite's test scripts and tears everything down.
"""

__version__ = "0.3.3"
__description__ = "Integration test harness for Synapse modules"

# Import main components for public API
from .config import SuiteConfig, load_config, parse_config
from .errors import (
    ConfigurationError,
    ContainerEngineError,
    MxTesterError,
    ProvisioningError,
    ScriptFailure,
    ServerUnreachable,
    TeardownError,
)
from .orchestrator import Orchestrator, PhaseResult, Status, run_commands

# Define public API exports
__all__ = [
    "SuiteConfig",
    "load_config",
    "parse_config",
    "Orchestrator",
    "PhaseResult",
    "Status",
    "run_commands",
    "MxTesterError",
    "ConfigurationError",
    "ContainerEngineError",
    "ProvisioningError",
    "ScriptFailure",
    "ServerUnreachable",
    "TeardownError",
    "__version__",
    "__description__",
]
