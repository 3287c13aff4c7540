"""
Suite Configuration Model

This module holds the validated, immutable in-memory representation of a
test suite (usually read from ``mx-tester.yml``): the scripts to run at each
phase, the modules to build into the Synapse image, the users and rooms to
provision, and the Docker settings.

Loading happens in two passes:
1. The YAML document is checked against a JSON Schema, so that type
   errors are reported with the path of the offending field.
2. Semantic checks that a schema cannot express (duplicate users,
   duplicate aliases, members that are not declared users) run on the
   resulting dataclasses.

Both passes raise ConfigurationError before any side effect happens.
"""

import dataclasses
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import jsonschema
import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "mx-tester.yml"
DEFAULT_SYNAPSE_IMAGE = "matrixdotorg/synapse:latest"
DEFAULT_HOSTNAME = "synapse"
DEFAULT_PASSWORD = "password"
DEFAULT_HOST_PORT = 9999
DEFAULT_REGISTRATION_SHARED_SECRET = "MX_TESTER_REGISTRATION_DEFAULT"

# The port used by the homeserver inside Docker. In worker mode this is
# nginx, load-balancing to the main process on the listener port below.
HARDCODED_GUEST_PORT = 8008
HARDCODED_MAIN_PROCESS_HTTP_LISTENER_PORT = 8080

_SCRIPT_SCHEMA = {
    "anyOf": [
        {"type": "string"},
        {"type": "array", "items": {"type": "string"}},
        {"type": "null"},
    ]
}

SUITE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["name"],
    "properties": {
        "name": {"type": "string", "minLength": 1, "pattern": r"^[A-Za-z0-9_.-]+$"},
        "modules": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["name", "build", "config"],
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "build": _SCRIPT_SCHEMA,
                    "install": _SCRIPT_SCHEMA,
                    "env": {"type": "object", "additionalProperties": {"type": "string"}},
                    "copy": {"type": "object", "additionalProperties": {"type": "string"}},
                    "config": {},
                },
                "additionalProperties": False,
            },
        },
        "homeserver": {
            "type": "object",
            "properties": {
                "host_port": {"type": "integer", "minimum": 1, "maximum": 65535},
                "server_name": {"type": "string", "minLength": 1},
                "public_baseurl": {"type": "string", "minLength": 1},
                "registration_shared_secret": {"type": "string", "minLength": 1},
                "modules": {"type": ["array", "null"]},
            },
        },
        "up": {
            "anyOf": [
                _SCRIPT_SCHEMA,
                {
                    "type": "object",
                    "properties": {"before": _SCRIPT_SCHEMA, "after": _SCRIPT_SCHEMA},
                    "additionalProperties": False,
                },
            ]
        },
        "run": _SCRIPT_SCHEMA,
        "down": {
            "type": ["object", "null"],
            "properties": {
                "success": _SCRIPT_SCHEMA,
                "failure": _SCRIPT_SCHEMA,
                "finally": _SCRIPT_SCHEMA,
            },
            "additionalProperties": False,
        },
        # Deprecated flat shape of `down`.
        "success": _SCRIPT_SCHEMA,
        "failure": _SCRIPT_SCHEMA,
        "finally": _SCRIPT_SCHEMA,
        "docker": {
            "type": "object",
            "properties": {
                "hostname": {"type": "string", "minLength": 1},
                "port_mapping": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "required": ["host", "guest"],
                        "properties": {
                            "host": {"type": "integer", "minimum": 1, "maximum": 65535},
                            "guest": {"type": "integer", "minimum": 1, "maximum": 65535},
                        },
                        "additionalProperties": False,
                    },
                },
            },
            "additionalProperties": False,
        },
        "users": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["localname"],
                "properties": {
                    "localname": {"type": "string", "minLength": 1},
                    "admin": {"type": "boolean"},
                    "password": {"type": "string"},
                    "rate_limit": {"enum": ["unlimited", "default", "inherited"]},
                    "rooms": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "public": {"type": "boolean"},
                                "name": {"type": "string"},
                                "alias": {"type": "string", "minLength": 1},
                                "topic": {"type": "string"},
                                "members": {"type": "array", "items": {"type": "string"}},
                            },
                            "additionalProperties": False,
                        },
                    },
                },
                "additionalProperties": False,
            },
        },
        "synapse": {
            "type": "object",
            "properties": {"docker": {"type": "string", "minLength": 1}},
            "additionalProperties": False,
        },
        "credentials": {
            "type": "object",
            "properties": {
                "username": {"type": "string"},
                "password": {"type": "string"},
                "serveraddress": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "directories": {
            "type": "object",
            "properties": {"root": {"type": "string", "minLength": 1}},
            "additionalProperties": False,
        },
        "workers": {
            "type": "object",
            "properties": {"enabled": {"type": "boolean"}},
            "additionalProperties": False,
        },
        "autoclean_on_error": {"type": "boolean"},
    },
    "additionalProperties": False,
}


class RateLimit(str, Enum):
    """Per-user rate limit override."""

    UNLIMITED = "unlimited"
    INHERITED = "inherited"


@dataclass(frozen=True)
class PortMapping:
    """A port in the container made accessible on the host machine."""

    host: int
    guest: int


@dataclass(frozen=True)
class DockerConfig:
    hostname: str = DEFAULT_HOSTNAME
    port_mapping: Tuple[PortMapping, ...] = ()


@dataclass(frozen=True)
class HomeserverConfig:
    """
    Overlay merged into the homeserver.yaml generated by Synapse.

    The four well-known keys get defaults; every other key is kept as-is
    in ``extra_fields`` since Synapse's own schema keeps evolving.
    """

    host_port: int = DEFAULT_HOST_PORT
    server_name: str = f"localhost:{DEFAULT_HOST_PORT}"
    public_baseurl: str = f"http://localhost:{DEFAULT_HOST_PORT}"
    registration_shared_secret: str = field(
        default=DEFAULT_REGISTRATION_SHARED_SECRET, repr=False
    )
    extra_fields: Dict[str, Any] = field(default_factory=dict)

    def with_host_port(self, port: int) -> "HomeserverConfig":
        """Return a copy listening on ``port``, resetting server name and base url."""
        return dataclasses.replace(
            self,
            host_port=port,
            server_name=f"localhost:{port}",
            public_baseurl=f"http://localhost:{port}",
        )


@dataclass(frozen=True)
class Credentials:
    """Docker registry credentials. Never written to disk or logged."""

    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    serveraddress: Optional[str] = None

    def auth_config(self) -> Optional[Dict[str, str]]:
        """Return the docker SDK ``auth_config`` for this call, if any."""
        if not self.username or not self.password:
            return None
        auth = {"username": self.username, "password": self.password}
        if self.serveraddress:
            auth["serveraddress"] = self.serveraddress
        return auth


@dataclass(frozen=True)
class RoomConfig:
    name: Optional[str] = None
    alias: Optional[str] = None
    topic: Optional[str] = None
    public: bool = False
    members: Tuple[str, ...] = ()


@dataclass(frozen=True)
class UserConfig:
    localname: str
    admin: bool = False
    password: str = field(default=DEFAULT_PASSWORD, repr=False)
    rate_limit: RateLimit = RateLimit.INHERITED
    rooms: Tuple[RoomConfig, ...] = ()


@dataclass(frozen=True)
class ModuleConfig:
    """
    A Synapse module to build into the image.

    ``build`` runs on the host and must copy the module's source tree
    into ``MX_TEST_MODULE_DIR``. ``install`` runs in the guest while
    building the image. ``config`` is appended to ``modules`` in
    homeserver.yaml.
    """

    name: str
    build: Tuple[str, ...]
    config: Any
    install: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    copy: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UpScripts:
    before: Tuple[str, ...] = ()
    after: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DownScripts:
    success: Tuple[str, ...] = ()
    failure: Tuple[str, ...] = ()
    finally_: Tuple[str, ...] = ()


def _default_root() -> Path:
    return Path(tempfile.gettempdir()) / "mx-tester"


@dataclass(frozen=True)
class SuiteConfig:
    """
    The contents of a mx-tester.yml.

    The suite name is used to derive image, network and container names,
    so that suites with different names or Synapse versions never collide.
    """

    name: str
    modules: Tuple[ModuleConfig, ...] = ()
    homeserver: HomeserverConfig = field(default_factory=HomeserverConfig)
    up: UpScripts = field(default_factory=UpScripts)
    run: Tuple[str, ...] = ()
    down: DownScripts = field(default_factory=DownScripts)
    docker: DockerConfig = field(default_factory=DockerConfig)
    users: Tuple[UserConfig, ...] = ()
    synapse_image: str = DEFAULT_SYNAPSE_IMAGE
    credentials: Credentials = field(default_factory=Credentials)
    root: Path = field(default_factory=_default_root)
    workers_enabled: bool = False
    autoclean_on_error: bool = True

    def test_root(self) -> Path:
        """The directory holding all data for this test. Cleaned by `build`."""
        return self.root / self.name

    def synapse_root(self) -> Path:
        """The docker build context: modules, Dockerfile and overlay."""
        return self.test_root() / "synapse"

    def synapse_data_dir(self) -> Path:
        return self.synapse_root() / "data"

    def synapse_workers_dir(self) -> Path:
        return self.synapse_root() / "workers"

    def etc_dir(self) -> Path:
        return self.test_root() / "etc"

    def logs_dir(self) -> Path:
        return self.test_root() / "logs"

    def scripts_logs_dir(self) -> Path:
        return self.logs_dir() / "mx-tester"

    def script_tmpdir(self) -> Path:
        # Scratch space for scripts; never cleared by the orchestrator.
        return self.synapse_root() / "scripts"

    def module_dir(self, module: ModuleConfig) -> Path:
        return self.synapse_root() / module.name

    def tag(self) -> str:
        """The tag of the Docker image built for this suite."""
        suffix = "-workers" if self.workers_enabled else ""
        return f"mx-tester-synapse-{self.synapse_image}-{self.name}{suffix}"

    def network(self) -> str:
        """The name of the Docker network, derived from the image tag."""
        return "net-" + re.sub(r"[^A-Za-z0-9_.-]", "-", self.tag())

    def setup_container_name(self) -> str:
        suffix = "-workers" if self.workers_enabled else ""
        return f"mx-tester-synapse-setup-{self.name}{suffix}"

    def run_container_name(self) -> str:
        suffix = "-workers" if self.workers_enabled else ""
        return f"mx-tester-synapse-run-{self.name}{suffix}"

    def base_url(self) -> str:
        """The URL at which the homeserver is reachable from the host."""
        return f"http://localhost:{self.homeserver.host_port}"

    def with_overrides(
        self,
        root: Optional[str] = None,
        workers: Optional[bool] = None,
        synapse_tag: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        server: Optional[str] = None,
        autoclean_on_error: Optional[bool] = None,
    ) -> "SuiteConfig":
        """Return a copy with command-line overrides applied."""
        changes: Dict[str, Any] = {}
        if root is not None:
            changes["root"] = Path(root)
        if workers is not None:
            changes["workers_enabled"] = workers
        if synapse_tag is not None:
            changes["synapse_image"] = f"matrixdotorg/synapse:{synapse_tag}"
        if autoclean_on_error is not None:
            changes["autoclean_on_error"] = autoclean_on_error
        if any(value is not None for value in (username, password, server)):
            changes["credentials"] = dataclasses.replace(
                self.credentials,
                username=username if username is not None else self.credentials.username,
                password=password if password is not None else self.credentials.password,
                serveraddress=server if server is not None else self.credentials.serveraddress,
            )
        return dataclasses.replace(self, **changes)

    def qualify_alias(self, alias: str) -> str:
        """Turn ``lobby`` into ``#lobby:<server_name>``; full aliases pass through."""
        if alias.startswith("#"):
            return alias
        return f"#{alias}:{self.homeserver.server_name}"

    def user_id(self, localname: str) -> str:
        return f"@{localname}:{self.homeserver.server_name}"

    def find_user(self, localname: str) -> Optional[UserConfig]:
        for user in self.users:
            if user.localname == localname:
                return user
        return None


def _script(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


def _validate_schema(data: Any) -> None:
    validator = jsonschema.Draft202012Validator(SUITE_SCHEMA)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path))
    if not errors:
        return

    error_messages = []
    for error in errors:
        field_path = (
            ".".join(str(p) for p in error.absolute_path)
            if error.absolute_path
            else "root"
        )
        if error.validator == "additionalProperties":
            error_messages.append(f"Field '{field_path}' contains unexpected properties")
        elif error.validator == "required":
            error_messages.append(f"Field '{field_path}': {error.message}")
        elif error.validator == "anyOf":
            error_messages.append(
                f"Field '{field_path}' must be a script (a string or a list of strings)"
            )
        else:
            error_messages.append(f"Field '{field_path}': {error.message}")
    raise ConfigurationError("Invalid configuration: " + "; ".join(error_messages))


def _parse_homeserver(data: Dict[str, Any]) -> HomeserverConfig:
    extra = dict(data)
    host_port = extra.pop("host_port", DEFAULT_HOST_PORT)
    server_name = extra.pop("server_name", f"localhost:{host_port}")
    public_baseurl = extra.pop("public_baseurl", f"http://localhost:{host_port}")
    secret = extra.pop("registration_shared_secret", DEFAULT_REGISTRATION_SHARED_SECRET)
    return HomeserverConfig(
        host_port=host_port,
        server_name=server_name,
        public_baseurl=public_baseurl,
        registration_shared_secret=secret,
        extra_fields=extra,
    )


def _parse_down(data: Dict[str, Any]) -> DownScripts:
    down = data.get("down") or {}
    flat_keys = [key for key in ("success", "failure", "finally") if key in data]
    if flat_keys:
        if data.get("down"):
            raise ConfigurationError(
                "`down` scripts are declared both under `down` and at top level "
                f"({', '.join(flat_keys)})"
            )
        logger.warning(
            "Top-level %s is deprecated, declare these scripts under `down`",
            ", ".join(f"`{key}`" for key in flat_keys),
        )
        down = {key: data[key] for key in flat_keys}
    return DownScripts(
        success=_script(down.get("success")),
        failure=_script(down.get("failure")),
        finally_=_script(down.get("finally")),
    )


def _parse_up(value: Any) -> UpScripts:
    if isinstance(value, dict):
        return UpScripts(before=_script(value.get("before")), after=_script(value.get("after")))
    # A bare script is an `up.before` script.
    return UpScripts(before=_script(value))


def _parse_users(data: List[Dict[str, Any]]) -> Tuple[UserConfig, ...]:
    users = []
    for user in data:
        rate_limit = user.get("rate_limit", "inherited")
        users.append(
            UserConfig(
                localname=user["localname"],
                admin=user.get("admin", False),
                password=user.get("password", DEFAULT_PASSWORD),
                rate_limit=(
                    RateLimit.UNLIMITED if rate_limit == "unlimited" else RateLimit.INHERITED
                ),
                rooms=tuple(
                    RoomConfig(
                        name=room.get("name"),
                        alias=room.get("alias"),
                        topic=room.get("topic"),
                        public=room.get("public", False),
                        members=tuple(room.get("members", ())),
                    )
                    for room in user.get("rooms", ())
                ),
            )
        )
    return tuple(users)


def validate_config(config: SuiteConfig) -> None:
    """
    Run the semantic checks that a JSON Schema cannot express.

    Raises:
        ConfigurationError: On duplicate users, modules or aliases, or on
            room members that are not declared users.
    """
    seen_users = set()
    for user in config.users:
        if user.localname in seen_users:
            raise ConfigurationError(f"Duplicate user `{user.localname}`")
        seen_users.add(user.localname)

    seen_modules = set()
    for module in config.modules:
        if module.name in seen_modules:
            raise ConfigurationError(f"Duplicate module `{module.name}`")
        seen_modules.add(module.name)

    seen_aliases: Dict[str, str] = {}
    for user in config.users:
        for room in user.rooms:
            for member in room.members:
                if member not in seen_users:
                    raise ConfigurationError(
                        f"Room member `{member}` (declared by `{user.localname}`) "
                        "is not a declared user"
                    )
            if room.alias is None:
                continue
            alias = config.qualify_alias(room.alias)
            if not alias.endswith(":" + config.homeserver.server_name):
                raise ConfigurationError(
                    f"Alias `{alias}` does not belong to homeserver "
                    f"`{config.homeserver.server_name}`"
                )
            if alias in seen_aliases:
                raise ConfigurationError(
                    f"Alias `{alias}` is declared twice "
                    f"(by `{seen_aliases[alias]}` and `{user.localname}`)"
                )
            seen_aliases[alias] = user.localname

    guest_ports = [mapping.guest for mapping in config.docker.port_mapping]
    if HARDCODED_GUEST_PORT in guest_ports:
        raise ConfigurationError(
            f"Guest port {HARDCODED_GUEST_PORT} is reserved for the homeserver, "
            "use `homeserver.host_port` to change its host port"
        )
    host_ports = [mapping.host for mapping in config.docker.port_mapping]
    host_ports.append(config.homeserver.host_port)
    if len(set(host_ports)) != len(host_ports):
        raise ConfigurationError("The same host port is mapped more than once")


def parse_config(data: Any) -> SuiteConfig:
    """
    Build a SuiteConfig from a parsed YAML document.

    Args:
        data: The document, as returned by ``yaml.safe_load``

    Returns:
        The validated, immutable configuration

    Raises:
        ConfigurationError: If the document is malformed or inconsistent
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a YAML object")
    _validate_schema(data)

    homeserver = _parse_homeserver(data.get("homeserver") or {})
    docker = data.get("docker") or {}
    credentials = data.get("credentials") or {}
    directories = data.get("directories") or {}

    config = SuiteConfig(
        name=data["name"],
        modules=tuple(
            ModuleConfig(
                name=module["name"],
                build=_script(module["build"]),
                install=_script(module.get("install")),
                env=dict(module.get("env") or {}),
                copy=dict(module.get("copy") or {}),
                config=module["config"],
            )
            for module in data.get("modules") or ()
        ),
        homeserver=homeserver,
        up=_parse_up(data.get("up")),
        run=_script(data.get("run")),
        down=_parse_down(data),
        docker=DockerConfig(
            hostname=docker.get("hostname", DEFAULT_HOSTNAME),
            port_mapping=tuple(
                PortMapping(host=mapping["host"], guest=mapping["guest"])
                for mapping in docker.get("port_mapping", ())
            ),
        ),
        users=_parse_users(data.get("users") or []),
        synapse_image=(data.get("synapse") or {}).get("docker", DEFAULT_SYNAPSE_IMAGE),
        credentials=Credentials(
            username=credentials.get("username"),
            password=credentials.get("password"),
            serveraddress=credentials.get("serveraddress"),
        ),
        root=Path(os.path.expanduser(directories["root"])) if "root" in directories else _default_root(),
        workers_enabled=(data.get("workers") or {}).get("enabled", False),
        autoclean_on_error=data.get("autoclean_on_error", True),
    )
    validate_config(config)
    return config


def load_config(path: str = DEFAULT_CONFIG_FILE) -> SuiteConfig:
    """
    Load and validate a suite configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file

    Returns:
        The validated, immutable configuration

    Raises:
        ConfigurationError: If the file cannot be read or is invalid
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Could not open config file `{path}`: {e}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Config file `{path}` contains invalid YAML: {e}")

    config = parse_config(data)
    logger.debug("Loaded configuration for suite %s from %s", config.name, path)
    return config
