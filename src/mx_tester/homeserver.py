"""
Homeserver configuration overlay.

Synapse generates its own homeserver.yaml (signing keys, database, media
store). We merge the suite's overlay on top of it: well-known keys from
``homeserver.*``, extra keys copied verbatim, generous rate limits for
tests, a listener on the port we map, and the config of every module.
"""

import copy
import logging
from pathlib import Path
from typing import Any, Dict

import yaml

from .config import (
    HARDCODED_GUEST_PORT,
    HARDCODED_MAIN_PROCESS_HTTP_LISTENER_PORT,
    SuiteConfig,
)
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

OVERLAY_FILE_NAME = "homeserver.overlay.yaml"

# Declaring a rate limit as this string restores Synapse's own default.
SYNAPSE_DEFAULT = "synapse-default"

LARGE_VALUE = 1_000_000_000

_WORKERS_DATABASE = {
    "name": "psycopg2",
    "txn_limit": 10_000,
    "args": {
        "user": "synapse",
        "password": "password",
        "host": "localhost",
        "port": 5432,
        "cp_min": 5,
        "cp_max": 10,
    },
}


def _large_rate_limit() -> Dict[str, int]:
    return {"per_second": LARGE_VALUE, "burst_count": LARGE_VALUE}


def default_rate_limits() -> Dict[str, Any]:
    """Rate limits installed unless the suite declares its own."""
    return {
        "rc_message": _large_rate_limit(),
        "rc_registration": _large_rate_limit(),
        "rc_admin_redaction": _large_rate_limit(),
        "rc_login": {
            "address": _large_rate_limit(),
            "account": _large_rate_limit(),
            "failed_attempts": _large_rate_limit(),
        },
        "rc_invites": {
            "per_room": _large_rate_limit(),
            "per_user": _large_rate_limit(),
            "per_sender": _large_rate_limit(),
        },
    }


def _listeners(workers_enabled: bool) -> list:
    listeners = [
        {
            "port": (
                HARDCODED_MAIN_PROCESS_HTTP_LISTENER_PORT
                if workers_enabled
                else HARDCODED_GUEST_PORT
            ),
            "tls": False,
            "type": "http",
            "bind_addresses": ["::"],
            "x_forwarded": False,
            "resources": [
                {"names": ["client"], "compress": True},
                {"names": ["federation"], "compress": False},
            ],
        }
    ]
    if workers_enabled:
        listeners.append(
            {
                "port": 9093,
                "bind_address": "127.0.0.1",
                "type": "http",
                "resources": [{"names": ["replication"]}],
            }
        )
    return listeners


def patch_homeserver_config_content(config: SuiteConfig, content: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge the suite overlay into ``content`` in place.

    Args:
        config: The suite configuration
        content: A homeserver.yaml mapping, usually generated by Synapse

    Returns:
        The patched mapping (same object as ``content``)

    Raises:
        ConfigurationError: If the overlay or the generated file has an
            unexpected shape
    """
    homeserver = config.homeserver
    content["public_baseurl"] = homeserver.public_baseurl
    content["server_name"] = homeserver.server_name
    content["registration_shared_secret"] = homeserver.registration_shared_secret
    content["enable_registration_without_verification"] = True

    # May include `modules` or `listeners`.
    for key, value in homeserver.extra_fields.items():
        content[key] = copy.deepcopy(value)

    for key, rate_limit in default_rate_limits().items():
        if key not in content:
            content[key] = rate_limit
        elif content[key] == SYNAPSE_DEFAULT:
            del content[key]

    content["listeners"] = _listeners(config.workers_enabled)

    modules = content.get("modules")
    if modules is None:
        modules = content["modules"] = []
    if not isinstance(modules, list):
        raise ConfigurationError("In homeserver.yaml, expected a sequence for key `modules`")
    for module in config.modules:
        modules.append(copy.deepcopy(module.config))

    if config.workers_enabled:
        content.update(
            {
                "redis": {"enabled": True},
                "database": copy.deepcopy(_WORKERS_DATABASE),
                "notify_appservices": False,
                "send_federation": False,
                "update_user_directory": False,
                "start_pushers": False,
                "url_preview_enabled": False,
                "url_preview_ip_range_blacklist": ["255.255.255.255/32"],
                "suppress_key_server_warning": True,
            }
        )
    return content


def render_overlay(config: SuiteConfig) -> str:
    """Render the overlay alone, as shipped in the image build context."""
    return yaml.safe_dump(patch_homeserver_config_content(config, {}), sort_keys=True)


def patch_homeserver_config(config: SuiteConfig, path: Path) -> None:
    """
    Patch the homeserver.yaml at ``path`` with the suite overlay.

    Raises:
        ConfigurationError: If the generated file is not a YAML mapping
    """
    logger.debug("Patching %s", path)
    with open(path, encoding="utf-8") as f:
        try:
            content = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"The homeserver.yaml generated by synapse is invalid: {e}")
    if not isinstance(content, dict):
        raise ConfigurationError("The homeserver.yaml generated by synapse is not a mapping")

    patch_homeserver_config_content(config, content)

    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(content, f, sort_keys=True)
