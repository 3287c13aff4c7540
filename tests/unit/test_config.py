"""
Unit tests for the mx-tester configuration module.
"""

import logging
from pathlib import Path

import pytest

from mx_tester.config import (
    DEFAULT_HOST_PORT,
    DEFAULT_REGISTRATION_SHARED_SECRET,
    DEFAULT_SYNAPSE_IMAGE,
    RateLimit,
    load_config,
    parse_config,
)
from mx_tester.errors import ConfigurationError


class TestParseConfig:
    """Test building a SuiteConfig from a YAML document."""

    def test_minimal_config_defaults(self):
        """Test that a config with only a name gets every default."""
        config = parse_config({"name": "minimal"})

        assert config.name == "minimal"
        assert config.modules == ()
        assert config.users == ()
        assert config.run == ()
        assert config.synapse_image == DEFAULT_SYNAPSE_IMAGE
        assert config.homeserver.host_port == DEFAULT_HOST_PORT
        assert config.homeserver.server_name == f"localhost:{DEFAULT_HOST_PORT}"
        assert config.homeserver.public_baseurl == f"http://localhost:{DEFAULT_HOST_PORT}"
        assert config.homeserver.registration_shared_secret == DEFAULT_REGISTRATION_SHARED_SECRET
        assert config.docker.hostname == "synapse"
        assert config.workers_enabled is False
        assert config.autoclean_on_error is True
        assert config.root.name == "mx-tester"

    def test_host_port_drives_server_name(self):
        """Test that server_name and public_baseurl follow host_port."""
        config = parse_config({"name": "port", "homeserver": {"host_port": 8448}})

        assert config.homeserver.server_name == "localhost:8448"
        assert config.homeserver.public_baseurl == "http://localhost:8448"
        assert config.base_url() == "http://localhost:8448"

    def test_extra_homeserver_fields_are_kept(self):
        """Test that unknown homeserver keys are kept verbatim."""
        config = parse_config(
            {
                "name": "extra",
                "homeserver": {"server_name": "localhost", "rc_message": "synapse-default", "enable_metrics": True},
            }
        )

        assert config.homeserver.server_name == "localhost"
        assert config.homeserver.extra_fields == {"rc_message": "synapse-default", "enable_metrics": True}

    def test_scripts_accept_string_or_list(self):
        """Test that scripts may be a single string or a list."""
        config = parse_config({"name": "scripts", "run": "echo hello", "up": {"after": ["a", "b"]}})

        assert config.run == ("echo hello",)
        assert config.up.before == ()
        assert config.up.after == ("a", "b")

    def test_bare_up_script_runs_before(self):
        config = parse_config({"name": "scripts", "up": ["docker pull foo"]})

        assert config.up.before == ("docker pull foo",)
        assert config.up.after == ()

    def test_nested_down(self):
        config = parse_config(
            {"name": "down", "down": {"success": "s", "failure": ["f"], "finally": ["x", "y"]}}
        )

        assert config.down.success == ("s",)
        assert config.down.failure == ("f",)
        assert config.down.finally_ == ("x", "y")

    def test_flat_down_is_deprecated(self, caplog):
        """Test that top-level success/failure/finally still work, with a warning."""
        with caplog.at_level(logging.WARNING):
            config = parse_config({"name": "down", "success": "s", "finally": "x"})

        assert config.down.success == ("s",)
        assert config.down.finally_ == ("x",)
        assert "deprecated" in caplog.text

    def test_flat_and_nested_down_conflict(self):
        with pytest.raises(ConfigurationError, match="both"):
            parse_config({"name": "down", "down": {"success": "s"}, "failure": "f"})

    def test_users_and_rooms(self):
        """Test parsing users, their rooms and rate limits."""
        config = parse_config(
            {
                "name": "users",
                "users": [
                    {"localname": "admin", "admin": True, "rate_limit": "unlimited"},
                    {
                        "localname": "alice",
                        "rooms": [{"alias": "lobby", "public": True, "members": ["admin"]}],
                    },
                ],
            }
        )

        admin, alice = config.users
        assert admin.admin is True
        assert admin.rate_limit is RateLimit.UNLIMITED
        assert alice.admin is False
        assert alice.password == "password"
        assert alice.rate_limit is RateLimit.INHERITED
        assert alice.rooms[0].public is True
        assert alice.rooms[0].members == ("admin",)
        assert config.find_user("alice") is alice
        assert config.find_user("bob") is None

    def test_default_rate_limit_means_inherited(self):
        config = parse_config({"name": "rl", "users": [{"localname": "a", "rate_limit": "default"}]})

        assert config.users[0].rate_limit is RateLimit.INHERITED

    def test_modules(self):
        config = parse_config(
            {
                "name": "modules",
                "modules": [
                    {
                        "name": "my_module",
                        "build": ["cp -r . $MX_TEST_MODULE_DIR"],
                        "install": "pip install foo",
                        "env": {"FOO": "bar"},
                        "config": {"module": "my_module.Module", "config": {}},
                    }
                ],
            }
        )

        module = config.modules[0]
        assert module.build == ("cp -r . $MX_TEST_MODULE_DIR",)
        assert module.install == ("pip install foo",)
        assert module.env == {"FOO": "bar"}
        assert module.config == {"module": "my_module.Module", "config": {}}
        assert config.module_dir(module) == config.synapse_root() / "my_module"

    def test_credentials_not_in_repr(self):
        config = parse_config(
            {"name": "creds", "credentials": {"username": "me", "password": "hunter2"}}
        )

        assert config.credentials.auth_config() == {"username": "me", "password": "hunter2"}
        assert "hunter2" not in repr(config)
        assert DEFAULT_REGISTRATION_SHARED_SECRET not in repr(config)

    def test_credentials_incomplete(self):
        config = parse_config({"name": "creds", "credentials": {"username": "me"}})

        assert config.credentials.auth_config() is None


class TestValidation:
    """Test that invalid configurations are rejected."""

    @pytest.mark.parametrize(
        "data",
        [
            [],
            {},
            {"name": ""},
            {"name": "has space"},
            {"name": "x", "unknown": 1},
            {"name": "x", "run": 42},
            {"name": "x", "users": [{"admin": True}]},
            {"name": "x", "users": [{"localname": "a", "rate_limit": "fast"}]},
            {"name": "x", "modules": [{"name": "m", "build": "b"}]},
            {"name": "x", "homeserver": {"host_port": 70000}},
        ],
    )
    def test_malformed_documents(self, data):
        with pytest.raises(ConfigurationError):
            parse_config(data)

    def test_error_names_the_field(self):
        with pytest.raises(ConfigurationError, match="users.0"):
            parse_config({"name": "x", "users": [{"localname": 3}]})

    def test_duplicate_user(self):
        with pytest.raises(ConfigurationError, match="Duplicate user `alice`"):
            parse_config({"name": "x", "users": [{"localname": "alice"}, {"localname": "alice"}]})

    def test_duplicate_module(self):
        module = {"name": "m", "build": "b", "config": {}}
        with pytest.raises(ConfigurationError, match="Duplicate module"):
            parse_config({"name": "x", "modules": [module, module]})

    def test_duplicate_alias_across_users(self):
        """Test that a short and a full form of the same alias collide."""
        with pytest.raises(ConfigurationError, match="declared twice"):
            parse_config(
                {
                    "name": "x",
                    "homeserver": {"server_name": "localhost"},
                    "users": [
                        {"localname": "alice", "rooms": [{"alias": "lobby"}]},
                        {"localname": "bob", "rooms": [{"alias": "#lobby:localhost"}]},
                    ],
                }
            )

    def test_unknown_member(self):
        with pytest.raises(ConfigurationError, match="`bob`"):
            parse_config(
                {"name": "x", "users": [{"localname": "alice", "rooms": [{"members": ["bob"]}]}]}
            )

    def test_alias_on_foreign_server(self):
        with pytest.raises(ConfigurationError, match="does not belong"):
            parse_config(
                {"name": "x", "users": [{"localname": "alice", "rooms": [{"alias": "#a:example.org"}]}]}
            )

    def test_reserved_guest_port(self):
        with pytest.raises(ConfigurationError, match="reserved"):
            parse_config({"name": "x", "docker": {"port_mapping": [{"host": 1234, "guest": 8008}]}})

    def test_duplicate_host_port(self):
        with pytest.raises(ConfigurationError, match="more than once"):
            parse_config({"name": "x", "docker": {"port_mapping": [{"host": 9999, "guest": 80}]}})


class TestSuiteConfig:
    """Test derived names and overrides."""

    def test_resource_names(self):
        config = parse_config({"name": "suite", "synapse": {"docker": "matrixdotorg/synapse:v1.90.0"}})

        assert config.tag() == "mx-tester-synapse-matrixdotorg/synapse:v1.90.0-suite"
        assert config.network() == "net-mx-tester-synapse-matrixdotorg-synapse-v1.90.0-suite"
        assert config.setup_container_name() == "mx-tester-synapse-setup-suite"
        assert config.run_container_name() == "mx-tester-synapse-run-suite"

    def test_workers_change_resource_names(self):
        config = parse_config({"name": "suite", "workers": {"enabled": True}})

        assert config.tag().endswith("-suite-workers")
        assert config.run_container_name() == "mx-tester-synapse-run-suite-workers"

    def test_with_overrides(self):
        config = parse_config({"name": "suite", "credentials": {"username": "me"}})

        overridden = config.with_overrides(
            root="/tmp/elsewhere",
            workers=True,
            synapse_tag="v1.99.0",
            password="secret",
            autoclean_on_error=False,
        )

        assert overridden.root == Path("/tmp/elsewhere")
        assert overridden.workers_enabled is True
        assert overridden.synapse_image == "matrixdotorg/synapse:v1.99.0"
        assert overridden.autoclean_on_error is False
        assert overridden.credentials.username == "me"
        assert overridden.credentials.password == "secret"
        # The original is untouched.
        assert config.workers_enabled is False

    def test_with_no_overrides_is_equal(self):
        config = parse_config({"name": "suite"})

        assert config.with_overrides() == config

    def test_qualify_alias(self):
        config = parse_config({"name": "suite", "homeserver": {"server_name": "localhost"}})

        assert config.qualify_alias("lobby") == "#lobby:localhost"
        assert config.qualify_alias("#lobby:localhost") == "#lobby:localhost"
        assert config.user_id("alice") == "@alice:localhost"

    def test_directories(self, temp_dir):
        config = parse_config({"name": "suite", "directories": {"root": str(temp_dir)}})

        assert config.test_root() == temp_dir / "suite"
        assert config.synapse_data_dir() == temp_dir / "suite" / "synapse" / "data"
        assert config.script_tmpdir() == temp_dir / "suite" / "synapse" / "scripts"
        assert config.logs_dir() == temp_dir / "suite" / "logs"


class TestLoadConfig:
    """Test loading from a file."""

    def test_load_yaml(self, temp_dir):
        path = temp_dir / "mx-tester.yml"
        path.write_text(
            "name: from-file\n"
            "run:\n"
            "  - echo one\n"
            "users:\n"
            "  - localname: alice\n"
        )

        config = load_config(str(path))

        assert config.name == "from-file"
        assert config.run == ("echo one",)
        assert config.users[0].localname == "alice"

    def test_missing_file(self, temp_dir):
        with pytest.raises(ConfigurationError, match="Could not open"):
            load_config(str(temp_dir / "missing.yml"))

    def test_invalid_yaml(self, temp_dir):
        path = temp_dir / "mx-tester.yml"
        path.write_text("name: [unclosed\n")

        with pytest.raises(ConfigurationError, match="invalid YAML"):
            load_config(str(path))

    def test_error_carries_config_phase(self, temp_dir):
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(str(temp_dir / "missing.yml"))

        assert exc_info.value.phase == "config"
        assert str(exc_info.value).startswith("[config]")
