"""
Pytest configuration and shared fixtures for mx-tester tests.

This module provides common test fixtures for both unit and integration
tests, including an in-memory homeserver that speaks the handful of
endpoints used by the provisioner.
"""

import itertools
import json
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional
from unittest.mock import MagicMock
from urllib.parse import unquote, urlsplit

import pytest
import requests

from mx_tester.config import DEFAULT_REGISTRATION_SHARED_SECRET, parse_config
from mx_tester.matrix_client import ADMIN_API, CLIENT_API, registration_mac


class FakeResponse:
    def __init__(self, status_code: int, body: Optional[Dict[str, Any]] = None, text: Optional[str] = None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else json.dumps(body or {})

    def json(self):
        if self._body is None:
            raise ValueError("No JSON body")
        return self._body


def _error(status: int, errcode: str, error: str = "") -> FakeResponse:
    return FakeResponse(status, {"errcode": errcode, "error": error or errcode})


class FakeHomeserver:
    """
    In-memory stand-in for a Synapse homeserver, used as a requests Session.

    Only the endpoints mx-tester talks to are implemented. State persists
    across calls, so provisioning twice observes the first run's fixtures.
    """

    def __init__(self, server_name: str = "localhost:9999", shared_secret: str = DEFAULT_REGISTRATION_SHARED_SECRET):
        self.server_name = server_name
        self.shared_secret = shared_secret
        self.alive = True
        self.users: Dict[str, Dict[str, Any]] = {}
        self.tokens: Dict[str, str] = {}
        self.rooms: Dict[str, Dict[str, Any]] = {}
        self.aliases: Dict[str, str] = {}
        self.alias_creators: Dict[str, str] = {}
        # (alias, user id) of every successful alias deletion.
        self.deleted_aliases = []
        self.ratelimit_overrides = set()
        # Room actions (e.g. "invite") answered with M_FORBIDDEN.
        self.rejected = set()
        self.calls = []
        self._ids = itertools.count(1)

    # helpers for tests

    def add_user(self, localname: str, password: str = "password", admin: bool = False) -> str:
        user_id = f"@{localname}:{self.server_name}"
        self.users[user_id] = {"password": password, "admin": admin}
        return user_id

    def add_room(self, creator: str, alias: Optional[str] = None, name=None, topic=None, public=False) -> str:
        room_id = f"!room{next(self._ids)}:{self.server_name}"
        self.rooms[room_id] = {
            "creator": creator,
            "join_rule": "public" if public else "invite",
            "name": name,
            "topic": topic,
            "members": {creator: "join"},
        }
        if alias:
            self.aliases[alias] = room_id
            self.alias_creators[alias] = creator
        return room_id

    def count_calls(self, method: str, suffix: str) -> int:
        return sum(1 for m, path in self.calls if m == method and path.endswith(suffix))

    # requests.Session interface

    def request(self, method, url, timeout=None, headers=None, json=None):
        if not self.alive:
            raise requests.ConnectionError("Connection refused")
        path = unquote(urlsplit(url).path)
        self.calls.append((method, path))
        token = (headers or {}).get("Authorization", "")[len("Bearer "):]
        body = json or {}

        if path == "/health":
            return FakeResponse(200, text="OK")
        if path == f"{CLIENT_API}/login":
            return self._login(body)
        if path == f"{ADMIN_API}/register":
            return self._register(method, body)

        requester = self.tokens.get(token)
        if requester is None:
            return _error(401, "M_MISSING_TOKEN")

        if path.startswith(f"{ADMIN_API}/users/") and path.endswith("/override_ratelimit"):
            if not self.users[requester]["admin"]:
                return _error(403, "M_FORBIDDEN", "You are not a server admin")
            self.ratelimit_overrides.add(path.split("/")[-2])
            return FakeResponse(200, {"messages_per_second": 0, "burst_count": 0})
        if path == f"{CLIENT_API}/createRoom":
            return self._create_room(requester, body)
        if path.startswith(f"{CLIENT_API}/directory/room/"):
            alias = path[len(f"{CLIENT_API}/directory/room/"):]
            if alias not in self.aliases:
                return _error(404, "M_NOT_FOUND", f"Room alias {alias} not found")
            if method == "DELETE":
                return self._delete_alias(requester, alias)
            return FakeResponse(200, {"room_id": self.aliases[alias], "servers": [self.server_name]})
        if path.startswith(f"{CLIENT_API}/rooms/"):
            room_id, action, *rest = path[len(f"{CLIENT_API}/rooms/"):].split("/")
            return self._room(requester, room_id, action, rest, body)
        if path.startswith(f"{CLIENT_API}/join/"):
            return self._join(requester, path[len(f"{CLIENT_API}/join/"):])
        return _error(404, "M_UNRECOGNIZED")

    def _session(self, user_id: str) -> FakeResponse:
        token = f"token-{next(self._ids)}"
        self.tokens[token] = user_id
        return FakeResponse(200, {"user_id": user_id, "access_token": token, "device_id": "DEVICE"})

    def _login(self, body):
        localname = body["identifier"]["user"]
        user_id = f"@{localname}:{self.server_name}"
        user = self.users.get(user_id)
        if user is None or user["password"] != body["password"]:
            return _error(403, "M_FORBIDDEN", "Invalid username or password")
        return self._session(user_id)

    def _register(self, method, body):
        if method == "GET":
            return FakeResponse(200, {"nonce": f"nonce-{next(self._ids)}"})
        expected = registration_mac(
            self.shared_secret, body["nonce"], body["username"], body["password"], body["admin"]
        )
        if body["mac"] != expected:
            return _error(403, "M_FORBIDDEN", "HMAC incorrect")
        user_id = f"@{body['username']}:{self.server_name}"
        if user_id in self.users:
            return _error(400, "M_USER_IN_USE", "User ID already taken.")
        self.add_user(body["username"], body["password"], body["admin"])
        return self._session(user_id)

    def _create_room(self, requester, body):
        alias = None
        if "room_alias_name" in body:
            alias = f"#{body['room_alias_name']}:{self.server_name}"
            if alias in self.aliases:
                return _error(400, "M_ROOM_IN_USE", "Room alias already taken")
        room_id = self.add_room(
            requester,
            alias=alias,
            name=body.get("name"),
            topic=body.get("topic"),
            public=body.get("preset") == "public_chat",
        )
        return FakeResponse(200, {"room_id": room_id})

    def _delete_alias(self, requester, alias):
        # Alias creator, server admin or (here) the room creator.
        room = self.rooms.get(self.aliases[alias], {})
        allowed = (
            self.alias_creators.get(alias) == requester
            or self.users.get(requester, {}).get("admin")
            or room.get("creator") == requester
        )
        if not allowed:
            return _error(403, "M_FORBIDDEN", "You don't have permission to delete the alias.")
        del self.aliases[alias]
        self.alias_creators.pop(alias, None)
        self.deleted_aliases.append((alias, requester))
        return FakeResponse(200, {})

    def _room(self, requester, room_id, action, rest, body):
        room = self.rooms.get(room_id)
        if room is None:
            return _error(404, "M_NOT_FOUND")
        if room["members"].get(requester) != "join":
            return _error(403, "M_FORBIDDEN", "You are not in the room")
        if action in self.rejected:
            return _error(403, "M_FORBIDDEN", f"{action} is disabled")
        if action == "state":
            event_type = rest[0]
            if event_type == "m.room.join_rules":
                return FakeResponse(200, {"join_rule": room["join_rule"]})
            key = {"m.room.name": "name", "m.room.topic": "topic"}[event_type]
            if room[key] is None:
                return _error(404, "M_NOT_FOUND", "Event not found")
            return FakeResponse(200, {key: room[key]})
        if action == "members":
            return FakeResponse(
                200,
                {
                    "chunk": [
                        {"type": "m.room.member", "state_key": uid, "content": {"membership": m}}
                        for uid, m in room["members"].items()
                    ]
                },
            )
        if action == "invite":
            target = body["user_id"]
            if room["members"].get(target) == "join":
                return _error(403, "M_FORBIDDEN", f"{target} is already in the room")
            room["members"][target] = "invite"
            return FakeResponse(200, {})
        return _error(404, "M_UNRECOGNIZED")

    def _join(self, requester, room_id):
        room = self.rooms.get(room_id)
        if room is None:
            return _error(404, "M_NOT_FOUND")
        if room["join_rule"] != "public" and room["members"].get(requester) not in ("invite", "join"):
            return _error(403, "M_FORBIDDEN", "You are not invited to this room")
        room["members"][requester] = "join"
        return FakeResponse(200, {"room_id": room_id})


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_config(temp_dir):
    """Build a SuiteConfig from a YAML-like dict, rooted in a temp dir."""

    def _make(**data):
        data.setdefault("name", "test-suite")
        data.setdefault("directories", {"root": str(temp_dir)})
        return parse_config(data)

    return _make


@pytest.fixture
def homeserver():
    """An in-memory homeserver on the default server name."""
    return FakeHomeserver()


@pytest.fixture
def make_homeserver():
    """Build an in-memory homeserver, e.g. with another server name."""
    return FakeHomeserver


@pytest.fixture
def mock_docker_client():
    """A docker client where every resource exists and every call succeeds."""
    client = MagicMock()
    container = MagicMock()
    container.id = "abc123"
    container.name = "mx-tester-synapse-run-test-suite"
    container.status = "running"
    container.wait.return_value = {"StatusCode": 0}
    container.logs.return_value = b""
    client.containers.get.return_value = container
    client.containers.run.return_value = container
    client.networks.list.return_value = []
    client.api.build.return_value = iter([{"stream": "Successfully built abc123\n"}])
    return client


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
