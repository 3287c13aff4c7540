"""
Fixture Provisioner

Converges the users and rooms declared by a suite against a live
homeserver. Provisioning runs at every `up` and must be idempotent: the
homeserver may already hold some or all of the fixtures from a previous
`up` against the same data directory.

Algorithm:
1. Users, in declaration order: log in, or register through the
   shared-secret admin API if the account does not exist. Existing
   accounts are never modified, except that a declared rate-limit
   override is (re-)applied.
2. Rooms, in declaration order, created by the declaring user: if the
   alias already points to a room matching the declaration, reuse it.
   Otherwise the alias is stale (left by a previous `up` with a different
   declaration): unregister it, as an admin if the declaring user is
   refused, and create a fresh room.
3. Members: invite unless already joined or invited, then join on the
   member's behalf. Undeclared memberships are left alone.

The first failure aborts provisioning with a ProvisioningError naming the
fixture. Nothing is rolled back, `down` removes the whole container.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List

import requests

from .config import RateLimit, RoomConfig, SuiteConfig, UserConfig
from .errors import ProvisioningError
from .matrix_client import MatrixApiError, MatrixClient

logger = logging.getLogger(__name__)


@dataclass
class UserSession:
    """A provisioned account and the token used to act on its behalf."""

    localname: str
    user_id: str
    access_token: str = field(repr=False)
    admin: bool
    registered: bool


@dataclass
class ProvisioningReport:
    """What provisioning found and did, for logging and tests."""

    users: Dict[str, UserSession] = field(default_factory=dict)
    rooms: Dict[str, str] = field(default_factory=dict)
    registered: List[str] = field(default_factory=list)
    created_rooms: List[str] = field(default_factory=list)
    removed_aliases: List[str] = field(default_factory=list)


def _room_label(config: SuiteConfig, creator: UserConfig, room: RoomConfig, index: int) -> str:
    if room.alias:
        return f"room {config.qualify_alias(room.alias)}"
    if room.name:
        return f"room '{room.name}' of {creator.localname}"
    return f"room #{index} of {creator.localname}"


def _alias_localpart(alias: str) -> str:
    return alias[1:].split(":", 1)[0]


@contextmanager
def _fixture(label: str) -> Iterator[None]:
    """Attribute protocol errors raised while provisioning ``label`` to it."""
    try:
        yield
    except ProvisioningError:
        raise
    except (MatrixApiError, requests.RequestException, KeyError, ValueError) as e:
        raise ProvisioningError(label, str(e)) from e


class FixtureProvisioner:
    """Provisions the users and rooms of one suite."""

    def __init__(self, config: SuiteConfig, client: MatrixClient):
        self.config = config
        self.client = client

    def provision(self) -> ProvisioningReport:
        """
        Converge every declared fixture.

        Returns:
            A ProvisioningReport

        Raises:
            ProvisioningError: On the first fixture the homeserver rejects
        """
        report = ProvisioningReport()
        if not self.config.users:
            return report

        logger.info("** provisioning %d user(s)", len(self.config.users))
        for user in self.config.users:
            with _fixture(f"user {user.localname}"):
                session = self.ensure_user(user)
            report.users[user.localname] = session
            if session.registered:
                report.registered.append(user.localname)

        for user in self.config.users:
            if user.rate_limit is RateLimit.UNLIMITED:
                with _fixture(f"user {user.localname}"):
                    self.apply_rate_limit(user, report.users)

        for user in self.config.users:
            for index, room in enumerate(user.rooms):
                label = _room_label(self.config, user, room, index)
                with _fixture(label):
                    room_id = self.ensure_room(user, room, report)
                    self.converge_members(user, room, room_id, report.users)
                report.rooms[label] = room_id

        logger.info(
            "** provisioning success: %d user(s) registered, %d room(s) created",
            len(report.registered),
            len(report.created_rooms),
        )
        return report

    def ensure_user(self, user: UserConfig) -> UserSession:
        """Log in as ``user``, registering the account first if needed."""
        registered = False
        response = self.client.login(user.localname, user.password)
        if response is None:
            logger.debug("Registering user %s", user.localname)
            response = self.client.register(
                self.config.homeserver.registration_shared_secret,
                user.localname,
                user.password,
                user.admin,
            )
            registered = True
        else:
            logger.debug("User %s already exists, leaving it untouched", user.localname)
        return UserSession(
            localname=user.localname,
            user_id=response.get("user_id") or self.config.user_id(user.localname),
            access_token=response["access_token"],
            admin=user.admin,
            registered=registered,
        )

    def _admin_session(
        self, user: UserConfig, sessions: Dict[str, UserSession], fixture: str, reason: str
    ) -> UserSession:
        if user.admin:
            return sessions[user.localname]
        for candidate in self.config.users:
            if candidate.admin:
                return sessions[candidate.localname]
        raise ProvisioningError(fixture, f"{reason} needs at least one admin user in the suite")

    def apply_rate_limit(self, user: UserConfig, sessions: Dict[str, UserSession]) -> None:
        """Lift the rate limits of ``user``; safe to re-apply."""
        admin = self._admin_session(user, sessions, f"user {user.localname}", "`rate_limit: unlimited`")
        logger.debug("Lifting rate limits of %s", user.localname)
        self.client.override_ratelimit(admin.access_token, sessions[user.localname].user_id)

    def _matches(self, token: str, room_id: str, room: RoomConfig) -> bool:
        """Whether an existing room is the one ``room`` declares."""
        join_rules = self.client.room_state(token, room_id, "m.room.join_rules")
        if join_rules is None:
            # Not visible to the creator: not ours.
            return False
        expected_rule = "public" if room.public else "invite"
        if join_rules.get("join_rule") != expected_rule:
            return False
        name = (self.client.room_state(token, room_id, "m.room.name") or {}).get("name")
        topic = (self.client.room_state(token, room_id, "m.room.topic") or {}).get("topic")
        return (name or None) == (room.name or None) and (topic or None) == (room.topic or None)

    def delete_alias(self, creator: UserConfig, alias: str, sessions: Dict[str, UserSession]) -> None:
        """
        Unregister ``alias``, as ``creator`` or else as an admin.

        The homeserver only lets the alias creator, a server admin or a
        user with power in the room remove an alias. A stale alias may
        belong to another user's room, in which case the creator is
        refused and the deletion is retried with an admin session.
        """
        try:
            self.client.delete_alias(sessions[creator.localname].access_token, alias)
            return
        except MatrixApiError as e:
            if e.status != 403 or creator.admin:
                raise
            logger.debug("%s may not unregister %s (%s), retrying as admin", creator.localname, alias, e)
        admin = self._admin_session(creator, sessions, f"room {alias}", f"taking over alias {alias}")
        self.client.delete_alias(admin.access_token, alias)

    def ensure_room(self, creator: UserConfig, room: RoomConfig, report: ProvisioningReport) -> str:
        """
        Return the id of the room matching ``room``, creating it if needed.

        A room without alias cannot be found again, so it is created at
        every `up`.
        """
        token = report.users[creator.localname].access_token
        alias = self.config.qualify_alias(room.alias) if room.alias else None

        if alias is not None:
            existing = self.client.resolve_alias(token, alias)
            if existing is not None:
                if self._matches(token, existing, room):
                    logger.debug("Room %s already exists as %s", alias, existing)
                    return existing
                logger.info("Alias %s points to stale room %s, unregistering it", alias, existing)
                self.delete_alias(creator, alias, report.users)
                report.removed_aliases.append(alias)

        body = {
            "preset": "public_chat" if room.public else "private_chat",
            "visibility": "public" if room.public else "private",
        }
        if room.name is not None:
            body["name"] = room.name
        if room.topic is not None:
            body["topic"] = room.topic
        if alias is not None:
            body["room_alias_name"] = _alias_localpart(alias)

        room_id = self.client.create_room(token, body)
        logger.debug("Created room %s (%s) for %s", room_id, alias or room.name, creator.localname)
        report.created_rooms.append(room_id)
        return room_id

    def converge_members(
        self,
        creator: UserConfig,
        room: RoomConfig,
        room_id: str,
        sessions: Dict[str, UserSession],
    ) -> None:
        """Invite and join every declared member that is not joined yet."""
        creator_session = sessions[creator.localname]
        current = self.client.memberships(creator_session.access_token, room_id)
        for member in room.members:
            if member == creator.localname:
                continue
            session = sessions[member]
            membership = current.get(session.user_id)
            if membership == "join":
                continue
            if membership != "invite":
                logger.debug("Inviting %s to %s", session.user_id, room_id)
                self.client.invite(creator_session.access_token, room_id, session.user_id)
            logger.debug("Joining %s to %s", session.user_id, room_id)
            self.client.join(session.access_token, room_id)

