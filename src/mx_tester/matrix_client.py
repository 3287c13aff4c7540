"""
Minimal client for the homeserver endpoints used while provisioning.

Only what mx-tester needs is implemented: the liveness probe, password
login, shared-secret registration, the rate-limit override admin API, and
the handful of room endpoints used to converge rooms and memberships.
"""

import hashlib
import hmac
import logging
import random
import time
from typing import Any, Dict, Iterable, Optional
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

ATTEMPTS = 10
# Base retry interval in milliseconds, picked randomly in this range and
# multiplied by the square of the attempt number.
INTERVAL_MS = (300, 1000)
REQUEST_TIMEOUT = 30

CLIENT_API = "/_matrix/client/v3"
ADMIN_API = "/_synapse/admin/v1"


class MatrixApiError(Exception):
    """The homeserver answered with an error status."""

    def __init__(self, method: str, path: str, status: int, errcode: str, error: str):
        self.method = method
        self.path = path
        self.status = status
        self.errcode = errcode
        self.error = error
        super().__init__(f"{method} {path} -> {status} {errcode}: {error}")


def registration_mac(secret: str, nonce: str, username: str, password: str, admin: bool) -> str:
    """Compute the HMAC-SHA1 signing a shared-secret registration."""
    mac = hmac.new(secret.encode("utf-8"), digestmod=hashlib.sha1)
    mac.update(nonce.encode("utf-8"))
    mac.update(b"\x00")
    mac.update(username.encode("utf-8"))
    mac.update(b"\x00")
    mac.update(password.encode("utf-8"))
    mac.update(b"\x00")
    mac.update(b"admin" if admin else b"notadmin")
    return mac.hexdigest()


class MatrixClient:
    """
    Thin wrapper around a requests Session talking to one homeserver.

    Connection errors and timeouts are retried with a growing delay;
    HTTP error statuses are not retried and raise MatrixApiError.
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        attempts: int = ATTEMPTS,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.attempts = attempts

    def _send(self, method: str, path: str, **kwargs) -> requests.Response:
        url = self.base_url + path
        attempt = 1
        while True:
            try:
                return self.session.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt >= self.attempts:
                    logger.debug("%s %s: giving up after %d attempts", method, path, attempt)
                    raise
                delay_ms = attempt * attempt * random.randint(*INTERVAL_MS)
                logger.debug("%s %s failed (%s), retrying in %dms", method, path, e, delay_ms)
                attempt += 1
                time.sleep(delay_ms / 1000)

    def request(
        self,
        method: str,
        path: str,
        token: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None,
        ok: Iterable[int] = (200,),
    ) -> Dict[str, Any]:
        """
        Send a request and decode the JSON body.

        Raises:
            MatrixApiError: If the status is not in ``ok``
        """
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        response = self._send(method, path, headers=headers, json=json)
        if response.status_code not in ok:
            try:
                body = response.json()
            except ValueError:
                body = {}
            raise MatrixApiError(
                method,
                path,
                response.status_code,
                body.get("errcode", "M_UNKNOWN"),
                body.get("error", response.text[:200]),
            )
        try:
            return response.json()
        except ValueError:
            return {}

    # liveness

    def is_alive(self) -> bool:
        """Single liveness probe; never raises."""
        try:
            response = self.session.request("GET", self.base_url + "/health", timeout=5)
        except requests.RequestException as e:
            logger.debug("Liveness probe failed: %s", e)
            return False
        return response.status_code == 200 and response.text.strip() == "OK"

    # accounts

    def login(self, localname: str, password: str) -> Optional[Dict[str, Any]]:
        """
        Log in with a password.

        Returns:
            The login response (``user_id``, ``access_token``), or None if
            the account does not exist or the password is wrong
        """
        try:
            return self.request(
                "POST",
                f"{CLIENT_API}/login",
                json={
                    "type": "m.login.password",
                    "identifier": {"type": "m.id.user", "user": localname},
                    "password": password,
                },
            )
        except MatrixApiError as e:
            if e.status in (401, 403) and e.errcode == "M_FORBIDDEN":
                return None
            raise

    def register(
        self, shared_secret: str, localname: str, password: str, admin: bool
    ) -> Dict[str, Any]:
        """Register an account through the shared-secret admin API."""
        path = f"{ADMIN_API}/register"
        nonce = self.request("GET", path)["nonce"]
        return self.request(
            "POST",
            path,
            json={
                "nonce": nonce,
                "username": localname,
                "displayname": localname,
                "password": password,
                "admin": admin,
                "mac": registration_mac(shared_secret, nonce, localname, password, admin),
            },
        )

    def override_ratelimit(self, admin_token: str, user_id: str) -> None:
        """Lift all message rate limits for ``user_id``."""
        self.request(
            "POST",
            f"{ADMIN_API}/users/{quote(user_id, safe='')}/override_ratelimit",
            token=admin_token,
            json={"messages_per_second": 0, "burst_count": 0},
        )

    # rooms

    def create_room(self, token: str, body: Dict[str, Any]) -> str:
        return self.request("POST", f"{CLIENT_API}/createRoom", token=token, json=body)["room_id"]

    def resolve_alias(self, token: str, alias: str) -> Optional[str]:
        """Return the room id ``alias`` points to, or None."""
        try:
            response = self.request(
                "GET", f"{CLIENT_API}/directory/room/{quote(alias, safe='')}", token=token
            )
        except MatrixApiError as e:
            if e.status == 404:
                return None
            raise
        return response["room_id"]

    def delete_alias(self, token: str, alias: str) -> None:
        self.request(
            "DELETE",
            f"{CLIENT_API}/directory/room/{quote(alias, safe='')}",
            token=token,
            ok=(200, 404),
        )

    def room_state(self, token: str, room_id: str, event_type: str) -> Optional[Dict[str, Any]]:
        """Return the content of a state event, or None if absent or not visible."""
        try:
            return self.request(
                "GET",
                f"{CLIENT_API}/rooms/{quote(room_id, safe='')}/state/{quote(event_type, safe='')}",
                token=token,
            )
        except MatrixApiError as e:
            if e.status in (403, 404):
                return None
            raise

    def memberships(self, token: str, room_id: str) -> Dict[str, str]:
        """Map user id to membership (``join``, ``invite``...) for a room."""
        response = self.request(
            "GET", f"{CLIENT_API}/rooms/{quote(room_id, safe='')}/members", token=token
        )
        return {
            event["state_key"]: event.get("content", {}).get("membership", "leave")
            for event in response.get("chunk", [])
        }

    def invite(self, token: str, room_id: str, user_id: str) -> None:
        self.request(
            "POST",
            f"{CLIENT_API}/rooms/{quote(room_id, safe='')}/invite",
            token=token,
            json={"user_id": user_id},
        )

    def join(self, token: str, room_id: str) -> None:
        self.request("POST", f"{CLIENT_API}/join/{quote(room_id, safe='')}", token=token, json={})
