"""Channel authenticator: signs private/presence subscription grants.

The signature is HMAC-SHA256 keyed with the app secret over

    socket_id:channel_name                 (private channels)
    socket_id:channel_name:channel_data    (presence channels)

and is returned as ``"<app_key>:<hex digest>"``. ``channel_data`` is the
compact JSON of ``{"user_id": ..., "user_info": ...}`` and is returned
verbatim alongside the signature, because the service re-signs exactly that
string when verifying.
"""

import hashlib
import hmac
import json
import logging
import re
from typing import Any

from .config import ConfigurationError, PusherCredentials

logger = logging.getLogger(__name__)

_SOCKET_ID_RE = re.compile(r"\A\d+\.\d+\Z")
_CHANNEL_NAME_RE = re.compile(r"\A[-a-zA-Z0-9_=@,.;]+\Z")
MAX_CHANNEL_NAME_LENGTH = 200


class ChannelAuthError(Exception):
    """Signing failed; fatal for the current request."""


class InvalidSocketId(ChannelAuthError):
    pass


class InvalidChannelName(ChannelAuthError):
    pass


def validate_socket_id(socket_id: str) -> str:
    if not isinstance(socket_id, str) or not _SOCKET_ID_RE.match(socket_id):
        raise InvalidSocketId(f"Invalid socket id: {socket_id!r}")
    return socket_id


def validate_channel_name(channel_name: str) -> str:
    if (
        not isinstance(channel_name, str)
        or len(channel_name) > MAX_CHANNEL_NAME_LENGTH
        or not _CHANNEL_NAME_RE.match(channel_name)
    ):
        raise InvalidChannelName(f"Invalid channel name: {channel_name!r}")
    return channel_name


def presence_data(socket_id: str, display_name: str) -> dict[str, Any]:
    """Presence identity for one connection: the socket id doubles as user id."""
    return {"user_id": socket_id, "user_info": {"name": display_name}}


def encode_channel_data(data: dict[str, Any]) -> str:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


def _sign(secret: str, message: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


class ChannelAuthenticator:
    def __init__(self, credentials: PusherCredentials):
        self.credentials = credentials

    def authenticate(
        self,
        socket_id: str,
        channel_name: str,
        presence_info: dict[str, Any] | None = None,
    ) -> dict[str, str]:
        """Build the signed payload for one subscription.

        Returns ``{"auth": ...}`` plus ``"channel_data"`` when *presence_info*
        is given. Raises ConfigurationError if credentials are incomplete and
        InvalidSocketId / InvalidChannelName for malformed input.
        """
        creds = self.credentials.require()
        validate_socket_id(socket_id)
        validate_channel_name(channel_name)

        if presence_info is None:
            string_to_sign = f"{socket_id}:{channel_name}"
            return {"auth": f"{creds.key}:{_sign(creds.secret, string_to_sign)}"}

        if "user_id" not in presence_info:
            raise ChannelAuthError("Presence data must include user_id")
        channel_data = encode_channel_data(presence_info)
        string_to_sign = f"{socket_id}:{channel_name}:{channel_data}"
        logger.debug("Signed presence grant for socket %s on %s", socket_id, channel_name)
        return {
            "auth": f"{creds.key}:{_sign(creds.secret, string_to_sign)}",
            "channel_data": channel_data,
        }


def verify_auth(
    credentials: PusherCredentials,
    socket_id: str,
    channel_name: str,
    auth: str,
    channel_data: str | None = None,
) -> bool:
    """Check a signed payload the way the service does on subscribe."""
    key, sep, signature = auth.partition(":")
    if not sep or key != credentials.key:
        return False
    string_to_sign = f"{socket_id}:{channel_name}"
    if channel_data is not None:
        string_to_sign += f":{channel_data}"
    expected = _sign(credentials.secret, string_to_sign)
    return hmac.compare_digest(signature, expected)


__all__ = [
    "ChannelAuthError",
    "ChannelAuthenticator",
    "ConfigurationError",
    "InvalidChannelName",
    "InvalidSocketId",
    "encode_channel_data",
    "presence_data",
    "validate_channel_name",
    "validate_socket_id",
    "verify_auth",
]
