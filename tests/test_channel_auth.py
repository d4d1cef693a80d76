"""Tests for presence_chat.channel_auth -- signing, verification, and input validation."""

import hashlib
import hmac
import json

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from presence_chat.channel_auth import (
    ChannelAuthError,
    ChannelAuthenticator,
    InvalidChannelName,
    InvalidSocketId,
    encode_channel_data,
    presence_data,
    verify_auth,
)
from presence_chat.config import ConfigurationError, PusherCredentials


@pytest.fixture
def authenticator(credentials):
    return ChannelAuthenticator(credentials)


def _expected_signature(secret, message):
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Presence channels
# ---------------------------------------------------------------------------

class TestPresenceAuth:

    def test_payload_shape(self, authenticator, credentials):
        payload = authenticator.authenticate("1234.1234", "presence-main", presence_data("1234.1234", "Alice"))
        assert set(payload) == {"auth", "channel_data"}
        key, _, signature = payload["auth"].partition(":")
        assert key == credentials.key
        assert len(signature) == 64

    def test_channel_data_binds_socket_and_name(self, authenticator):
        payload = authenticator.authenticate("1234.1234", "presence-main", presence_data("1234.1234", "Alice"))
        assert json.loads(payload["channel_data"]) == {
            "user_id": "1234.1234",
            "user_info": {"name": "Alice"},
        }

    def test_channel_data_is_compact_json(self, authenticator):
        payload = authenticator.authenticate("1.2", "presence-main", presence_data("1.2", "Bob"))
        assert payload["channel_data"] == '{"user_id":"1.2","user_info":{"name":"Bob"}}'

    def test_signature_matches_hmac_of_signed_string(self, authenticator, credentials):
        payload = authenticator.authenticate("1234.1234", "presence-main", presence_data("1234.1234", "Alice"))
        message = f"1234.1234:presence-main:{payload['channel_data']}"
        assert payload["auth"] == f"{credentials.key}:{_expected_signature(credentials.secret, message)}"

    def test_presence_data_requires_user_id(self, authenticator):
        with pytest.raises(ChannelAuthError):
            authenticator.authenticate("1.2", "presence-main", {"user_info": {"name": "x"}})

    def test_unicode_names_survive(self, authenticator, credentials):
        payload = authenticator.authenticate("1.2", "presence-main", presence_data("1.2", "Zoë 🙂"))
        assert json.loads(payload["channel_data"])["user_info"]["name"] == "Zoë 🙂"
        assert verify_auth(credentials, "1.2", "presence-main", payload["auth"], payload["channel_data"])


class TestPrivateAuth:

    def test_no_channel_data(self, authenticator, credentials):
        payload = authenticator.authenticate("1234.1234", "private-foobar")
        assert set(payload) == {"auth"}
        expected = _expected_signature(credentials.secret, "1234.1234:private-foobar")
        assert payload["auth"] == f"{credentials.key}:{expected}"


# ---------------------------------------------------------------------------
# Sign -> verify round trip
# ---------------------------------------------------------------------------

_socket_ids = st.builds(
    lambda a, b: f"{a}.{b}",
    st.integers(min_value=0, max_value=10**12),
    st.integers(min_value=0, max_value=10**12),
)
_channel_names = st.text(
    alphabet="abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_=@,.;",
    min_size=1,
    max_size=180,
).map(lambda s: f"presence-{s}")


class TestVerifyRoundTrip:

    @settings(suppress_health_check=[HealthCheck.function_scoped_fixture])
    @given(socket_id=_socket_ids, channel_name=_channel_names, name=st.text(max_size=50))
    def test_signed_payload_verifies(self, socket_id, channel_name, name):
        creds = PusherCredentials(app_id="1", key="key", secret="secret", cluster="eu")
        payload = ChannelAuthenticator(creds).authenticate(socket_id, channel_name, presence_data(socket_id, name))
        assert verify_auth(creds, socket_id, channel_name, payload["auth"], payload["channel_data"])

    def test_tampered_channel_data_fails(self, authenticator, credentials):
        payload = authenticator.authenticate("1.2", "presence-main", presence_data("1.2", "Alice"))
        forged = encode_channel_data(presence_data("1.2", "Mallory"))
        assert not verify_auth(credentials, "1.2", "presence-main", payload["auth"], forged)

    def test_other_socket_fails(self, authenticator, credentials):
        payload = authenticator.authenticate("1.2", "presence-main", presence_data("1.2", "Alice"))
        assert not verify_auth(credentials, "9.9", "presence-main", payload["auth"], payload["channel_data"])

    def test_wrong_key_fails(self, authenticator, credentials):
        payload = authenticator.authenticate("1.2", "private-x")
        _, _, signature = payload["auth"].partition(":")
        assert not verify_auth(credentials, "1.2", "private-x", f"otherkey:{signature}")

    def test_malformed_auth_fails(self, credentials):
        assert not verify_auth(credentials, "1.2", "private-x", "no-separator")


# ---------------------------------------------------------------------------
# Input validation and configuration
# ---------------------------------------------------------------------------

class TestValidation:

    @pytest.mark.parametrize("socket_id", ["", "abc", "1234", "1.2.3", "1.2\n", " 1.2", "1.2:x"])
    def test_malformed_socket_id(self, authenticator, socket_id):
        with pytest.raises(InvalidSocketId):
            authenticator.authenticate(socket_id, "presence-main", presence_data(socket_id, "x"))

    @pytest.mark.parametrize("channel_name", ["", "presence main", "presence:main", "presence-" + "a" * 200])
    def test_malformed_channel_name(self, authenticator, channel_name):
        with pytest.raises(InvalidChannelName):
            authenticator.authenticate("1.2", channel_name, presence_data("1.2", "x"))

    def test_missing_credentials(self):
        auth = ChannelAuthenticator(PusherCredentials(app_id="1", key="k", secret="", cluster=""))
        with pytest.raises(ConfigurationError) as exc_info:
            auth.authenticate("1.2", "presence-main", presence_data("1.2", "x"))
        assert "PUSHER_SECRET" in str(exc_info.value)
        assert "PUSHER_CLUSTER" in str(exc_info.value)

    def test_invalid_errors_are_channel_auth_errors(self):
        assert issubclass(InvalidSocketId, ChannelAuthError)
        assert issubclass(InvalidChannelName, ChannelAuthError)
