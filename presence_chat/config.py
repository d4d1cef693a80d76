"""Environment-sourced configuration for the auth endpoint and launcher."""

import os
from dataclasses import dataclass
from typing import Mapping

# --- Shared password ---

CHAT_PASSWORD = os.environ.get("PASSWORD")

# --- HTTP surface ---

CHAT_AUTH_PATH = os.environ.get("CHAT_AUTH_PATH", "/.netlify/functions/auth-pusher")

# Failed auth attempts: max per client IP within the window (seconds)
AUTH_RATE_LIMIT = int(os.environ.get("CHAT_AUTH_RATE_LIMIT", "5"))
AUTH_RATE_WINDOW = float(os.environ.get("CHAT_AUTH_RATE_WINDOW", "60"))


def get_cors_origins() -> list[str]:
    """Get CORS origins from environment variable or use the wildcard."""
    cors_origins_str = os.environ.get("CHAT_CORS_ORIGINS", "*")
    origins = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]
    return origins if origins else ["*"]


# --- Pusher credentials ---

class ConfigurationError(Exception):
    """Signing credentials or the shared password are missing."""


_CREDENTIAL_ENV = {
    "app_id": "PUSHER_APP_ID",
    "key": "PUSHER_KEY",
    "secret": "PUSHER_SECRET",
    "cluster": "PUSHER_CLUSTER",
}


@dataclass(frozen=True)
class PusherCredentials:
    app_id: str = ""
    key: str = ""
    secret: str = ""
    cluster: str = ""

    def missing(self) -> list[str]:
        """Environment variable names whose values are empty."""
        return [env for attr, env in _CREDENTIAL_ENV.items() if not getattr(self, attr)]

    def require(self) -> "PusherCredentials":
        """Return self, or raise ConfigurationError naming what is unset.

        Only variable names go into the message, never their values.
        """
        missing = self.missing()
        if missing:
            raise ConfigurationError(f"Missing Pusher configuration: {', '.join(missing)}")
        return self

    def __repr__(self) -> str:
        return (
            f"PusherCredentials(app_id={self.app_id!r}, key={self.key!r}, "
            f"secret={'***' if self.secret else ''!r}, cluster={self.cluster!r})"
        )


def credentials_from_env(environ: Mapping[str, str] | None = None) -> PusherCredentials:
    env = os.environ if environ is None else environ
    return PusherCredentials(
        **{attr: env.get(name, "").strip() for attr, name in _CREDENTIAL_ENV.items()}
    )


def require_password(password: str | None) -> str:
    if not password:
        raise ConfigurationError("Missing shared password: PASSWORD")
    return password
