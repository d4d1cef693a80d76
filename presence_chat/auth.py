"""Credential gate: shared-password check, failed-attempt limiting, and log redaction."""

import hmac
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Mapping

from pydantic import BaseModel

from . import config

REDACTED = "***"
_SECRET_FIELDS = frozenset({"password"})

# Failed auth attempts: IP -> list of failure timestamps (monotonic)
_failed_attempts: dict[str, list[float]] = defaultdict(list)


# --- Results ---

@dataclass(frozen=True)
class Authorized:
    pass


@dataclass(frozen=True)
class Rejected:
    reason: str


INVALID_CREDENTIALS = "invalid_credentials"
RATE_LIMITED = "rate_limited"


class AuthRequest(BaseModel):
    socket_id: str = ""
    channel_name: str = ""
    password: str = ""
    name: str = ""


# --- Password validation ---

def validate_password(candidate: str | None, secret: str | None = None) -> Authorized | Rejected:
    """Compare *candidate* to the server-held password.

    Exact equality, compared in constant time. A missing server password is a
    configuration error, not a rejection.
    """
    expected = config.require_password(secret if secret is not None else config.CHAT_PASSWORD)
    if candidate is None:
        return Rejected(INVALID_CREDENTIALS)
    if hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8")):
        return Authorized()
    return Rejected(INVALID_CREDENTIALS)


# --- Rate Limiting ---

def _prune_failed_attempts(client_ip: str, now: float) -> list[float]:
    cutoff = now - config.AUTH_RATE_WINDOW
    attempts = [t for t in _failed_attempts.get(client_ip, []) if t > cutoff]
    if attempts:
        _failed_attempts[client_ip] = attempts
    else:
        _failed_attempts.pop(client_ip, None)
    return attempts


def _prune_stale_ips(now: float) -> None:
    """Drop every IP whose most recent failure is older than the window."""
    cutoff = now - config.AUTH_RATE_WINDOW
    stale_ips = [
        ip for ip, attempts in _failed_attempts.items()
        if not attempts or attempts[-1] <= cutoff
    ]
    for ip in stale_ips:
        del _failed_attempts[ip]


def is_rate_limited(client_ip: str) -> bool:
    """True when the IP has used up its failed attempts for the current window."""
    return len(_prune_failed_attempts(client_ip, time.monotonic())) >= config.AUTH_RATE_LIMIT


def record_failed_attempt(client_ip: str) -> None:
    _failed_attempts[client_ip].append(time.monotonic())


def gate(client_ip: str, candidate: str | None) -> Authorized | Rejected:
    """Rate-limit check followed by the password check.

    Only failures count towards the limit, so legitimate resubscriptions
    behind one address are never throttled.
    """
    _prune_stale_ips(time.monotonic())
    if is_rate_limited(client_ip):
        return Rejected(RATE_LIMITED)
    result = validate_password(candidate)
    if isinstance(result, Rejected):
        record_failed_attempt(client_ip)
    return result


# --- Logging helpers ---

def redact_form(form: Mapping[str, object]) -> dict[str, object]:
    """Copy of a parsed form with credential fields masked."""
    return {
        k: (REDACTED if k in _SECRET_FIELDS and v else v)
        for k, v in form.items()
    }
