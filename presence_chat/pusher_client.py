"""Asyncio client for the managed Pusher Channels WebSocket API (protocol 7).

Only the surface the subscription session needs: ``channel()``,
``subscribe()``, ``Channel.bind()``, presence membership, and a reconnect
loop. Private and presence channels are authorized by POSTing the form
``socket_id``, ``channel_name`` plus the configured auth params to the auth
endpoint, exactly as the browser library does.
"""

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urlencode

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .pusher_constants import (
    CLOSE_NO_RECONNECT,
    CLOSE_RECONNECT_IMMEDIATE,
    EVT_CONNECTION_ESTABLISHED,
    EVT_ERROR,
    EVT_MEMBER_ADDED,
    EVT_MEMBER_REMOVED,
    EVT_PING,
    EVT_PONG,
    EVT_SUBSCRIBE,
    EVT_SUBSCRIPTION_ERROR,
    EVT_SUBSCRIPTION_SUCCEEDED,
    INT_MEMBER_ADDED,
    INT_MEMBER_REMOVED,
    INT_SUBSCRIPTION_SUCCEEDED,
    PRESENCE_PREFIX,
    PRIVATE_PREFIX,
    PROTOCOL_VERSION,
)

logger = logging.getLogger(__name__)

CLIENT_NAME = "presence-chat-python"
CLIENT_VERSION = "0.1.0"


# ---------------------------------------------------------------------------
# Presence membership
# ---------------------------------------------------------------------------

@dataclass
class Member:
    id: str
    info: Any = None


class Members:
    """Ordered membership of one presence channel."""

    def __init__(self):
        self._members: dict[str, Member] = {}
        self.my_id: str | None = None

    @property
    def me(self) -> Member | None:
        return self._members.get(self.my_id) if self.my_id is not None else None

    @property
    def count(self) -> int:
        return len(self._members)

    def get(self, user_id: str) -> Member | None:
        return self._members.get(str(user_id))

    def each(self, callback: Callable[[Member], None]) -> None:
        for member in list(self._members.values()):
            callback(member)

    def __iter__(self):
        return iter(list(self._members.values()))

    def load(self, presence: dict) -> None:
        """Replace membership from a subscription_succeeded presence block."""
        info_by_id = presence.get("hash", {}) or {}
        self._members = {}
        for user_id in presence.get("ids", []) or []:
            uid = str(user_id)
            self._members[uid] = Member(uid, info_by_id.get(uid))

    def add(self, user_id: Any, info: Any = None) -> Member | None:
        uid = str(user_id)
        if uid in self._members:
            return None
        member = Member(uid, info)
        self._members[uid] = member
        return member

    def remove(self, user_id: Any) -> Member | None:
        return self._members.pop(str(user_id), None)

    def reset(self) -> None:
        self._members = {}


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

class PusherChannel:
    def __init__(self, name: str):
        self.name = name
        self.subscribed = False
        self.subscription_requested = False
        self.members = Members() if name.startswith(PRESENCE_PREFIX) else None
        self._callbacks: dict[str, list[Callable[[Any], None]]] = {}

    @property
    def requires_auth(self) -> bool:
        return self.name.startswith((PRIVATE_PREFIX, PRESENCE_PREFIX))

    def bind(self, event_name: str, callback: Callable[[Any], None]) -> None:
        self._callbacks.setdefault(event_name, []).append(callback)

    def unbind(self, event_name: str, callback: Callable[[Any], None] | None = None) -> None:
        if callback is None:
            self._callbacks.pop(event_name, None)
            return
        callbacks = self._callbacks.get(event_name, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def emit(self, event_name: str, data: Any) -> None:
        for callback in list(self._callbacks.get(event_name, [])):
            try:
                callback(data)
            except Exception:
                logger.exception("Callback for %s on %s failed", event_name, self.name)

    def handle_event(self, event_name: str, data: Any) -> None:
        """Translate internal protocol events before they reach callbacks."""
        if event_name == INT_SUBSCRIPTION_SUCCEEDED:
            self.subscribed = True
            if self.members is not None:
                presence = data.get("presence") if isinstance(data, dict) else None
                self.members.load(presence if isinstance(presence, dict) else {})
                self.emit(EVT_SUBSCRIPTION_SUCCEEDED, self.members)
            else:
                self.emit(EVT_SUBSCRIPTION_SUCCEEDED, data)
        elif event_name in (INT_MEMBER_ADDED, INT_MEMBER_REMOVED) and not isinstance(data, dict):
            logger.warning("Malformed %s on %s: %r", event_name, self.name, data)
        elif event_name == INT_MEMBER_ADDED and self.members is not None:
            member = self.members.add(data.get("user_id"), data.get("user_info"))
            if member is not None:
                self.emit(EVT_MEMBER_ADDED, member)
        elif event_name == INT_MEMBER_REMOVED and self.members is not None:
            member = self.members.remove(data.get("user_id"))
            if member is not None:
                self.emit(EVT_MEMBER_REMOVED, member)
        else:
            self.emit(event_name, data)

    def disconnected(self) -> None:
        self.subscribed = False
        if self.members is not None:
            self.members.reset()


# ---------------------------------------------------------------------------
# Reconnection policy
# ---------------------------------------------------------------------------

@dataclass
class RetryConfig:
    max_attempts: int = 6
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    jitter_factor: float = 0.1

    def delay(self, attempt: int) -> float:
        """Delay before reconnect *attempt* (0-indexed), capped and jittered."""
        delay = min(self.initial_delay * (self.backoff_multiplier ** attempt), self.max_delay)
        if self.jitter:
            jitter_range = delay * self.jitter_factor
            delay += random.uniform(-jitter_range, jitter_range)
        return max(0.0, delay)


class AuthorizationError(Exception):
    def __init__(self, status: int, body: str):
        super().__init__(f"Auth endpoint returned {status}")
        self.status = status
        self.body = body


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class PusherClient:
    def __init__(
        self,
        key: str,
        *,
        cluster: str,
        auth_endpoint: str,
        auth_params: dict | None = None,
        host: str | None = None,
        use_tls: bool = True,
        retry: RetryConfig | None = None,
        auth_timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.key = key
        self.cluster = cluster
        self.auth_endpoint = auth_endpoint
        self.auth_params = dict(auth_params or {})
        self.host = host or f"ws-{cluster}.pusher.com"
        self.use_tls = use_tls
        self.retry = retry or RetryConfig()
        self.auth_timeout = auth_timeout

        self.socket_id: str | None = None
        self.channels: dict[str, PusherChannel] = {}
        self._http = http_client
        self._owns_http = http_client is None
        self._ws = None
        self._run_task: asyncio.Task | None = None
        self._closing = False

    @property
    def url(self) -> str:
        scheme, port = ("wss", 443) if self.use_tls else ("ws", 80)
        query = urlencode({
            "protocol": PROTOCOL_VERSION,
            "client": CLIENT_NAME,
            "version": CLIENT_VERSION,
            "flash": "false",
        })
        return f"{scheme}://{self.host}:{port}/app/{self.key}?{query}"

    @property
    def connected(self) -> bool:
        return self._ws is not None and self.socket_id is not None

    # ------------------------------------------------------------------
    # Channel API
    # ------------------------------------------------------------------

    def channel(self, channel_name: str) -> PusherChannel:
        """Return the handle for *channel_name* without subscribing."""
        if channel_name not in self.channels:
            self.channels[channel_name] = PusherChannel(channel_name)
        return self.channels[channel_name]

    def subscribe(self, channel_name: str) -> PusherChannel:
        """Request a subscription; starts the connection if needed."""
        channel = self.channel(channel_name)
        channel.subscription_requested = True
        if self.connected:
            self._spawn(self._subscribe(channel))
        else:
            self.connect()
        return channel

    def connect(self) -> None:
        if self._run_task is None or self._run_task.done():
            self._closing = False
            self._run_task = self._spawn(self.run())

    async def disconnect(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._run_task is not None:
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
            self._run_task = None
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def _http_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.auth_timeout)
        return self._http

    async def authorize(self, channel_name: str) -> dict:
        form = {**self.auth_params, "socket_id": self.socket_id, "channel_name": channel_name}
        response = await self._http_client().post(self.auth_endpoint, data=form)
        if response.status_code != 200:
            raise AuthorizationError(response.status_code, response.text)
        try:
            payload = response.json()
        except ValueError:
            raise AuthorizationError(response.status_code, "Auth endpoint returned invalid JSON")
        if not isinstance(payload, dict) or "auth" not in payload:
            raise AuthorizationError(response.status_code, "Auth response missing 'auth'")
        if "channel_data" in payload:
            _user_id(payload["channel_data"])
        return payload

    async def _subscribe(self, channel: PusherChannel) -> None:
        data: dict[str, Any] = {"channel": channel.name}
        if channel.requires_auth:
            try:
                payload = await self.authorize(channel.name)
            except AuthorizationError as e:
                logger.warning("Authorization for %s failed with %s", channel.name, e.status)
                channel.emit(EVT_SUBSCRIPTION_ERROR, {"type": "AuthError", "error": e.body, "status": e.status})
                return
            except httpx.HTTPError as e:
                logger.warning("Authorization request for %s failed: %s", channel.name, e)
                channel.emit(EVT_SUBSCRIPTION_ERROR, {"type": "AuthError", "error": str(e) or type(e).__name__, "status": 0})
                return
            data["auth"] = payload["auth"]
            if "channel_data" in payload:
                data["channel_data"] = payload["channel_data"]
                if channel.members is not None:
                    channel.members.my_id = _user_id(payload["channel_data"])
        await self._send(EVT_SUBSCRIBE, data)

    # ------------------------------------------------------------------
    # Wire protocol
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.add_done_callback(_task_done_callback)
        return task

    async def _send(self, event: str, data: Any) -> None:
        if self._ws is None:
            logger.debug("Not connected, dropping %s", event)
            return
        await self._ws.send(json.dumps({"event": event, "data": data}))

    async def _handle_message(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning("Malformed frame from service: %s", e)
            return
        if not isinstance(message, dict):
            logger.warning("Ignoring non-object frame from service: %r", message)
            return
        event = message.get("event")
        data = message.get("data")
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except (json.JSONDecodeError, ValueError):
                pass

        if event == EVT_CONNECTION_ESTABLISHED:
            if not isinstance(data, dict) or "socket_id" not in data:
                logger.warning("connection_established without a socket id: %r", data)
                return
            self.socket_id = str(data["socket_id"])
            logger.info("Connected with socket id %s", self.socket_id)
            for channel in list(self.channels.values()):
                if channel.subscription_requested:
                    self._spawn(self._subscribe(channel))
        elif event == EVT_PING:
            await self._send(EVT_PONG, {})
        elif event == EVT_ERROR:
            logger.warning("Service error: %s", data)

        channel_name = message.get("channel")
        if channel_name and channel_name in self.channels:
            self.channels[channel_name].handle_event(event, data)

    async def run(self) -> None:
        """Connect and keep reconnecting until closed or the retry budget is spent.

        An unexpected error ends the loop; pending subscriptions are failed
        before it propagates.
        """
        try:
            await self._reconnect_loop()
        except Exception as e:
            self._fail_pending({"type": "ConnectionError", "error": str(e) or type(e).__name__})
            raise

    async def _reconnect_loop(self) -> None:
        attempt = 0
        while not self._closing:
            close_code = None
            try:
                async with websockets.connect(self.url) as ws:
                    self._ws = ws
                    try:
                        async for message in ws:
                            await self._handle_message(message)
                            if self.socket_id is not None:
                                attempt = 0
                    except ConnectionClosed:
                        pass
                    close_code = ws.close_code
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                logger.warning("Connection to %s failed: %s", self.host, e)
            finally:
                self._ws = None
                self.socket_id = None
                for channel in self.channels.values():
                    channel.disconnected()

            if self._closing:
                break
            if close_code in CLOSE_NO_RECONNECT:
                logger.error("Service closed the connection with %s, not reconnecting", close_code)
                self._fail_pending({"type": "ConnectionError", "code": close_code})
                break
            if close_code in CLOSE_RECONNECT_IMMEDIATE:
                delay = 0.0
            else:
                if attempt >= self.retry.max_attempts:
                    logger.error("Giving up after %d reconnect attempts", attempt)
                    self._fail_pending({"type": "ConnectionError", "code": close_code})
                    break
                delay = self.retry.delay(attempt)
                attempt += 1
            logger.info("Reconnecting in %.1fs (close code %s)", delay, close_code)
            await asyncio.sleep(delay)

    def _fail_pending(self, error: dict) -> None:
        """Report the lost connection on every channel a subscription was requested for."""
        for channel in self.channels.values():
            if channel.subscription_requested:
                channel.emit(EVT_SUBSCRIPTION_ERROR, error)


def _task_done_callback(task: asyncio.Task):
    """Log exceptions from background tasks instead of silently swallowing."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task failed: %s", exc, exc_info=exc)


def _user_id(channel_data: Any) -> str:
    """``user_id`` from a presence grant's ``channel_data``; AuthorizationError if unusable."""
    try:
        parsed = json.loads(channel_data)
        return str(parsed["user_id"])
    except (ValueError, KeyError, TypeError):
        raise AuthorizationError(200, "Auth response has invalid 'channel_data'")
