"""Client-side presence subscription: one session per channel.

``SubscriptionSession.connect()`` never blocks. It binds the channel
callbacks, asks the pub/sub client to subscribe, and returns; outcomes are
delivered later on the session's ``EventStream``.

State machine (per connect attempt)::

    IDLE --connect--> CONNECTING --succeeded--> SUBSCRIBED
    CONNECTING | SUBSCRIBED --error--> ERRORED
    CONNECTING --timeout--> ERRORED

Events for an attempt that has already reached ERRORED are dropped, as are
callbacks from a superseded attempt.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Protocol

from .events import (
    MissingMemberError,
    PresenceMember,
    SubscriptionError,
    SubscriptionSucceeded,
    normalize,
    to_member,
)
from .pusher_constants import (
    EVT_MEMBER_ADDED,
    EVT_MEMBER_REMOVED,
    EVT_SUBSCRIPTION_ERROR,
    EVT_SUBSCRIPTION_SUCCEEDED,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
TIMEOUT_REASON = "timeout"


class Channel(Protocol):
    def bind(self, event_name: str, callback: Callable[[Any], None]) -> None: ...


class PubSubClient(Protocol):
    def channel(self, channel_name: str) -> Channel: ...

    def subscribe(self, channel_name: str) -> Channel: ...

    async def disconnect(self) -> None: ...


ClientFactory = Callable[[dict], PubSubClient]


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    ERRORED = "errored"


@dataclass
class PresenceChannelState:
    channel_name: str
    me: PresenceMember
    members: list[PresenceMember] = field(default_factory=list)

    def __post_init__(self):
        if not any(m.uid == self.me.uid for m in self.members):
            self.members.append(self.me)

    def add(self, member: PresenceMember) -> bool:
        if any(m.uid == member.uid for m in self.members):
            return False
        self.members.append(member)
        return True

    def remove(self, uid: str) -> bool:
        before = len(self.members)
        self.members = [m for m in self.members if m.uid != uid]
        return len(self.members) != before


_CLOSED = object()


class EventStream:
    """Ordered single-writer stream of ChannelEvent values."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: SubscriptionSucceeded | SubscriptionError) -> None:
        if self._closed:
            raise RuntimeError("EventStream is closed")
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def get(self) -> SubscriptionSucceeded | SubscriptionError | None:
        """Next event, or None once the stream is closed and drained."""
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the sentinel for any other reader
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    async def __aiter__(self) -> AsyncIterator[SubscriptionSucceeded | SubscriptionError]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class SubscriptionSession:
    def __init__(
        self,
        channel_name: str,
        client_factory: ClientFactory,
        *,
        events: EventStream | None = None,
        timeout: float | None = DEFAULT_TIMEOUT,
    ):
        self.channel_name = channel_name
        self.client_factory = client_factory
        self.events = events if events is not None else EventStream()
        self.timeout = timeout

        self.state = SessionState.IDLE
        self.client: PubSubClient | None = None
        self.channel: Channel | None = None
        self.presence: PresenceChannelState | None = None
        self._attempt = 0
        self._timer: asyncio.TimerHandle | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def connect(self, auth_params: dict) -> None:
        """Start one subscription attempt. Must run inside an event loop.

        Raises RuntimeError if an attempt is already pending or succeeded;
        a new attempt is allowed from IDLE or ERRORED.
        """
        if self.state in (SessionState.CONNECTING, SessionState.SUBSCRIBED):
            raise RuntimeError(f"Session for {self.channel_name} is already {self.state.value}")

        loop = asyncio.get_running_loop()
        self._attempt += 1
        attempt = self._attempt

        self._release_client()
        client = self.client_factory(dict(auth_params))
        channel = client.channel(self.channel_name)
        # Handlers go on before subscribe so no outcome can be missed
        channel.bind(EVT_SUBSCRIPTION_SUCCEEDED, lambda members: self._on_succeeded(attempt, members))
        channel.bind(EVT_SUBSCRIPTION_ERROR, lambda err: self._on_error(attempt, err))
        channel.bind(EVT_MEMBER_ADDED, lambda member: self._on_member_added(attempt, member))
        channel.bind(EVT_MEMBER_REMOVED, lambda member: self._on_member_removed(attempt, member))
        self.client = client
        self.channel = channel
        self.state = SessionState.CONNECTING
        self.presence = None

        if self.timeout:
            self._timer = loop.call_later(self.timeout, self._on_timeout, attempt)
        logger.info("Subscribing to %s (attempt %d)", self.channel_name, attempt)
        client.subscribe(self.channel_name)

    def close(self) -> asyncio.Future | None:
        """Tear down the current attempt and end the outbound stream.

        Returns the pending client disconnect, if any, for callers that want
        to wait for it.
        """
        self._cancel_timer()
        pending = self._release_client()
        self.events.close()
        return pending

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _is_current(self, attempt: int) -> bool:
        if attempt != self._attempt:
            logger.debug("Ignoring callback from superseded attempt %d on %s", attempt, self.channel_name)
            return False
        return True

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _release_client(self) -> asyncio.Future | None:
        """Schedule teardown of the current client, if any."""
        client, self.client, self.channel = self.client, None, None
        if client is None:
            return None
        logger.debug("Disconnecting client for %s", self.channel_name)
        task = asyncio.ensure_future(client.disconnect())
        task.add_done_callback(_log_disconnect_failure)
        return task

    def _emit(self, event: SubscriptionSucceeded | SubscriptionError) -> None:
        if self.events.closed:
            logger.debug("Event stream closed, dropping %s for %s", event.event, self.channel_name)
            return
        self.events.publish(event)

    def _on_succeeded(self, attempt: int, members: Any) -> None:
        if not self._is_current(attempt):
            return
        if self.state is SessionState.ERRORED:
            logger.warning("Late subscription success on %s after error, dropped", self.channel_name)
            return
        try:
            event = normalize(self.channel_name, EVT_SUBSCRIPTION_SUCCEEDED, members)
        except MissingMemberError as e:
            logger.warning("Subscription to %s succeeded without a usable member list: %s", self.channel_name, e)
            self._on_error(attempt, {"type": "PresenceError", "error": str(e)})
            return
        self.presence = PresenceChannelState(
            channel_name=self.channel_name,
            me=event.me,
            members=list(event.members),
        )
        if self.state is SessionState.SUBSCRIBED:
            # Resubscribed after a reconnect: refresh membership only
            logger.info("Membership refreshed on %s", self.channel_name)
            return
        self._cancel_timer()
        self.state = SessionState.SUBSCRIBED
        self._emit(event)

    def _on_error(self, attempt: int, err: Any) -> None:
        if not self._is_current(attempt):
            return
        if self.state is SessionState.ERRORED:
            logger.warning("Repeated subscription error on %s, dropped", self.channel_name)
            return
        self._cancel_timer()
        self.state = SessionState.ERRORED
        self._emit(normalize(self.channel_name, EVT_SUBSCRIPTION_ERROR, err))

    def _on_timeout(self, attempt: int) -> None:
        self._timer = None
        if attempt != self._attempt or self.state is not SessionState.CONNECTING:
            return
        logger.warning("Subscription to %s timed out after %.1fs", self.channel_name, self.timeout)
        self.state = SessionState.ERRORED
        self._emit(SubscriptionError(channel=self.channel_name, data={"reason": TIMEOUT_REASON}))

    def _on_member_added(self, attempt: int, member: Any) -> None:
        if not self._is_current(attempt) or self.presence is None:
            return
        if self.presence.add(to_member(member)):
            logger.debug("Member joined %s", self.channel_name)

    def _on_member_removed(self, attempt: int, member: Any) -> None:
        if not self._is_current(attempt) or self.presence is None:
            return
        if self.presence.remove(to_member(member).uid):
            logger.debug("Member left %s", self.channel_name)


def _log_disconnect_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Client disconnect failed: %s", exc, exc_info=exc)
