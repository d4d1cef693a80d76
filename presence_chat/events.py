"""Application-level channel events and the normalizer that produces them.

Consumers pattern-match on ``event``; raw service payloads never leak
through except as the opaque ``data`` of a SubscriptionError.
"""

import logging
from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, Field

from .pusher_constants import EVT_SUBSCRIPTION_ERROR, EVT_SUBSCRIPTION_SUCCEEDED

logger = logging.getLogger(__name__)


class PresenceMember(BaseModel):
    uid: str
    data: Any = None


class SubscriptionSucceeded(BaseModel):
    event: Literal["pusher:subscription_succeeded"] = EVT_SUBSCRIPTION_SUCCEEDED
    channel: str
    me: PresenceMember
    members: list[PresenceMember] = Field(default_factory=list)


class SubscriptionError(BaseModel):
    event: Literal["pusher:subscription_error"] = EVT_SUBSCRIPTION_ERROR
    channel: str
    data: Any = None


ChannelEvent = Annotated[
    Union[SubscriptionSucceeded, SubscriptionError],
    Field(discriminator="event"),
]


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


class MissingMemberError(ValueError):
    """A membership entry (usually ``me``) has no id."""


def to_member(raw: Any) -> PresenceMember:
    """``{id, info}`` (attribute or mapping style) -> PresenceMember.

    Raises MissingMemberError when *raw* is None or carries no id.
    """
    uid = _field(raw, "id")
    if uid is None:
        raise MissingMemberError("presence member has no id")
    return PresenceMember(uid=str(uid), data=_field(raw, "info"))


def normalize_success(channel: str, members: Any) -> SubscriptionSucceeded:
    """Reshape a membership collection exposing ``.me`` and ``.each(cb)``.

    Members keep delivery order.
    """
    member_list: list[PresenceMember] = []
    members.each(lambda m: member_list.append(to_member(m)))
    result = SubscriptionSucceeded(
        channel=channel,
        me=to_member(members.me),
        members=member_list,
    )
    logger.info("subscription succeeded: %s", result.model_dump())
    return result


def normalize_error(channel: str, err: Any) -> SubscriptionError:
    result = SubscriptionError(channel=channel, data=err)
    logger.info("subscription error: channel=%s data=%r", channel, err)
    return result


_NORMALIZERS = {
    EVT_SUBSCRIPTION_SUCCEEDED: normalize_success,
    EVT_SUBSCRIPTION_ERROR: normalize_error,
}


def normalize(channel: str, event_name: str, payload: Any) -> SubscriptionSucceeded | SubscriptionError | None:
    """Map one raw channel event to a ChannelEvent, or None if unrecognized."""
    normalizer = _NORMALIZERS.get(event_name)
    if normalizer is None:
        logger.debug("Dropping unrecognized event %s on %s", event_name, channel)
        return None
    return normalizer(channel, payload)
