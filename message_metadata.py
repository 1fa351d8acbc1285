# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""
Message Metadata
Extracts sender, conversation and delivery details from inbound activities.

Works with Agents SDK Activity objects (snake_case attributes) and with raw
Bot Framework JSON dicts (camelCase keys).
"""

from dataclasses import dataclass
from typing import Any

from config import A365Config
from conversation_store import ConversationReference
from token_cache import now_ms


def _get(obj: Any, *names: str) -> Any:
    """Read the first present attribute or key from ``obj``."""
    if obj is None:
        return None
    for name in names:
        if isinstance(obj, dict):
            value = obj.get(name)
        else:
            value = getattr(obj, name, None)
        if value is not None:
            return value
    return None


def _sender(activity: Any) -> Any:
    return _get(activity, "from_property", "from")


@dataclass
class MessageMetadata:
    """Metadata of an inbound message."""

    user_id: str
    conversation_id: str
    service_url: str
    is_group: bool = False
    user_email: str | None = None
    user_name: str | None = None
    user_aad_id: str | None = None
    tenant_id: str | None = None
    activity_id: str | None = None
    channel_id: str | None = None
    team_id: str | None = None
    team_name: str | None = None
    channel_name: str | None = None


def _tenant_id(activity: Any) -> str | None:
    conversation = _get(activity, "conversation")
    channel_data = _get(activity, "channel_data", "channelData")
    return _get(conversation, "tenant_id", "tenantId") or _get(_get(channel_data, "tenant"), "id")


def extract_message_metadata(activity: Any) -> MessageMetadata:
    sender = _sender(activity)
    conversation = _get(activity, "conversation")
    channel_data = _get(activity, "channel_data", "channelData")
    aad_id = _get(sender, "aad_object_id", "aadObjectId")

    return MessageMetadata(
        user_id=_get(sender, "id") or "",
        user_email=aad_id or _get(sender, "id"),
        user_name=_get(sender, "name"),
        user_aad_id=aad_id,
        conversation_id=_get(conversation, "id") or "",
        is_group=bool(_get(conversation, "is_group", "isGroup")),
        tenant_id=_tenant_id(activity),
        service_url=_get(activity, "service_url", "serviceUrl") or "",
        activity_id=_get(activity, "id"),
        channel_id=_get(activity, "channel_id", "channelId"),
        team_id=_get(_get(channel_data, "team"), "id"),
        team_name=_get(_get(channel_data, "team"), "name"),
        channel_name=_get(_get(channel_data, "channel"), "name"),
    )


def build_conversation_reference(
    activity: Any,
    agentic_reference: dict[str, Any] | None = None,
    now: int | None = None,
) -> ConversationReference:
    """
    Build the stored reference for proactive messaging from an inbound activity.

    Args:
        activity: Inbound activity
        agentic_reference: Serialized SDK conversation reference, which keeps the
            agentic identity metadata (recipient role, agentic app and user ids)
        now: Timestamp to record, defaults to the current time
    """
    sender = _sender(activity)
    recipient = _get(activity, "recipient")
    conversation = _get(activity, "conversation")

    return ConversationReference(
        conversation_id=_get(conversation, "id") or "",
        service_url=_get(activity, "service_url", "serviceUrl") or "",
        channel_id=_get(activity, "channel_id", "channelId") or "msteams",
        bot_id=_get(recipient, "id") or "",
        bot_name=_get(recipient, "name"),
        user_id=_get(sender, "id") or "",
        user_name=_get(sender, "name"),
        user_aad_id=_get(sender, "aad_object_id", "aadObjectId"),
        tenant_id=_tenant_id(activity),
        is_group=bool(_get(conversation, "is_group", "isGroup")),
        locale=_get(activity, "locale"),
        updated_at=now if now is not None else now_ms(),
        agentic_reference=agentic_reference,
    )


def determine_user_role(metadata: MessageMetadata, cfg: A365Config) -> str:
    """Return "Owner" when the sender is the configured principal, else "Requester"."""
    if cfg.owner and metadata.user_email and metadata.user_email.lower() == cfg.owner.lower():
        return "Owner"
    if cfg.owner_aad_id and metadata.user_aad_id == cfg.owner_aad_id:
        return "Owner"
    return "Requester"


def is_sender_allowed(metadata: MessageMetadata, allow_from: list[str] | None) -> bool:
    """Check the sender against the allow-list; an empty list or "*" allows everyone."""
    if not allow_from or "*" in allow_from:
        return True
    candidates = {metadata.user_id, metadata.user_email or "", metadata.user_aad_id or ""}
    candidates.discard("")
    return any(entry in candidates for entry in allow_from)
