# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""
Outbound Delivery
Resolves a (possibly partial) target to delivery coordinates, acquires a
token for the agent identity and sends the activity to the Bot Framework
connector.

The identifier handed to the delivery path may be a raw Entra user id, a
prefixed logical target ("user:...", "conversation:...") or a full
conversation id, depending on which code path produced it.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Literal
from urllib.parse import quote

import aiohttp

from config import DEFAULT_DELIVERY_SCOPE, DEFAULT_HTTP_TIMEOUT, DEFAULT_SERVICE_REGION, A365Config
from conversation_store import ConversationReference, ConversationReferenceStore
from errors import (
    A365Error,
    ConfigurationMissing,
    DeliveryTargetUnresolved,
    TokenAcquisitionFailed,
    TransportSendFailed,
)
from message_metadata import MessageMetadata
from request_context import resolve_agent_identity_for_request
from token_exchange import TokenExchanger

logger = logging.getLogger(__name__)

CHANNEL_NAME = "a365"
ADAPTIVE_CARD_CONTENT_TYPE = "application/vnd.microsoft.card.adaptive"
REGIONAL_SERVICE_URL = "https://smba.trafficmanager.net/{region}/{tenant_id}/"

# Longest first so "a365:group:" wins over "a365:"
TARGET_PREFIXES = ("a365:group:", "conversation:", "user:", "a365:")

TargetSource = Literal["direct", "conversation", "user", "tenant_fallback"]


def normalize_target(raw: str | None) -> str | None:
    """Strip known logical prefixes and return the bare identifier."""
    if not raw:
        return None
    trimmed = raw.strip()
    lowered = trimmed.lower()
    for prefix in TARGET_PREFIXES:
        if lowered.startswith(prefix):
            trimmed = trimmed[len(prefix):].strip()
            break
    return trimmed or None


def looks_like_user_id(value: str) -> bool:
    """
    Best-effort guess that an identifier is an Entra user id.

    Conversation ids carry ':' (and often '@thread...'); object ids carry neither.
    """
    return bool(value) and ":" not in value and "@" not in value


def build_regional_service_url(tenant_id: str, region: str | None = None) -> str:
    return REGIONAL_SERVICE_URL.format(region=region or DEFAULT_SERVICE_REGION, tenant_id=tenant_id)


def select_outbound_target(to: str | None, allow_from: list[str] | None = None) -> str | None:
    """
    Pick the target for an outbound message.

    Uses ``to`` when given, otherwise the first usable allow-list entry.
    """
    normalized = normalize_target(to)
    if normalized:
        return normalized

    for entry in allow_from or []:
        entry = str(entry).strip()
        if entry and entry != "*":
            fallback = normalize_target(entry)
            if fallback:
                logger.info(f"No explicit target, falling back to allow-list entry {fallback}")
                return fallback

    return None


@dataclass
class DeliveryTarget:
    conversation_id: str
    service_url: str
    source: TargetSource
    reference: ConversationReference | None = None


@dataclass
class SendResult:
    """Outcome of a proactive send. Failures are data, not exceptions."""

    ok: bool
    message_id: str | None = None
    conversation_id: str | None = None
    error: str | None = None
    error_kind: str | None = None
    retryable: bool = False

    @classmethod
    def failure(cls, error: A365Error) -> "SendResult":
        return cls(ok=False, error=str(error), error_kind=type(error).__name__, retryable=error.retryable)

    def to_channel_result(self) -> dict[str, Any]:
        """Shape expected by the host runtime's outbound adapter."""
        result: dict[str, Any] = {"channel": CHANNEL_NAME, "ok": self.ok}
        if self.ok:
            result["messageId"] = self.message_id
            result["conversationId"] = self.conversation_id
        else:
            result["error"] = self.error
        return result


class ConnectorTransport:
    """Sends activities to the Bot Framework connector service."""

    def __init__(self, session: aiohttp.ClientSession | None = None, timeout: float = DEFAULT_HTTP_TIMEOUT):
        self._session = session
        self._owns_session = session is None
        self._timeout = timeout

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    @staticmethod
    def activities_url(service_url: str, conversation_id: str) -> str:
        return f"{service_url.rstrip('/')}/v3/conversations/{quote(conversation_id, safe='')}/activities"

    async def send_activity(
        self, service_url: str, conversation_id: str, activity: dict[str, Any], token: str
    ) -> dict[str, Any]:
        """
        POST an activity to a conversation.

        Returns:
            The connector's response body, normally ``{"id": "<activity id>"}``

        Raises:
            TransportSendFailed: non-2xx response or network failure, with the provider detail
        """
        url = self.activities_url(service_url, conversation_id)
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

        try:
            async with self._get_session().post(url, json=activity, headers=headers) as response:
                status = response.status
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportSendFailed(None, repr(e)) from e

        data = _parse_json(body)
        if not 200 <= status < 300:
            detail = body
            if isinstance(data, dict) and isinstance(data.get("error"), dict):
                detail = data["error"].get("message") or body
            raise TransportSendFailed(status, detail)

        return data if isinstance(data, dict) else {}


def _parse_json(body: str) -> Any:
    try:
        return json.loads(body) if body else None
    except ValueError:
        return None


def build_outbound_activity(activity: dict[str, Any], target: DeliveryTarget) -> dict[str, Any]:
    """Address an activity to the resolved conversation."""
    payload = dict(activity)
    conversation: dict[str, Any] = {"id": target.conversation_id}
    ref = target.reference

    if ref is not None:
        conversation["isGroup"] = ref.is_group
        if ref.tenant_id:
            conversation["tenantId"] = ref.tenant_id

        agentic = ref.agentic_reference or {}
        sender = agentic.get("agent") or agentic.get("bot")
        if sender:
            payload.setdefault("from", sender)
        elif ref.bot_id:
            payload.setdefault("from", {"id": ref.bot_id, "name": ref.bot_name})

        if agentic.get("user"):
            payload.setdefault("recipient", agentic["user"])
        elif ref.user_id:
            recipient = {"id": ref.user_id, "name": ref.user_name}
            if ref.user_aad_id:
                recipient["aadObjectId"] = ref.user_aad_id
            payload.setdefault("recipient", recipient)

        payload.setdefault("channelId", ref.channel_id)
        if ref.locale:
            payload.setdefault("locale", ref.locale)

    payload.setdefault("conversation", conversation)
    payload.setdefault("serviceUrl", target.service_url)
    return payload


class OutboundDeliveryResolver:
    """
    Resolves proactive delivery targets and sends messages to them.

    Example:
        resolver = OutboundDeliveryResolver(store, exchanger, ConnectorTransport(), config)
        result = await resolver.send_text("user:399f383c-...", "Your report is ready")
        if not result.ok:
            logger.error(result.error)
    """

    def __init__(
        self,
        store: ConversationReferenceStore,
        exchanger: TokenExchanger,
        transport: ConnectorTransport | None = None,
        config: A365Config | None = None,
    ):
        self.store = store
        self.exchanger = exchanger
        self.config = config or exchanger.config
        self.transport = transport or ConnectorTransport(timeout=self.config.http_timeout)

    @property
    def delivery_scope(self) -> str:
        return self.config.delivery_scope or DEFAULT_DELIVERY_SCOPE

    @property
    def service_region(self) -> str:
        return self.config.service_region or os.getenv("A365_SERVICE_REGION") or DEFAULT_SERVICE_REGION

    async def resolve(
        self,
        raw_target: str | None,
        explicit_service_url: str | None = None,
        metadata: MessageMetadata | None = None,
        tenant_id: str | None = None,
    ) -> DeliveryTarget | None:
        """
        Resolve a target to a conversation id and service URL.

        Order: directly supplied coordinates, stored reference by conversation
        id, stored reference by user id, synthesized regional service URL.

        A target that looks like a user id is never a conversation id, so an
        explicit service URL alone does not make it deliverable; the URL is
        only used again by the tenant fallback.

        Args:
            raw_target: Conversation id, user id or prefixed logical target
            explicit_service_url: Service URL known to the caller
            metadata: Metadata of the inbound message currently being replied to
            tenant_id: Tenant id for the degraded service URL fallback

        Returns:
            The delivery target, or None when both fields cannot be determined
        """
        bare = normalize_target(raw_target)
        meta_conversation_id = metadata.conversation_id if metadata else None
        conversation_id = bare or meta_conversation_id or None

        service_url = explicit_service_url
        if not service_url and metadata and metadata.service_url and (not bare or bare == meta_conversation_id):
            service_url = metadata.service_url

        user_like = bool(bare) and looks_like_user_id(bare) and bare != meta_conversation_id
        if conversation_id and service_url and not user_like:
            logger.debug(f"Using directly supplied delivery target {conversation_id}")
            return DeliveryTarget(conversation_id, service_url, "direct")

        if not conversation_id:
            logger.warning("resolve called without a target or conversation metadata")
            return None

        logger.info(f"Looking up stored conversation reference for: {conversation_id}")
        ref = await self.store.get_by_id(conversation_id)
        if ref:
            logger.info(f"Found stored reference: conversationId={ref.conversation_id}")
            return DeliveryTarget(ref.conversation_id, ref.service_url, "conversation", ref)

        if looks_like_user_id(conversation_id):
            # Shape-based guess; new identifier formats may defeat it
            logger.info(f"Direct lookup failed, trying userAadId lookup for {conversation_id}")
            ref = await self.store.get_by_user(conversation_id)
            if ref:
                logger.info(f"Found stored reference by user: conversationId={ref.conversation_id}")
                return DeliveryTarget(ref.conversation_id, ref.service_url, "user", ref)

        tenant = tenant_id or (metadata.tenant_id if metadata else None)
        if tenant:
            url = service_url or build_regional_service_url(tenant, self.service_region)
            logger.warning(
                f"No stored reference for {conversation_id}; using synthesized service URL {url} "
                f"(may not match the conversation's region)"
            )
            return DeliveryTarget(conversation_id, url, "tenant_fallback")

        if explicit_service_url:
            logger.warning(
                f"No stored reference found for: {conversation_id}; ignoring explicit service URL "
                f"{explicit_service_url} because no tenant id is known"
            )
        else:
            logger.warning(f"No stored reference found for: {conversation_id}")
        return None

    async def send_activity(
        self,
        to: str | None,
        activity: dict[str, Any],
        service_url: str | None = None,
        metadata: MessageMetadata | None = None,
        tenant_id: str | None = None,
    ) -> SendResult:
        """
        Resolve ``to``, acquire a token and send ``activity``.

        Never raises for configuration, token, resolution or transport failures;
        they are logged and returned as a failed SendResult.
        """
        target = await self.resolve(to, service_url, metadata, tenant_id)
        if target is None:
            error = DeliveryTargetUnresolved(to)
            logger.error(f"Proactive message failed: {error}")
            return SendResult.failure(error)

        identity = resolve_agent_identity_for_request(self.config)
        if not identity:
            error = ConfigurationMissing(["agentIdentity"], feature="proactive messaging")
            logger.error(f"Proactive message failed: {error}")
            return SendResult.failure(error)

        try:
            token = await self.exchanger.acquire(identity, self.delivery_scope)
        except (ConfigurationMissing, TokenAcquisitionFailed) as e:
            logger.error(f"Proactive message failed, no token: {e}")
            return SendResult.failure(e)

        payload = build_outbound_activity(activity, target)
        try:
            response = await self.transport.send_activity(target.service_url, target.conversation_id, payload, token)
        except TransportSendFailed as e:
            if e.status == 401:
                # Token rejected; make the next attempt run a fresh exchange
                self.exchanger.invalidate(identity, self.delivery_scope)
            logger.error(f"Proactive message failed: {e}")
            return SendResult.failure(e)

        message_id = response.get("id")
        logger.info(f"Proactive message sent successfully: messageId={message_id} via {target.source}")
        return SendResult(ok=True, message_id=message_id, conversation_id=target.conversation_id)

    async def send_text(self, to: str | None, text: str, **kwargs) -> SendResult:
        logger.info(f"send_text called: to={to} textLength={len(text or '')}")
        return await self.send_activity(to, {"type": "message", "text": text}, **kwargs)

    async def send_media(self, to: str | None, text: str, media_url: str | None = None, **kwargs) -> SendResult:
        """Send text with the media URL appended on its own paragraph."""
        message_text = f"{text}\n\n{media_url}" if media_url else text
        return await self.send_text(to, message_text, **kwargs)

    async def send_adaptive_card(self, to: str | None, card: dict[str, Any], **kwargs) -> SendResult:
        activity = {
            "type": "message",
            "attachments": [{"contentType": ADAPTIVE_CARD_CONTENT_TYPE, "content": card}],
        }
        return await self.send_activity(to, activity, **kwargs)

    async def close(self) -> None:
        await self.transport.close()
