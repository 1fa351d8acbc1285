# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""
Conversation Reference Store
Persists where and how to reach a conversation so the agent can send
messages outside of an inbound request (scheduled jobs, async task results).

Default storage location: ~/.openclaw/a365-conversations.json
"""

import asyncio
import json
import logging
import os
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from errors import InvalidConversationReference
from token_cache import now_ms

logger = logging.getLogger(__name__)

STORE_VERSION = 1
DEFAULT_STORE_PATH = Path.home() / ".openclaw" / "a365-conversations.json"
CACHE_TTL_SECONDS = 30.0

_CAMEL_KEYS = {
    "conversation_id": "conversationId",
    "service_url": "serviceUrl",
    "channel_id": "channelId",
    "bot_id": "botId",
    "bot_name": "botName",
    "user_id": "userId",
    "user_name": "userName",
    "user_aad_id": "userAadId",
    "tenant_id": "tenantId",
    "is_group": "isGroup",
    "locale": "locale",
    "updated_at": "updatedAt",
    "agentic_reference": "agenticReference",
}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _as_timestamp(value: Any) -> int:
    """Milliseconds since epoch from a number, numeric string or ISO8601 string; 0 if unreadable."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        pass
    if not isinstance(value, str):
        return 0
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unreadable updatedAt value {value!r}")
        return 0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


@dataclass
class ConversationReference:
    """
    Delivery coordinates for a conversation.

    Attributes:
        conversation_id: Bot Framework conversation id
        service_url: Bot Framework service URL for the conversation's region
        channel_id: Channel name, e.g. "msteams" or "agents"
        bot_id: The agent's id in this channel
        user_id: The user's id in this channel
        user_aad_id: The user's Entra object id
        is_group: True for group chats and channels
        updated_at: Last write time in milliseconds since epoch
        agentic_reference: SDK conversation reference carrying agentic identity metadata
    """

    conversation_id: str
    service_url: str
    channel_id: str = "msteams"
    bot_id: str = ""
    bot_name: str | None = None
    user_id: str = ""
    user_name: str | None = None
    user_aad_id: str | None = None
    tenant_id: str | None = None
    is_group: bool = False
    locale: str | None = None
    updated_at: int = field(default_factory=now_ms)
    agentic_reference: dict[str, Any] | None = None

    @property
    def is_deliverable(self) -> bool:
        return bool(self.conversation_id and self.service_url)

    def to_dict(self) -> dict[str, Any]:
        """Serialize with camelCase keys, omitting unset optional fields."""
        return {
            _CAMEL_KEYS[name]: value
            for name, value in asdict(self).items()
            if value is not None
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationReference":
        """Deserialize from camelCase or snake_case keys; unknown keys are ignored."""
        reverse = {camel: name for name, camel in _CAMEL_KEYS.items()}
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in data.items():
            name = reverse.get(key, key)
            if name in known:
                values[name] = value
        values.setdefault("conversation_id", "")
        values.setdefault("service_url", "")
        values["is_group"] = _as_bool(values.get("is_group"))
        values["updated_at"] = _as_timestamp(values.get("updated_at"))
        return cls(**values)


def validate_reference(ref: ConversationReference) -> None:
    """Reject references that could never be used for delivery."""
    missing = [name for name in ("conversation_id", "service_url") if not getattr(ref, name)]
    if missing:
        raise InvalidConversationReference(
            f"Conversation reference is missing required field(s): {', '.join(missing)}"
        )


def select_best_user_reference(
    refs: Iterable[ConversationReference], user_aad_id: str
) -> ConversationReference | None:
    """
    Pick the most useful conversation for proactively messaging a user.

    Direct (1:1) conversations beat group conversations; within the same
    kind the most recently updated one wins.
    """
    best: ConversationReference | None = None
    for ref in refs:
        if ref.user_aad_id != user_aad_id or not ref.is_deliverable:
            continue
        if best is None:
            best = ref
        elif best.is_group and not ref.is_group:
            best = ref
        elif best.is_group == ref.is_group and ref.updated_at > best.updated_at:
            best = ref
    return best


class ConversationReferenceStore(ABC):
    """Abstract store for conversation references."""

    @abstractmethod
    async def save(self, ref: ConversationReference) -> None:
        """Insert or fully replace the reference for ``ref.conversation_id``."""
        ...

    @abstractmethod
    async def get_by_id(self, conversation_id: str) -> ConversationReference | None:
        ...

    @abstractmethod
    async def list(self) -> list[ConversationReference]:
        ...

    @abstractmethod
    async def delete(self, conversation_id: str) -> bool:
        """Remove a reference. Returns True if one was removed."""
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...

    async def get_by_user(self, user_aad_id: str) -> ConversationReference | None:
        """Find the best conversation for a user by Entra object id."""
        if not user_aad_id:
            return None
        best = select_best_user_reference(await self.list(), user_aad_id)
        if best:
            logger.debug(f"Found conversation reference by user {user_aad_id}: {best.conversation_id}")
        else:
            logger.debug(f"No conversation reference found for user {user_aad_id}")
        return best


class InMemoryConversationReferenceStore(ConversationReferenceStore):
    """Dict-backed store; contents are lost on restart."""

    def __init__(self) -> None:
        self._refs: dict[str, ConversationReference] = {}

    async def save(self, ref: ConversationReference) -> None:
        validate_reference(ref)
        self._refs[ref.conversation_id] = ConversationReference.from_dict(ref.to_dict())

    async def get_by_id(self, conversation_id: str) -> ConversationReference | None:
        ref = self._refs.get(conversation_id)
        if ref is None or not ref.is_deliverable:
            return None
        return ConversationReference.from_dict(ref.to_dict())

    async def list(self) -> list[ConversationReference]:
        return [ConversationReference.from_dict(ref.to_dict()) for ref in self._refs.values()]

    async def delete(self, conversation_id: str) -> bool:
        return self._refs.pop(conversation_id, None) is not None

    async def clear(self) -> None:
        self._refs.clear()


class FileConversationReferenceStore(ConversationReferenceStore):
    """
    JSON file store with a short-lived in-memory read cache.

    The file is re-read at most every ``cache_ttl`` seconds so writes made by
    another process become visible within that window. A missing, unreadable
    or wrong-version file is treated as an empty store.

    Writes within this process are serialized; across processes the last
    writer wins, which is acceptable because references are snapshots.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        cache_ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] | None = None,
    ):
        self.path = Path(path or os.getenv("A365_CONVERSATION_STORE") or DEFAULT_STORE_PATH).expanduser()
        self.cache_ttl = cache_ttl
        self._clock = clock or time.monotonic
        self._cache: dict[str, dict[str, Any]] | None = None
        self._cache_loaded_at = 0.0
        self._lock = asyncio.Lock()

    def invalidate_cache(self) -> None:
        """Force the next read to go to disk."""
        self._cache = None

    def _read_file(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load conversation store {self.path}, starting fresh: {e}")
            return {}

        if not isinstance(data, dict) or data.get("version") != STORE_VERSION:
            logger.warning(
                f"Conversation store {self.path} has unsupported version "
                f"{data.get('version') if isinstance(data, dict) else None!r}, starting fresh"
            )
            return {}

        conversations = data.get("conversations", data.get("references"))
        if not isinstance(conversations, dict):
            logger.warning(f"Conversation store {self.path} has no conversations map, starting fresh")
            return {}

        return {key: value for key, value in conversations.items() if isinstance(value, dict)}

    def _write_file(self, conversations: dict[str, dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": STORE_VERSION, "conversations": conversations}

        # Write to a sibling temp file and rename so readers never see a partial file
        fd, tmp_path = tempfile.mkstemp(prefix=".a365-conversations-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def _load(self) -> dict[str, dict[str, Any]]:
        if self._cache is not None and self._clock() - self._cache_loaded_at < self.cache_ttl:
            return self._cache

        self._cache = await asyncio.to_thread(self._read_file)
        self._cache_loaded_at = self._clock()
        return self._cache

    async def _store(self, conversations: dict[str, dict[str, Any]]) -> None:
        await asyncio.to_thread(self._write_file, conversations)
        self._cache = conversations
        self._cache_loaded_at = self._clock()

    async def save(self, ref: ConversationReference) -> None:
        """
        Save a conversation reference for later proactive messaging.

        Raises:
            InvalidConversationReference: conversation id or service URL is empty
            OSError: the store file could not be written
        """
        validate_reference(ref)
        async with self._lock:
            # Re-read so concurrent writers in other processes are not clobbered needlessly
            self.invalidate_cache()
            conversations = dict(await self._load())
            conversations[ref.conversation_id] = ref.to_dict()
            await self._store(conversations)
        logger.debug(f"Saved conversation reference {ref.conversation_id}")

    async def get_by_id(self, conversation_id: str) -> ConversationReference | None:
        conversations = await self._load()
        data = conversations.get(conversation_id)
        if data is None:
            logger.debug(
                f"No conversation reference found: lookupKey={conversation_id} storeKeyCount={len(conversations)}"
            )
            return None

        ref = ConversationReference.from_dict(data)
        if not ref.is_deliverable:
            logger.warning(f"Stored conversation reference {conversation_id} has no service URL, ignoring it")
            return None
        return ref

    async def list(self) -> list[ConversationReference]:
        conversations = await self._load()
        return [ConversationReference.from_dict(data) for data in conversations.values()]

    async def delete(self, conversation_id: str) -> bool:
        async with self._lock:
            self.invalidate_cache()
            conversations = dict(await self._load())
            if conversation_id not in conversations:
                return False
            del conversations[conversation_id]
            await self._store(conversations)
        logger.debug(f"Deleted conversation reference {conversation_id}")
        return True

    async def clear(self) -> None:
        """Remove every reference; proactive messaging stops until users write again."""
        async with self._lock:
            await self._store({})
        logger.info("Cleared all conversation references")
