# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""
Channel Configuration
Loads the A365 channel configuration from a dict, a YAML file, or the environment.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_GRAPH_SCOPE = "https://graph.microsoft.com/.default"
DEFAULT_DELIVERY_SCOPE = "https://api.botframework.com/.default"
DEFAULT_SERVICE_REGION = "amer"
DEFAULT_WEBHOOK_PORT = 3978
DEFAULT_HTTP_TIMEOUT = 30.0


def _snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Convert camelCase keys (as written in YAML/JSON) to snake_case."""
    return {_snake(k): v for k, v in (data or {}).items()}


@dataclass
class GraphConfig:
    """Settings for the T1/T2/Agent token exchange."""

    blueprint_client_app_id: str | None = None
    blueprint_client_secret: str | None = None
    aa_instance_id: str | None = None
    scope: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GraphConfig":
        values = _normalize_keys(data or {})
        return cls(
            blueprint_client_app_id=values.get("blueprint_client_app_id") or values.get("client_id"),
            blueprint_client_secret=values.get("blueprint_client_secret") or values.get("client_secret"),
            aa_instance_id=values.get("aa_instance_id"),
            scope=values.get("scope"),
        )


@dataclass
class TokenCallbackSettings:
    """External token service used instead of the three-tier exchange."""

    url: str | None = None
    token: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TokenCallbackSettings":
        values = _normalize_keys(data or {})
        return cls(url=values.get("url"), token=values.get("token"))


@dataclass
class A365Config:
    """
    A365 channel configuration.

    Every field is optional here; the credential resolvers decide what is
    required and fall back to environment variables for anything left unset.

    Attributes:
        app_id: Bot Framework app id
        app_password: Bot Framework app password
        tenant_id: Entra tenant id
        agent_identity: UPN of the agent's own user identity
        owner: Email of the principal the agent supports
        graph: Token exchange settings
        token_callback: External token service settings
    """

    enabled: bool = True
    app_id: str | None = None
    app_password: str | None = None
    tenant_id: str | None = None
    agent_identity: str | None = None
    owner: str | None = None
    owner_aad_id: str | None = None
    graph: GraphConfig = field(default_factory=GraphConfig)
    token_callback: TokenCallbackSettings = field(default_factory=TokenCallbackSettings)
    webhook_port: int | None = None
    allow_from: list[str] = field(default_factory=list)
    welcome_message: str | None = None
    service_region: str | None = None
    delivery_scope: str | None = None
    conversation_store_path: str | None = None
    http_timeout: float = DEFAULT_HTTP_TIMEOUT

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "A365Config":
        """
        Build a configuration from a plain mapping.

        Accepts both camelCase (``appId``) and snake_case (``app_id``) keys,
        and a nested ``webhook: {port: ...}`` block.
        """
        values = _normalize_keys(data or {})
        webhook = _normalize_keys(values.get("webhook") or {})
        port = webhook.get("port", values.get("webhook_port"))

        return cls(
            enabled=bool(values.get("enabled", True)),
            app_id=values.get("app_id"),
            app_password=values.get("app_password"),
            tenant_id=values.get("tenant_id"),
            agent_identity=values.get("agent_identity"),
            owner=values.get("owner"),
            owner_aad_id=values.get("owner_aad_id"),
            graph=GraphConfig.from_dict(values.get("graph")),
            token_callback=TokenCallbackSettings.from_dict(values.get("token_callback")),
            webhook_port=int(port) if port is not None else None,
            allow_from=[str(entry).strip() for entry in values.get("allow_from") or [] if str(entry).strip()],
            welcome_message=values.get("welcome_message"),
            service_region=values.get("service_region"),
            delivery_scope=values.get("delivery_scope"),
            conversation_store_path=values.get("conversation_store_path"),
            http_timeout=float(values.get("http_timeout", DEFAULT_HTTP_TIMEOUT)),
        )

    @classmethod
    def from_file(cls, path: str | Path) -> "A365Config":
        """Load configuration from a YAML (or JSON) file."""
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        # Host applications usually nest the channel under channels.a365
        if isinstance(data.get("channels"), dict) and "a365" in data["channels"]:
            data = data["channels"]["a365"]

        logger.info(f"Loaded A365 configuration from {path}")
        return cls.from_dict(data)

    @classmethod
    def from_environment(cls) -> "A365Config":
        """
        Load configuration for the current process.

        Reads ``.env`` first. If ``A365_CONFIG_FILE`` points at a file it is
        loaded; otherwise an empty configuration is returned and every value
        is resolved from environment variables on demand.
        """
        load_dotenv()
        config_file = os.getenv("A365_CONFIG_FILE")
        if config_file:
            return cls.from_file(config_file)
        return cls()

    @property
    def port(self) -> int:
        return self.webhook_port or int(os.getenv("PORT", DEFAULT_WEBHOOK_PORT))
