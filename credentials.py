# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""
Credential Resolution
Resolves Bot Framework credentials, token exchange settings and the token
callback from configuration, falling back to environment variables.
"""

import os
from dataclasses import dataclass
from typing import TypeVar

from config import DEFAULT_GRAPH_SCOPE, A365Config
from errors import ConfigurationMissing

T = TypeVar("T")


@dataclass(frozen=True)
class A365Credentials:
    """Bot Framework app registration."""

    app_id: str
    app_password: str
    tenant_id: str


@dataclass(frozen=True)
class GraphTokenConfig:
    """Parameters for the T1/T2/Agent token exchange."""

    tenant_id: str
    blueprint_client_app_id: str
    blueprint_client_secret: str
    aa_instance_id: str
    scope: str = DEFAULT_GRAPH_SCOPE

    def __repr__(self) -> str:
        return (
            f"GraphTokenConfig(tenant_id={self.tenant_id!r}, "
            f"blueprint_client_app_id={self.blueprint_client_app_id!r}, "
            f"aa_instance_id={self.aa_instance_id!r}, scope={self.scope!r})"
        )


@dataclass(frozen=True)
class TokenCallbackConfig:
    """External token service endpoint."""

    callback_url: str
    callback_token: str | None = None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _first(*values: str | None) -> str | None:
    """Return the first non-blank value, trimmed."""
    for value in values:
        cleaned = _clean(value)
        if cleaned:
            return cleaned
    return None


def _env(*names: str) -> str | None:
    return _first(*(os.getenv(name) for name in names))


def resolve_a365_credentials(cfg: A365Config | None = None) -> A365Credentials | None:
    """
    Resolve Bot Framework credentials from config or environment variables.

    Args:
        cfg: Channel configuration, may be None

    Returns:
        A365Credentials, or None if any of app id, password or tenant id is missing
    """
    cfg = cfg or A365Config()
    app_id = _first(cfg.app_id, _env("A365_APP_ID", "MicrosoftAppId"))
    app_password = _first(cfg.app_password, _env("A365_APP_PASSWORD", "MicrosoftAppPassword"))
    tenant_id = _first(cfg.tenant_id, _env("A365_TENANT_ID", "MicrosoftAppTenantId"))

    if not app_id or not app_password or not tenant_id:
        return None

    return A365Credentials(app_id=app_id, app_password=app_password, tenant_id=tenant_id)


def resolve_graph_token_config(cfg: A365Config | None = None) -> GraphTokenConfig | None:
    """
    Resolve the settings for the T1/T2/Agent flow.

    The blueprint app id and secret default to the bot's own app id and
    password when they are not configured separately.
    """
    cfg = cfg or A365Config()
    tenant_id = _first(cfg.tenant_id, _env("A365_TENANT_ID", "MicrosoftAppTenantId"))
    blueprint_client_app_id = _first(
        cfg.graph.blueprint_client_app_id,
        cfg.app_id,
        _env("BLUEPRINT_CLIENT_APP_ID", "A365_APP_ID"),
    )
    blueprint_client_secret = _first(
        cfg.graph.blueprint_client_secret,
        cfg.app_password,
        _env("BLUEPRINT_CLIENT_SECRET", "A365_APP_PASSWORD"),
    )
    aa_instance_id = _first(cfg.graph.aa_instance_id, _env("AA_INSTANCE_ID"))
    scope = _first(cfg.graph.scope, _env("A365_GRAPH_SCOPE")) or DEFAULT_GRAPH_SCOPE

    if not tenant_id or not blueprint_client_app_id or not blueprint_client_secret or not aa_instance_id:
        return None

    return GraphTokenConfig(
        tenant_id=tenant_id,
        blueprint_client_app_id=blueprint_client_app_id,
        blueprint_client_secret=blueprint_client_secret,
        aa_instance_id=aa_instance_id,
        scope=scope,
    )


def resolve_token_callback_config(cfg: A365Config | None = None) -> TokenCallbackConfig | None:
    """Resolve the external token callback, or None when no URL is set."""
    cfg = cfg or A365Config()
    callback_url = _first(cfg.token_callback.url, _env("TOKEN_CALLBACK_URL"))
    if not callback_url:
        return None

    return TokenCallbackConfig(
        callback_url=callback_url,
        callback_token=_first(cfg.token_callback.token, _env("TOKEN_CALLBACK_TOKEN")),
    )


def resolve_agent_identity(cfg: A365Config | None = None) -> str | None:
    """Resolve the agent UPN used as the ``username`` of the user_fic grant."""
    cfg = cfg or A365Config()
    return _first(cfg.agent_identity, cfg.owner, _env("AGENT_IDENTITY", "A365_OWNER"))


def missing_graph_fields(cfg: A365Config | None = None) -> list[str]:
    """List the token exchange settings that could not be resolved."""
    cfg = cfg or A365Config()
    checks = {
        "tenantId": _first(cfg.tenant_id, _env("A365_TENANT_ID", "MicrosoftAppTenantId")),
        "graph.blueprintClientAppId": _first(
            cfg.graph.blueprint_client_app_id, cfg.app_id, _env("BLUEPRINT_CLIENT_APP_ID", "A365_APP_ID")
        ),
        "graph.blueprintClientSecret": _first(
            cfg.graph.blueprint_client_secret,
            cfg.app_password,
            _env("BLUEPRINT_CLIENT_SECRET", "A365_APP_PASSWORD"),
        ),
        "graph.aaInstanceId": _first(cfg.graph.aa_instance_id, _env("AA_INSTANCE_ID")),
    }
    return [name for name, value in checks.items() if not value]


def require(value: T | None, missing_fields: list[str], feature: str = "a365") -> T:
    """Turn an absent resolver result into ConfigurationMissing."""
    if value is None:
        raise ConfigurationMissing(missing_fields, feature=feature)
    return value
