# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""
Token Exchange
Acquires delegated access tokens for the agent's own user identity.

Two strategies are tried in order:
1. External callback (optional) - an external token broker returns a token
2. T1/T2/Agent flow - federated identity credential exchange against Entra ID

T1: blueprint client credentials with fmi_path -> token for the agent instance
T2: instance client credentials, T1 as jwt-bearer assertion
Agent: user_fic grant for the agent UPN, T1 as assertion and T2 as the user FIC
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import aiohttp
from pydantic import BaseModel, ConfigDict, ValidationError

from config import DEFAULT_GRAPH_SCOPE, DEFAULT_HTTP_TIMEOUT, A365Config
from credentials import (
    GraphTokenConfig,
    TokenCallbackConfig,
    missing_graph_fields,
    resolve_graph_token_config,
    resolve_token_callback_config,
)
from errors import ConfigurationMissing, TokenAcquisitionFailed
from token_cache import CachedToken, Clock, TokenCache, now_ms

logger = logging.getLogger(__name__)

TOKEN_ENDPOINT = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
TOKEN_EXCHANGE_SCOPE = "api://AzureAdTokenExchange/.default"
JWT_BEARER_ASSERTION = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
DEFAULT_CALLBACK_LIFETIME_S = 3600

FORM_HEADERS = {"Content-Type": "application/x-www-form-urlencoded"}


class TokenResponse(BaseModel):
    """Token endpoint or callback response body."""

    model_config = ConfigDict(extra="ignore")

    access_token: str | None = None
    expires_in: int | None = None
    expires_at: str | None = None
    error: str | None = None
    error_description: str | None = None


def parse_token_response(body: str) -> TokenResponse | None:
    """Parse a JSON token response, or None if the body is not a JSON object."""
    try:
        return TokenResponse.model_validate_json(body)
    except ValidationError:
        return None


def parse_expires_at(value: str) -> int:
    """Parse an ISO8601 timestamp into milliseconds since epoch (naive means UTC)."""
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


async def _post(
    session: aiohttp.ClientSession,
    url: str,
    *,
    data: dict | None = None,
    json: dict | None = None,
    headers: dict | None = None,
) -> tuple[int, str]:
    async with session.post(url, data=data, json=json, headers=headers) as response:
        return response.status, await response.text()


@dataclass
class CallbackResult:
    """Outcome of the callback strategy. ``token`` is None on failure."""

    token: CachedToken | None = None
    error: str | None = None
    status: int | None = None

    @property
    def ok(self) -> bool:
        return self.token is not None


class CallbackTokenSource:
    """Fetches tokens from an external token service."""

    def __init__(self, config: TokenCallbackConfig, clock: Clock | None = None):
        self.config = config
        self._clock = clock or now_ms

    async def try_acquire(self, session: aiohttp.ClientSession, identity: str, scope: str) -> CallbackResult:
        """
        Ask the callback service for a token.

        Never raises for service or network failures; the failure is returned
        so the caller can decide whether to fall back.
        """
        headers = {"Content-Type": "application/json"}
        if self.config.callback_token:
            headers["Authorization"] = f"Bearer {self.config.callback_token}"

        try:
            status, body = await _post(
                session,
                self.config.callback_url,
                json={"username": identity, "identity": identity, "scope": scope},
                headers=headers,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return CallbackResult(error=f"Token callback request failed: {e!r}")

        if not 200 <= status < 300:
            return CallbackResult(error=f"Token callback failed: {status} {body}", status=status)

        data = parse_token_response(body)
        if data is None or not data.access_token:
            return CallbackResult(error="Token callback returned no access_token", status=status)

        now = self._clock()
        try:
            if data.expires_at:
                expires_at = parse_expires_at(data.expires_at)
            elif data.expires_in is not None:
                expires_at = now + data.expires_in * 1000
            else:
                expires_at = now + DEFAULT_CALLBACK_LIFETIME_S * 1000
        except ValueError:
            return CallbackResult(error=f"Token callback returned invalid expires_at: {data.expires_at}", status=status)

        return CallbackResult(token=CachedToken(access_token=data.access_token, expires_at=expires_at), status=status)


class ThreeTierTokenFlow:
    """Runs the T1 -> T2 -> Agent exchange against the tenant token endpoint."""

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or now_ms

    async def _request(
        self,
        session: aiohttp.ClientSession,
        endpoint: str,
        tier: str,
        form: dict[str, str],
        scope: str,
    ) -> TokenResponse:
        try:
            status, body = await _post(session, endpoint, data=form, headers=FORM_HEADERS)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TokenAcquisitionFailed(tier, None, repr(e), scope=scope) from e

        data = parse_token_response(body)
        if not 200 <= status < 300:
            raise TokenAcquisitionFailed(
                tier,
                status,
                body,
                error=data.error if data else None,
                error_description=data.error_description if data else None,
                scope=scope,
            )

        if data is None or not data.access_token:
            raise TokenAcquisitionFailed(tier, status, body or "response did not contain access_token", scope=scope)

        logger.info(f"{tier} token acquired successfully")
        return data

    async def fetch(
        self,
        session: aiohttp.ClientSession,
        config: GraphTokenConfig,
        identity: str,
        scope: str,
    ) -> CachedToken:
        """
        Run all three tiers in order.

        Args:
            session: HTTP session used for the token endpoint
            config: Tenant, blueprint and instance settings
            identity: Agent UPN, sent as ``username`` of the user_fic grant
            scope: Scope of the final token

        Returns:
            The agent token and its absolute expiry

        Raises:
            TokenAcquisitionFailed: tagged with the tier that failed
        """
        endpoint = TOKEN_ENDPOINT.format(tenant_id=config.tenant_id)
        logger.info(f"T1/T2 flow starting: username={identity} scope={scope}")

        t1 = await self._request(
            session,
            endpoint,
            "T1",
            {
                "scope": TOKEN_EXCHANGE_SCOPE,
                "client_id": config.blueprint_client_app_id,
                "grant_type": "client_credentials",
                "client_secret": config.blueprint_client_secret,
                "fmi_path": config.aa_instance_id,
            },
            scope,
        )

        t2 = await self._request(
            session,
            endpoint,
            "T2",
            {
                "scope": TOKEN_EXCHANGE_SCOPE,
                "client_id": config.aa_instance_id,
                "grant_type": "client_credentials",
                "client_assertion_type": JWT_BEARER_ASSERTION,
                "client_assertion": t1.access_token,
            },
            scope,
        )

        # "username" must carry the UPN; "user_id" is rejected by the provider
        agent = await self._request(
            session,
            endpoint,
            "Agent",
            {
                "scope": scope,
                "client_id": config.aa_instance_id,
                "grant_type": "user_fic",
                "client_assertion_type": JWT_BEARER_ASSERTION,
                "client_assertion": t1.access_token,
                "username": identity,
                "user_federated_identity_credential": t2.access_token,
            },
            scope,
        )

        expires_in = agent.expires_in
        if expires_in is None:
            logger.warning("Agent token response has no expires_in, assuming one hour")
            expires_in = DEFAULT_CALLBACK_LIFETIME_S

        return CachedToken(access_token=agent.access_token, expires_at=self._clock() + expires_in * 1000)


class TokenExchanger:
    """
    Acquires and caches delegated tokens for the agent identity.

    Example:
        async with TokenExchanger(config) as exchanger:
            token = await exchanger.acquire("agent@contoso.com", "https://graph.microsoft.com/.default")
    """

    def __init__(
        self,
        config: A365Config | None = None,
        cache: TokenCache | None = None,
        session: aiohttp.ClientSession | None = None,
        clock: Clock | None = None,
    ):
        self.config = config or A365Config()
        self._clock = clock or now_ms
        self.cache = cache or TokenCache(clock=self._clock)
        self._session = session
        self._owns_session = session is None
        self.flow = ThreeTierTokenFlow(clock=self._clock)

    async def __aenter__(self) -> "TokenExchanger":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.http_timeout or DEFAULT_HTTP_TIMEOUT)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this exchanger created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def effective_scope(self, scope: str | None = None, graph_config: GraphTokenConfig | None = None) -> str:
        if scope:
            return scope
        if graph_config and graph_config.scope:
            return graph_config.scope
        return self.config.graph.scope or DEFAULT_GRAPH_SCOPE

    async def acquire(
        self,
        identity: str,
        scope: str | None = None,
        graph_config: GraphTokenConfig | None = None,
    ) -> str:
        """
        Get a cached token or acquire a new one.

        Args:
            identity: Agent UPN
            scope: Requested scope, defaults to the configured Graph scope
            graph_config: Explicit exchange settings, resolved from config when omitted

        Returns:
            The access token

        Raises:
            ConfigurationMissing: neither a callback nor the exchange is configured
            TokenAcquisitionFailed: the exchange (or the callback, when it is the
                only strategy) failed
        """
        identity = (identity or "").strip()
        if not identity:
            raise ConfigurationMissing(["agentIdentity"], feature="token acquisition")

        graph_config = graph_config or resolve_graph_token_config(self.config)
        effective_scope = self.effective_scope(scope, graph_config)

        cached = self.cache.get(identity, effective_scope)
        if cached:
            return cached.access_token

        logger.debug(f"Token cache miss, acquiring new token for {identity} scope={effective_scope}")
        session = self._get_session()

        callback_result: CallbackResult | None = None
        callback_config = resolve_token_callback_config(self.config)
        if callback_config:
            logger.debug(f"Trying external token callback at {callback_config.callback_url}")
            callback_result = await CallbackTokenSource(callback_config, clock=self._clock).try_acquire(
                session, identity, effective_scope
            )
            if callback_result.ok:
                logger.debug("Token acquired from callback")
                self.cache.put(identity, effective_scope, callback_result.token)
                return callback_result.token.access_token
            logger.warning(f"Token callback failed, falling back to T1/T2 flow: {callback_result.error}")

        if graph_config is None:
            if callback_result is not None:
                raise TokenAcquisitionFailed(
                    "callback", callback_result.status, callback_result.error or "", scope=effective_scope
                )
            raise ConfigurationMissing(missing_graph_fields(self.config), feature="token acquisition")

        try:
            token = await self.flow.fetch(session, graph_config, identity, effective_scope)
        except TokenAcquisitionFailed as e:
            logger.error(f"T1/T2 token flow failed: {e}")
            raise

        logger.info(
            f"Token acquired via T1/T2 flow, expires at "
            f"{datetime.fromtimestamp(token.expires_at / 1000, tz=timezone.utc).isoformat()}"
        )
        self.cache.put(identity, effective_scope, token)
        return token.access_token

    def invalidate(self, identity: str | None = None, scope: str | None = None) -> int:
        """Drop cached tokens; see TokenCache.invalidate."""
        return self.cache.invalidate(identity, scope)
