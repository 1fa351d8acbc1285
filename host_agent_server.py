# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""
A365 Agent Host Server
Hosts an agent on the Microsoft 365 Agents SDK, records a conversation
reference for every inbound message, and exposes the proactive delivery
resolver to the surrounding runtime.
"""

import logging
import os
import socket

from aiohttp.web import Application, Request, Response, json_response, run_app
from aiohttp.web_middlewares import middleware as web_middleware
from microsoft_agents.activity import load_configuration_from_env
from microsoft_agents.authentication.msal import MsalConnectionManager
from microsoft_agents.hosting.aiohttp import (
    CloudAdapter,
    jwt_authorization_middleware,
    start_agent_process,
)
from microsoft_agents.hosting.core import (
    AgentApplication,
    AgentAuthConfiguration,
    AuthenticationConstants,
    Authorization,
    ClaimsIdentity,
    MemoryStorage,
    TurnContext,
    TurnState,
)

from agent_interface import AgentInterface, check_agent_inheritance
from config import A365Config
from conversation_store import ConversationReferenceStore, FileConversationReferenceStore
from credentials import A365Credentials, resolve_a365_credentials, resolve_agent_identity
from errors import ConfigurationMissing
from message_metadata import (
    build_conversation_reference,
    determine_user_role,
    extract_message_metadata,
    is_sender_allowed,
)
from outbound import ConnectorTransport, OutboundDeliveryResolver
from request_context import RequestContext, request_context
from token_exchange import TokenExchanger

# Configure logging
ms_agents_logger = logging.getLogger("microsoft_agents")
ms_agents_logger.addHandler(logging.StreamHandler())
ms_agents_logger.setLevel(logging.INFO)

logger = logging.getLogger(__name__)


def sdk_configuration(creds: A365Credentials) -> dict:
    """
    Build the Agents SDK configuration for the bot registration.

    The SDK reads its connection settings from environment-style keys. They
    are merged over a copy of the environment instead of mutating it.
    """
    env = dict(os.environ)
    env.update(
        {
            "CONNECTIONS__SERVICE_CONNECTION__SETTINGS__CLIENTID": creds.app_id,
            "CONNECTIONS__SERVICE_CONNECTION__SETTINGS__CLIENTSECRET": creds.app_password,
            "CONNECTIONS__SERVICE_CONNECTION__SETTINGS__TENANTID": creds.tenant_id,
            "CONNECTIONSMAP__0__CONNECTION": "SERVICE_CONNECTION",
            "CONNECTIONSMAP__0__SERVICEURL": "*",
        }
    )
    return load_configuration_from_env(env)


def serialize_agentic_reference(activity) -> dict | None:
    """SDK conversation reference of the activity as JSON-ready camelCase dict."""
    get_reference = getattr(activity, "get_conversation_reference", None)
    if get_reference is None:
        return None
    reference = get_reference()
    return reference.model_dump(mode="json", by_alias=True, exclude_none=True)


class A365AgentHost:
    """Hosts an agent implementing AgentInterface on the A365 channel"""

    def __init__(
        self,
        agent_class: type[AgentInterface],
        *agent_args,
        config: A365Config | None = None,
        store: ConversationReferenceStore | None = None,
        exchanger: TokenExchanger | None = None,
        **agent_kwargs,
    ):
        """
        Initialize the host with an agent class and its initialization parameters.

        Args:
            agent_class: The agent class to instantiate (must implement AgentInterface)
            *agent_args: Positional arguments to pass to the agent constructor
            config: Channel configuration, loaded from the environment when omitted
            store: Conversation reference store, file backed by default
            exchanger: Token exchanger used for proactive sends
            **agent_kwargs: Keyword arguments to pass to the agent constructor

        Raises:
            ConfigurationMissing: Bot Framework credentials are not configured
        """
        if not check_agent_inheritance(agent_class):
            raise TypeError(f"Agent class {agent_class.__name__} must inherit from AgentInterface")

        self.config = config or A365Config.from_environment()
        self.credentials = resolve_a365_credentials(self.config)
        if self.credentials is None:
            raise ConfigurationMissing(["appId", "appPassword", "tenantId"], feature="a365 channel")

        self.agent_class = agent_class
        self.agent_args = agent_args
        self.agent_kwargs = agent_kwargs
        self.agent_instance: AgentInterface | None = None

        # Proactive delivery
        self.store = store or FileConversationReferenceStore(self.config.conversation_store_path)
        self.exchanger = exchanger or TokenExchanger(self.config)
        self.resolver = OutboundDeliveryResolver(
            self.store,
            self.exchanger,
            ConnectorTransport(timeout=self.config.http_timeout),
            self.config,
        )

        # Microsoft Agents SDK components
        agents_sdk_config = sdk_configuration(self.credentials)
        self.storage = MemoryStorage()
        self.connection_manager = MsalConnectionManager(**agents_sdk_config)
        self.adapter = CloudAdapter(connection_manager=self.connection_manager)
        self.authorization = Authorization(self.storage, self.connection_manager, **agents_sdk_config)
        self.agent_app = AgentApplication[TurnState](
            storage=self.storage,
            adapter=self.adapter,
            authorization=self.authorization,
            **agents_sdk_config,
        )

        self._setup_handlers()

    def _setup_handlers(self):
        """Setup the Microsoft Agents SDK message handlers"""

        async def welcome_handler(context: TurnContext, _: TurnState):
            # Silent join unless a welcome message is configured
            if self.config.welcome_message:
                await context.send_activity(self.config.welcome_message)
                logger.info("📨 Sent welcome message")

        self.agent_app.conversation_update("membersAdded")(welcome_handler)

        @self.agent_app.activity("message")
        async def on_message(context: TurnContext, _: TurnState):
            """Handle all messages with the hosted agent"""
            await self.handle_message(context)

    async def remember_conversation(self, context: TurnContext) -> bool:
        """
        Store the conversation reference of an inbound message.

        Failures are logged and reported as False; they must not stop the
        reply to the current message.
        """
        activity = context.activity
        try:
            ref = build_conversation_reference(activity, serialize_agentic_reference(activity))
            logger.info(f"Saving conversation reference: conversationId={ref.conversation_id} serviceUrl={ref.service_url}")
            await self.store.save(ref)
            return True
        except Exception as e:
            logger.error(f"❌ Failed to save conversation reference: {e}")
            return False

    async def handle_message(self, context: TurnContext):
        activity = context.activity
        user_message = (activity.text or "").strip()

        # Skip empty messages
        if not user_message:
            logger.debug("Skipping empty message")
            return

        metadata = extract_message_metadata(activity)
        logger.info(
            f"📨 Received message from {metadata.user_name or metadata.user_id} "
            f"(group={metadata.is_group}, length={len(user_message)})"
        )

        await self.remember_conversation(context)

        if not is_sender_allowed(metadata, self.config.allow_from):
            logger.debug(f"User {metadata.user_id} not in allowlist")
            return

        if not self.agent_instance:
            logger.error("❌ Agent not available")
            await context.send_activity("❌ Sorry, the agent is not available.")
            return

        ctx = RequestContext(
            agent_identity=resolve_agent_identity(self.config),
            current_user_email=metadata.user_email,
            current_user_aad_id=metadata.user_aad_id,
            current_user_role=determine_user_role(metadata, self.config),
            send_activity=context.send_activity,
        )

        with request_context(ctx):
            try:
                logger.info(f"🤖 Processing with {self.agent_class.__name__}...")
                response = await self.agent_instance.process_user_message(
                    user_message, self.agent_app.auth, context
                )
                if response:
                    await context.send_activity(response)
                logger.info("✅ Response sent successfully to client")
            except Exception as e:
                logger.error(f"❌ Error processing message: {e}")
                await context.send_activity("I encountered an error processing your message. Please try again.")

    async def initialize_agent(self):
        """Initialize the hosted agent instance"""
        if self.agent_instance is None:
            try:
                logger.info(f"🤖 Initializing {self.agent_class.__name__}...")
                self.agent_instance = self.agent_class(*self.agent_args, **self.agent_kwargs)
                await self.agent_instance.initialize()
                logger.info(f"✅ {self.agent_class.__name__} initialized successfully")
            except Exception as e:
                logger.error(f"❌ Failed to initialize {self.agent_class.__name__}: {e}")
                raise

    def create_auth_configuration(self) -> AgentAuthConfiguration:
        """Client credentials auth configuration for the JWT middleware."""
        logger.info("🔒 Using Client Credentials authentication")
        return AgentAuthConfiguration(
            client_id=self.credentials.app_id,
            tenant_id=self.credentials.tenant_id,
            client_secret=self.credentials.app_password,
            scopes=["https://api.botframework.com/.default"],
        )

    def build_app(self, auth_configuration: AgentAuthConfiguration | None = None) -> Application:
        """Build the aiohttp application (webhook, health check, lifecycle hooks)."""

        async def entry_point(req: Request) -> Response:
            agent: AgentApplication = req.app["agent_app"]
            adapter: CloudAdapter = req.app["adapter"]
            return await start_agent_process(req, agent, adapter)

        async def init_app(app):
            await self.initialize_agent()

        async def cleanup_app(app):
            await self.cleanup()

        async def health(_req: Request) -> Response:
            references = await self.store.list()
            status = {
                "status": "ok",
                "agent_type": self.agent_class.__name__,
                "agent_initialized": self.agent_instance is not None,
                "auth_mode": "authenticated" if auth_configuration else "anonymous",
                "conversation_references": len(references),
                "token_cache": self.exchanger.cache.stats()["count"],
            }
            return json_response(status)

        middlewares = []
        if auth_configuration:
            middlewares.append(jwt_authorization_middleware)

        # Anonymous claims middleware
        @web_middleware
        async def anonymous_claims(request, handler):
            if not auth_configuration:
                request["claims_identity"] = ClaimsIdentity(
                    {
                        AuthenticationConstants.AUDIENCE_CLAIM: "anonymous",
                        AuthenticationConstants.APP_ID_CLAIM: "anonymous-app",
                    },
                    False,
                    "Anonymous",
                )
            return await handler(request)

        middlewares.append(anonymous_claims)
        app = Application(middlewares=middlewares)

        app.router.add_post("/api/messages", entry_point)
        app.router.add_get("/api/messages", lambda _: Response(status=200))
        app.router.add_get("/api/health", health)

        app["agent_configuration"] = auth_configuration
        app["agent_app"] = self.agent_app
        app["adapter"] = self.agent_app.adapter

        app.on_startup.append(init_app)
        app.on_cleanup.append(cleanup_app)
        return app

    def start_server(self, auth_configuration: AgentAuthConfiguration | None = None):
        """Start the server using Microsoft Agents SDK"""
        app = self.build_app(auth_configuration)

        desired_port = self.config.port
        port = desired_port

        # Simple port availability check
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.settimeout(0.5)
            if s.connect_ex(("127.0.0.1", desired_port)) == 0:
                logger.warning(f"⚠️ Port {desired_port} already in use. Attempting {desired_port + 1}.")
                port = desired_port + 1

        logger.info(f"🚀 Starting a365 provider on localhost:{port}")
        logger.info(f"📚 Bot Framework endpoint: http://localhost:{port}/api/messages")

        try:
            run_app(app, host="localhost", port=port)
        except KeyboardInterrupt:
            logger.info("👋 Server stopped")

    async def cleanup(self):
        """Clean up resources"""
        if self.agent_instance:
            try:
                await self.agent_instance.cleanup()
                logger.info("Agent cleanup completed")
            except Exception as e:
                logger.error(f"Error during agent cleanup: {e}")
        await self.resolver.close()
        await self.exchanger.close()


def create_and_run_host(agent_class: type[AgentInterface], *agent_args, **agent_kwargs):
    """
    Convenience function to create and run the A365 agent host.

    Args:
        agent_class: The agent class to host (must implement AgentInterface)
        *agent_args: Positional arguments to pass to the agent constructor
        **agent_kwargs: Keyword arguments to pass to the agent constructor
    """
    config = A365Config.from_environment()
    if not config.enabled:
        logger.info("a365 provider disabled")
        return

    try:
        host = A365AgentHost(agent_class, *agent_args, config=config, **agent_kwargs)
    except ConfigurationMissing as e:
        logger.error(
            f"{e}. Set appId/appPassword/tenantId in config or "
            f"A365_APP_ID/A365_APP_PASSWORD/A365_TENANT_ID env vars"
        )
        return

    host.start_server(host.create_auth_configuration())
