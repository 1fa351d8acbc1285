# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""
Agent Base Class
Defines the abstract base class the chat agent must inherit from to be
hosted on the A365 channel.
"""

import logging
from abc import ABC, abstractmethod

from microsoft_agents.hosting.core import Authorization, TurnContext

logger = logging.getLogger(__name__)


class AgentInterface(ABC):
    """
    Abstract base class that any hosted agent must inherit from.

    The host runs ``process_user_message`` inside the request context of the
    inbound message, so the agent can read the sender's identity and role
    with ``request_context.get_request_context()``.
    """

    async def initialize(self) -> None:
        """Initialize the agent and any required resources."""

    @abstractmethod
    async def process_user_message(
        self, message: str, auth: Authorization, context: TurnContext
    ) -> str:
        """Process a user message and return a response."""
        pass

    @abstractmethod
    async def cleanup(self) -> None:
        """Clean up any resources used by the agent."""
        pass


def check_agent_inheritance(agent_class) -> bool:
    """Check that an agent class inherits from AgentInterface."""
    if not isinstance(agent_class, type) or not issubclass(agent_class, AgentInterface):
        name = getattr(agent_class, "__name__", repr(agent_class))
        logger.error(f"Agent {name} does not inherit from AgentInterface")
        return False
    logger.debug(f"Agent {agent_class.__name__} properly inherits from AgentInterface")
    return True
