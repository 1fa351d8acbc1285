# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""
Request Context
Per-request identity and callbacks, isolated between concurrent requests.

The context lives in a ContextVar. asyncio copies the current context into
every task it creates, so two requests handled concurrently never see each
other's identity.
"""

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Literal, TypeVar

from config import A365Config
from credentials import resolve_agent_identity

T = TypeVar("T")

UserRole = Literal["Owner", "Requester"]


@dataclass(frozen=True)
class RequestContext:
    """
    Identity and hooks for the request being processed.

    Attributes:
        agent_identity: UPN of the agent service account used for token acquisition
        current_user_email: Email (or id) of the user who sent the message
        current_user_aad_id: Entra object id of that user
        current_user_role: "Owner" when the sender is the agent's principal
        send_activity: Sends an activity straight into the current conversation
    """

    agent_identity: str | None = None
    current_user_email: str | None = None
    current_user_aad_id: str | None = None
    current_user_role: UserRole = "Requester"
    send_activity: Callable[[Any], Awaitable[Any]] | None = None


_current: ContextVar[RequestContext | None] = ContextVar("a365_request_context", default=None)


def get_request_context() -> RequestContext | None:
    """Return the context of the request being processed, if any."""
    return _current.get()


@contextmanager
def request_context(ctx: RequestContext) -> Iterator[RequestContext]:
    """Make ``ctx`` current for the enclosed block."""
    token = _current.set(ctx)
    try:
        yield ctx
    finally:
        _current.reset(token)


async def run_with_request_context(ctx: RequestContext, fn: Callable[[], Awaitable[T]]) -> T:
    """Await ``fn()`` with ``ctx`` as the current request context."""
    with request_context(ctx):
        return await fn()


def resolve_agent_identity_for_request(cfg: A365Config | None = None) -> str | None:
    """Agent identity from the current request, falling back to configuration."""
    ctx = get_request_context()
    if ctx and ctx.agent_identity:
        return ctx.agent_identity
    return resolve_agent_identity(cfg)
