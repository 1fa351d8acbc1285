# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""
Command-line tool for inspecting stored conversations and testing
proactive delivery without a running host.

Examples:
    python proactive_cli.py list
    python proactive_cli.py token --scope https://api.botframework.com/.default
    python proactive_cli.py send user:399f383c-... "Proactive test"
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone

from config import A365Config
from conversation_store import FileConversationReferenceStore
from credentials import resolve_agent_identity
from errors import ConfigurationMissing, TokenAcquisitionFailed
from outbound import OutboundDeliveryResolver
from token_exchange import TokenExchanger

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Inspect A365 conversation references and send proactive messages")
    parser.add_argument("--store", default=None, help="Path of the conversation store file")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List stored conversation references")

    delete = subparsers.add_parser("delete", help="Delete a conversation reference")
    delete.add_argument("conversation_id")

    subparsers.add_parser("clear", help="Delete every conversation reference")

    token = subparsers.add_parser("token", help="Acquire a token for the agent identity")
    token.add_argument("--scope", default=None, help="Scope to request (default: configured Graph scope)")
    token.add_argument("--identity", default=None, help="Agent UPN (default: configured agent identity)")

    send = subparsers.add_parser("send", help="Send a proactive text message")
    send.add_argument("to", help="Conversation id, user AAD id, or prefixed target")
    send.add_argument("text")
    send.add_argument("--service-url", default=None)
    send.add_argument("--tenant-id", default=None)

    return parser.parse_args(argv)


def _format_time(updated_at: int) -> str:
    return datetime.fromtimestamp(updated_at / 1000, tz=timezone.utc).isoformat(timespec="seconds")


async def run(args, config: A365Config) -> int:
    store = FileConversationReferenceStore(args.store or config.conversation_store_path)

    if args.command == "list":
        references = sorted(await store.list(), key=lambda ref: ref.updated_at, reverse=True)
        if not references:
            print("No conversation references stored.")
        for ref in references:
            kind = "group" if ref.is_group else "direct"
            print(f"{ref.conversation_id}  {kind}  user={ref.user_aad_id or ref.user_id}  "
                  f"updated={_format_time(ref.updated_at)}  {ref.service_url}")
        return 0

    if args.command == "delete":
        if await store.delete(args.conversation_id):
            print(f"Deleted {args.conversation_id}")
            return 0
        print(f"No conversation reference for {args.conversation_id}")
        return 1

    if args.command == "clear":
        await store.clear()
        print("Cleared all conversation references.")
        return 0

    async with TokenExchanger(config) as exchanger:
        if args.command == "token":
            identity = args.identity or resolve_agent_identity(config)
            try:
                token = await exchanger.acquire(identity or "", args.scope)
            except (ConfigurationMissing, TokenAcquisitionFailed) as e:
                print(f"Token acquisition failed: {e}", file=sys.stderr)
                return 1
            print(f"Token acquired ({len(token)} chars) for {identity}")
            return 0

        resolver = OutboundDeliveryResolver(store, exchanger, config=config)
        try:
            result = await resolver.send_text(
                args.to, args.text, service_url=args.service_url, tenant_id=args.tenant_id
            )
        finally:
            await resolver.close()

        if not result.ok:
            print(f"Send failed ({result.error_kind}): {result.error}", file=sys.stderr)
            return 1
        print(f"Sent message {result.message_id} to {result.conversation_id}")
        return 0


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    config = A365Config.from_environment()
    sys.exit(asyncio.run(run(args, config)))


if __name__ == "__main__":
    main()
