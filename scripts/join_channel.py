#!/usr/bin/env python3
"""
Join a presence channel from the terminal and print each channel event.

Usage:
    python scripts/join_channel.py --key APP_KEY --cluster us2 \\
        --endpoint http://localhost:8000/api/auth-pusher --name Alice --password secret

The identity is kept in a JSON session file (default .presence-session.json)
so repeated runs reuse the same uuid.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from presence_chat.identity import IdentityStore, JsonFileStorage  # noqa: E402
from presence_chat.pusher_client import PusherClient  # noqa: E402
from presence_chat.session import SubscriptionSession  # noqa: E402

logger = logging.getLogger("join_channel")

DEFAULT_CHANNEL = "presence-main"


async def join(args) -> int:
    identity = IdentityStore(JsonFileStorage(args.session_file)).get_or_create()
    logger.info("Using identity %s", identity)

    def client_factory(auth_params: dict) -> PusherClient:
        return PusherClient(
            args.key,
            cluster=args.cluster,
            auth_endpoint=args.endpoint,
            auth_params=auth_params,
        )

    session = SubscriptionSession(args.channel, client_factory, timeout=args.timeout)
    session.connect({"password": args.password, "name": args.name, "uuid": identity})

    exit_code = 0
    try:
        async for event in session.events:
            print(json.dumps(event.model_dump(), indent=2))
            if event.event == "pusher:subscription_error":
                exit_code = 1
                break
            if not args.follow:
                break
    finally:
        pending = session.close()
        if pending is not None:
            await pending
    return exit_code


def main():
    import argparse
    parser = argparse.ArgumentParser(description="Join a presence channel and print its events")
    parser.add_argument("--key", required=True, help="Pusher app key")
    parser.add_argument("--cluster", required=True, help="Pusher cluster, e.g. us2")
    parser.add_argument("--endpoint", required=True, help="Auth endpoint URL")
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument("--password", required=True, help="Shared password")
    parser.add_argument("--channel", default=DEFAULT_CHANNEL)
    parser.add_argument("--timeout", type=float, default=10.0,
                        help="Seconds to wait for the subscription outcome")
    parser.add_argument("--session-file", default=".presence-session.json")
    parser.add_argument("--follow", action="store_true",
                        help="Keep running after the subscription succeeds")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        sys.exit(asyncio.run(join(args)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
