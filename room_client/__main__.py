from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path

from room_shared.protocol import DEFAULT_CONTROL_PORT, RoomAction

from .room_client import RoomClient

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  /file PATH            send a file in one message
  /chunk PATH           send a file in chunks
  /time MINUTES REF     extend the room timer after payment REF
  /refresh | /ping      notify the room
  /leave                leave the room
  /quit                 disconnect
Anything else is sent as a chat message."""


def _print_event(action: RoomAction, payload: dict) -> None:
    if action == RoomAction.MESSAGE:
        sender = payload.get("sender") or {}
        print(f"{sender.get('name') or sender.get('userid')}: {payload.get('message')}")
    elif action == RoomAction.TIMER_UPDATE:
        timer = int(payload.get("timer", 0))
        print(f"[timer] {timer // 60}:{timer % 60:02d}")
    else:
        print(f"[{action.value}] {json.dumps(payload)}")


async def run(args: argparse.Namespace) -> None:
    disconnected = asyncio.Event()
    client = RoomClient(
        args.server_host,
        args.port,
        on_message=_print_event,
        on_disconnect=lambda reason: disconnected.set(),
    )
    await client.connect()
    sender = {"userid": args.userid, "name": args.name, "role": args.role}
    await client.join(args.room, args.userid, args.name, args.role, queue=args.queue)
    print(HELP_TEXT)

    loop = asyncio.get_running_loop()
    try:
        while not disconnected.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            command, _, rest = line.partition(" ")
            if command == "/quit":
                break
            if command == "/leave":
                await client.leave()
            elif command == "/refresh":
                await client.trigger_refresh(args.room)
            elif command == "/ping":
                await client.trigger_ping(args.room)
            elif command == "/time":
                minutes, _, reference = rest.partition(" ")
                await client.add_time(args.room, int(minutes), reference.strip())
            elif command in ("/file", "/chunk"):
                path = Path(rest.strip())
                data = path.read_bytes()
                if command == "/file":
                    await client.send_file(args.room, path.name, data, {**sender, "mid": uuid.uuid4().hex})
                else:
                    await client.send_file_chunked(args.room, path.name, data, {**sender, "mid": uuid.uuid4().hex})
            else:
                await client.send_chat(args.room, line, {**sender, "mid": uuid.uuid4().hex})
    finally:
        await client.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Room coordinator command line client")
    parser.add_argument("server_host", help="Hostname or IP of the room server")
    parser.add_argument("--port", type=int, default=DEFAULT_CONTROL_PORT, help="Server TCP port")
    parser.add_argument("--room", required=True, help="Room to join")
    parser.add_argument("--userid", default=None, help="User id (random when omitted)")
    parser.add_argument("--name", default="guest", help="Display name")
    parser.add_argument("--role", default="user", choices=["user", "consultant", "admin"], help="Member role")
    parser.add_argument("--queue", action="store_true", help="Join as a two-seat queue room")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    args = parser.parse_args()
    args.userid = args.userid or uuid.uuid4().hex[:12]

    log_level = getattr(logging, str(args.log_level).upper(), logging.WARNING)
    logging.basicConfig(
        level=log_level,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
