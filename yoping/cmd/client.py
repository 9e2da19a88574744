from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

import websockets
from websockets.asyncio.client import ClientConnection, connect

from yoping.core import proto

log = logging.getLogger("yoping.cmd.client")


class YoClient:
    """Joins as `user`, optionally sends Yos, and prints whatever the server pushes."""

    def __init__(self, server_url: str, user: str, push_token: Optional[str] = None) -> None:
        self.server_url = server_url
        self.user = user
        self.push_token = push_token
        self.ws: Optional[ClientConnection] = None

    async def join(self) -> None:
        payload: Any = self.user
        if self.push_token:
            payload = {"username": self.user, "expoPushToken": self.push_token}
        await self._send(proto.EV_JOIN, payload)

    async def send_yo(self, to_user: str) -> Dict[str, Any]:
        await self._send(proto.EV_SEND_YO, {"fromUser": self.user, "toUser": to_user})
        while True:
            frame = await self._recv()
            if frame.event == proto.EV_YO_SENT:
                return frame.data
            self._print(frame)

    async def listen(self) -> None:
        try:
            while True:
                self._print(await self._recv())
        except websockets.ConnectionClosed:
            pass

    async def _send(self, event: str, data: Any) -> None:
        assert self.ws is not None
        await self.ws.send(proto.encode_frame(event, data))

    async def _recv(self) -> proto.Frame:
        assert self.ws is not None
        while True:
            raw = await self.ws.recv()
            try:
                return proto.decode_frame(raw)
            except proto.ProtocolError:
                log.warning("Dropped invalid frame: %s", raw)

    @staticmethod
    def _print(frame: proto.Frame) -> None:
        if frame.event == proto.EV_YO_RECEIVED:
            print(f"Yo from {frame.data.get('from')}! (total {frame.data.get('totalYos')})")
        elif frame.event == proto.EV_USER_ONLINE:
            print(f"{frame.data} is online")
        elif frame.event == proto.EV_USER_OFFLINE:
            print(f"{frame.data} went offline")
        elif frame.event == proto.EV_ERROR:
            print(f"ERROR ({frame.data.get('code')}): {frame.data.get('detail')}")
        else:
            print(f"{frame.event}: {json.dumps(frame.data)}")


async def _run(args: argparse.Namespace) -> int:
    client = YoClient(args.url, args.user, args.push_token)
    async with connect(args.url) as ws:
        client.ws = ws
        await client.join()
        if args.to:
            reply = await client.send_yo(args.to)
            if reply.get("success"):
                print(f"Yo sent to {args.to}")
            else:
                print(f"Yo to {args.to} failed: {reply.get('error') or reply.get('reason')}")
                return 1
        if args.listen:
            await client.listen()
    return 0


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Yo test client")
    parser.add_argument("--url", default="ws://127.0.0.1:3000", help="Server WebSocket URL")
    parser.add_argument("--user", required=True, help="Username to join as")
    parser.add_argument("--push-token", help="Expo push token to register on join")
    parser.add_argument("--to", help="Send a Yo to this user")
    parser.add_argument("--listen", action="store_true", help="Stay connected and print incoming events")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
