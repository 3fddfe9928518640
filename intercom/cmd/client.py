from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from intercom.utils import jsonenc

log = logging.getLogger("intercom.cmd.client")

MessageFn = Callable[[Dict[str, Any]], Optional[Awaitable[None]]]


class IntercomError(Exception):
    """Non-200 reply from the signaling server."""

    def __init__(self, status: int, reason: str) -> None:
        super().__init__(f"{status} {reason}")
        self.status = status
        self.reason = reason


class IntercomClient:
    """Long-poll client for the intercom signaling server.

    Every call is one short request. wait() is the only one that may hang;
    the caller bounds it with a timeout and simply polls again, which is how
    delivery is retried.
    """

    def __init__(
        self,
        server_url: str,
        *,
        user_id: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.server_url = server_url.rstrip("/") + "/"
        self.user_id = user_id
        self.name: Optional[str] = None
        self.users: List[Dict[str, Any]] = []
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "IntercomClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def register(self, name: str) -> Dict[str, Any]:
        params = {"register": name}
        if self.user_id:
            params["id"] = self.user_id
        data = await self._request(params) or {}
        me = data.get("self", {})
        self.user_id = me.get("id", self.user_id)
        self.name = me.get("name", name)
        self.users = data.get("all_users", [])
        return data

    async def unregister(self) -> None:
        if not self.user_id:
            return
        await self._request({"unregister": self.user_id})
        self.user_id = None

    async def offer(self, name: str, offer: str) -> None:
        await self._request({"id": self._require_id(), "offer": offer, "name": name})

    async def answer(self, name: str, answer: str) -> None:
        await self._request({"id": self._require_id(), "answer": answer, "name": name})

    async def reject(self, name: str) -> None:
        await self._request({"id": self._require_id(), "reject": name})

    async def wait(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """One long-poll. A client-side timeout yields an empty batch."""
        try:
            data = await self._request({"wait": self._require_id()}, timeout=timeout)
        except asyncio.TimeoutError:
            return []
        return (data or {}).get("messages", [])

    async def poll_forever(self, on_message: MessageFn, *, timeout: float = 30.0, backoff: float = 1.0) -> None:
        while True:
            try:
                messages = await self.wait(timeout)
            except IntercomError as exc:
                if exc.status == 400:
                    raise
                log.warning("wait failed: %s", exc)
                await asyncio.sleep(backoff)
                continue
            except aiohttp.ClientError as exc:
                log.warning("wait failed: %s", exc)
                await asyncio.sleep(backoff)
                continue
            for message in messages:
                self._track_directory(message)
                result = on_message(message)
                if result is not None:
                    await result

    async def close(self) -> None:
        if self.user_id:
            try:
                await self.unregister()
            except (IntercomError, aiohttp.ClientError) as exc:
                log.warning("unregister on close failed: %s", exc)
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    def _require_id(self) -> str:
        if not self.user_id:
            raise RuntimeError("not registered")
        return self.user_id

    def _track_directory(self, message: Dict[str, Any]) -> None:
        users = message.get("all_users")
        if isinstance(users, list):
            self.users = users

    async def _request(self, params: Dict[str, str], *, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        extra: Dict[str, Any] = {}
        if timeout:
            extra["timeout"] = aiohttp.ClientTimeout(total=timeout)
        async with self._session.post(
            self.server_url,
            data=urlencode(params),
            headers={"Content-Type": "text/plain; charset=utf-8"},
            **extra,
        ) as resp:
            if resp.status != 200:
                raise IntercomError(resp.status, resp.reason or "")
            text = await resp.text()
        return jsonenc.loads(text) if text else None


# ---------------------------------------------------------------------------
# Interactive CLI
# ---------------------------------------------------------------------------

class ClientApp:
    def __init__(self, client: IntercomClient, name: str, wait_timeout: float) -> None:
        self.client = client
        self.name = name
        self.wait_timeout = wait_timeout
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        await self.client.register(self.name)
        self._print_users()
        poller = asyncio.create_task(self._poll())
        try:
            await self._command_loop()
        finally:
            self.stop_event.set()
            poller.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await poller

    async def _poll(self) -> None:
        try:
            await self.client.poll_forever(self._on_message, timeout=self.wait_timeout)
        except IntercomError as exc:
            print(f"ERROR: {exc}")
        finally:
            self.stop_event.set()

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print("Intercom ready. Commands: /list, /offer <name> <text>, /answer <name> <text>, /reject <name>, /rename <name>, /quit")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            try:
                await self._handle_command(line)
            except IntercomError as exc:
                print(f"ERROR: {exc}")

    async def _handle_command(self, line: str) -> None:
        parts = line.split(" ", 2)
        cmd = parts[0]
        if cmd == "/list":
            self._print_users()
        elif cmd == "/offer" and len(parts) == 3:
            await self.client.offer(parts[1], parts[2])
        elif cmd == "/answer" and len(parts) == 3:
            await self.client.answer(parts[1], parts[2])
        elif cmd == "/reject" and len(parts) >= 2:
            await self.client.reject(parts[1])
        elif cmd == "/rename" and len(parts) >= 2:
            await self.client.register(line.split(" ", 1)[1])
            self._print_users()
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print("Unknown command")

    def _on_message(self, message: Dict[str, Any]) -> None:
        if "offer" in message:
            print(f"[offer from {message.get('name')}] {message['offer']}")
        elif "answer" in message:
            print(f"[answer from {message.get('name')}] {message['answer']}")
        elif "reject" in message:
            print(f"[rejected by {message['reject'].get('name')}]")
        elif "self" in message:
            me = message["self"]
            if "old_name" in me:
                print(f"[renamed] {me['old_name']} -> {me.get('name')}")
            else:
                print(f"[joined] {me.get('name')}")
        elif "unregister" in message:
            print(f"[left] {message['unregister'].get('name')}")
        else:
            log.debug("Unhandled message %s", message)

    def _print_users(self) -> None:
        names = ", ".join(u.get("name", "?") for u in self.client.users)
        print(f"Online: {names}")


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Intercom long-poll client")
    parser.add_argument("--server", required=True, help="http://host:port of the intercom server")
    parser.add_argument("--name", required=True, help="Display name to register")
    parser.add_argument("--id", dest="user_id", default=None, help="Reuse an existing user id")
    parser.add_argument("--wait-timeout", type=float, default=30.0, help="Seconds before a long-poll is retried")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    async with IntercomClient(args.server, user_id=args.user_id) as client:
        app = ClientApp(client, args.name, args.wait_timeout)
        await app.run()


def run(argv: list[str] | None = None) -> None:
    asyncio.run(main(argv))


if __name__ == "__main__":
    run()
