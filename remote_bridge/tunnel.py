"""Capture a Cloudflare quick-tunnel URL from cloudflared output.

Pipe the tunnel into this module::

    cloudflared tunnel --url http://localhost:8788 2>&1 | python -m remote_bridge.tunnel

Output is echoed unchanged. The first ``*.trycloudflare.com`` URL seen is
saved to a file, written into the OpenAPI document's server list, and pushed
to the configured notification sinks.
"""

import asyncio
import json
import logging
import os
import re
import socket
import sys
from datetime import datetime, timezone
from typing import Awaitable, Callable, TextIO

import httpx

from remote_bridge.env import (
    BRIDGE_TOKEN,
    EVOLUTION_INSTANCE,
    EVOLUTION_KEY,
    EVOLUTION_URL,
    MEMORY_TOKEN,
    MEMORY_URL,
    NOTIFY_NUMBER,
    TUNNEL_OPENAPI_FILE,
    TUNNEL_URL_FILE,
)
from remote_bridge.log import configure_logging

logger = logging.getLogger(__name__)

TUNNEL_URL_PATTERN = re.compile(r"https://[a-z0-9-]+\.trycloudflare\.com", re.IGNORECASE)

Notifier = Callable[[str], Awaitable[None]]


def update_openapi_server_url(openapi_file: str, tunnel_url: str) -> bool:
    """Point ``servers[0]`` of an existing OpenAPI document at *tunnel_url*."""
    if not os.path.isfile(openapi_file):
        return False
    try:
        with open(openapi_file, encoding="utf-8") as f:
            document = json.load(f)
        servers = document.get("servers")
        if not isinstance(servers, list) or not servers:
            document["servers"] = [
                {"url": tunnel_url, "description": "Bridge server via Cloudflare Tunnel"}
            ]
        else:
            servers[0]["url"] = tunnel_url
        with open(openapi_file, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
    except (OSError, ValueError, TypeError, AttributeError) as e:
        logger.warning("Could not update %s: %s", openapi_file, e)
        return False
    logger.info("OpenAPI servers updated in %s", openapi_file)
    return True


def whatsapp_notifier(client: httpx.AsyncClient) -> Notifier:
    async def notify(tunnel_url: str) -> None:
        text = (
            "*Remote Bridge*\n\n"
            f"New tunnel URL:\n{tunnel_url}\n\n"
            f"Health: {tunnel_url}/health\n"
            f"{datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"
        )
        response = await client.post(
            f"{EVOLUTION_URL.rstrip('/')}/message/sendText/{EVOLUTION_INSTANCE}",
            headers={"apikey": EVOLUTION_KEY},
            json={"number": NOTIFY_NUMBER, "text": text},
        )
        response.raise_for_status()
        logger.info("Tunnel URL sent via WhatsApp to %s", NOTIFY_NUMBER)

    return notify


def memory_notifier(client: httpx.AsyncClient) -> Notifier:
    async def notify(tunnel_url: str) -> None:
        base = MEMORY_URL.rstrip("/")
        headers = {"Authorization": f"Bearer {MEMORY_TOKEN}"}
        host = socket.gethostname()

        response = await client.post(
            f"{base}/bridge/sync",
            headers=headers,
            json={
                "url": tunnel_url,
                "token": BRIDGE_TOKEN,
                "health_url": f"{tunnel_url}/health",
                "source": "cloudflare-quick-tunnel",
                "instance": EVOLUTION_INSTANCE,
                "host": host,
            },
        )
        response.raise_for_status()
        logger.info("Bridge state synced to memory API")

        response = await client.post(
            f"{base}/memory/save",
            headers=headers,
            json={
                "key": "bridge_tunnel_url",
                "type": "config",
                "title": "Bridge Tunnel URL",
                "content": tunnel_url,
                "tags": ["bridge", "tunnel", "config"],
                "metadata": {
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                    "pc_name": host,
                },
            },
        )
        response.raise_for_status()
        logger.info("Tunnel URL saved to memory API")

    return notify


def build_notifiers(client: httpx.AsyncClient) -> list[Notifier]:
    notifiers = []
    if EVOLUTION_URL and EVOLUTION_KEY and EVOLUTION_INSTANCE and NOTIFY_NUMBER:
        notifiers.append(whatsapp_notifier(client))
    if MEMORY_URL and MEMORY_TOKEN:
        notifiers.append(memory_notifier(client))
    return notifiers


class TunnelWatcher:
    def __init__(
        self,
        url_file: str,
        openapi_file: str | None = None,
        notifiers: list[Notifier] | None = None,
        echo: TextIO | None = None,
    ):
        self.url_file = url_file
        self.openapi_file = openapi_file
        self.notifiers = notifiers or []
        self.echo = echo
        self.url: str | None = None
        self._tasks: set[asyncio.Task] = set()

    def feed(self, chunk: str) -> str | None:
        """Scan one chunk of tunnel output. Returns the URL the first time it appears."""
        if self.echo:
            self.echo.write(chunk)
            self.echo.flush()
        if self.url:
            return None
        match = TUNNEL_URL_PATTERN.search(chunk)
        if not match:
            return None

        self.url = match.group(0)
        logger.info("Tunnel URL captured: %s", self.url)
        try:
            with open(self.url_file, "w", encoding="utf-8") as f:
                f.write(self.url)
            logger.info("Tunnel URL saved to %s", self.url_file)
        except OSError as e:
            logger.warning("Could not save tunnel URL to %s: %s", self.url_file, e)
        if self.openapi_file:
            update_openapi_server_url(self.openapi_file, self.url)

        for notifier in self.notifiers:
            task = asyncio.create_task(self._notify(notifier, self.url))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return self.url

    async def _notify(self, notifier: Notifier, tunnel_url: str) -> None:
        try:
            await notifier(tunnel_url)
        except Exception as e:  # noqa: BLE001
            logger.warning("Notification %s failed: %s", getattr(notifier, "__qualname__", notifier), e)

    async def drain(self) -> None:
        """Wait for outstanding notifications."""
        if self._tasks:
            await asyncio.gather(*self._tasks)


async def watch(stream: TextIO, watcher: TunnelWatcher) -> str | None:
    while True:
        line = await asyncio.to_thread(stream.readline)
        if not line:
            break
        watcher.feed(line)
    await watcher.drain()
    logger.info("Tunnel output closed")
    return watcher.url


async def _run() -> None:
    async with httpx.AsyncClient(timeout=15.0) as client:
        watcher = TunnelWatcher(
            TUNNEL_URL_FILE,
            TUNNEL_OPENAPI_FILE,
            notifiers=build_notifiers(client),
            echo=sys.stdout,
        )
        await watch(sys.stdin, watcher)


def main() -> None:
    configure_logging(filename="tunnel.log")
    asyncio.run(_run())


if __name__ == "__main__":
    main()
