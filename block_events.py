"""
Block-applied event sources.

Both sources run in their own daemon thread and hand every new block to the
registered handler (the monitor's queueing callback):

    BlockPoller              polls the chain for its last block
    WebsocketBlockListener   listens on the node's websocket event stream
"""

import asyncio
import json
import logging
import threading
from typing import Callable, Optional

import httpx
import websockets
from websockets.exceptions import WebSocketException

from node_client import NodeApiError
from round_order import BlockData

log = logging.getLogger("round_monitor.events")

Handler = Callable[[BlockData], None]


# ── Poller ────────────────────────────────────────────────────────────────────

class BlockPoller:
    """Poll the last block; report every height passed since the previous poll.

    Gaps larger than *backfill_limit* only report the newest block.
    """

    def __init__(self, chain, interval: float = 1.0, backfill_limit: int = 200):
        self.chain = chain
        self.interval = interval
        self.backfill_limit = backfill_limit
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._handler: Optional[Handler] = None
        self.last_height: Optional[int] = None

    def start(self, handler: Handler) -> None:
        self._handler = handler
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="block-poller")
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def poll_once(self) -> None:
        tip = self.chain.get_last_block()
        last = self.last_height
        self.last_height = tip.height
        if last is None:
            # Blocks applied since the monitor booted are unknown; report the tip.
            self._handler(tip)
            return
        if tip.height <= last:
            return
        if tip.height - last <= self.backfill_limit:
            for height in range(last + 1, tip.height):
                block = self.chain.get_block_at(height)
                if block is not None:
                    self._handler(block)
        self._handler(tip)

    def _run(self) -> None:
        log.info("[poller] watching blocks every %ss", self.interval)
        while not self._stop.is_set():
            try:
                self.poll_once()
            except (httpx.HTTPError, NodeApiError) as e:
                log.warning("[poller] fetch failed: %s", e)
            self._stop.wait(self.interval)


# ── Websocket listener ────────────────────────────────────────────────────────

def parse_block_event(raw) -> Optional[BlockData]:
    """Decode one event frame into a block, or None if it carries no block.

    Binary frames are ``<u32 LE header length><JSON header><JSON payload>``;
    text frames are the JSON payload alone. The block may sit at the top level
    or under ``data`` / ``header``.
    """
    if isinstance(raw, bytes):
        if len(raw) < 4:
            return None
        header_len = int.from_bytes(raw[:4], "little")
        payload_bytes = raw[4 + header_len:]
        if not payload_bytes:
            return None
        text = payload_bytes.decode("utf-8", errors="replace")
    else:
        text = raw
    try:
        payload = json.loads(text)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    block = payload.get("data") or payload.get("header") or payload
    if not isinstance(block, dict) or "height" not in block or "timestamp" not in block:
        return None
    timestamp = block["timestamp"]
    if isinstance(timestamp, dict):
        timestamp = timestamp.get("epoch")
    try:
        return BlockData(
            height=int(block["height"]),
            timestamp=int(timestamp),
            producer_identity=(block.get("generatorPublicKey")
                               or (block.get("generator") or {}).get("publicKey")),
        )
    except (TypeError, ValueError):
        return None


class WebsocketBlockListener:
    """Listen for accepted blocks on a websocket.

    When *subscribe_url* is set, the first frame is a session id which is sent
    back in *session_header* on a GET to *subscribe_url* to start the stream.
    """

    def __init__(
        self,
        ws_url: str,
        subscribe_url: Optional[str] = None,
        session_header: str = "",
        reconnect_delay: float = 5.0,
    ):
        if subscribe_url and not session_header:
            raise ValueError("a session header is required to subscribe")
        self.ws_url = ws_url
        self.subscribe_url = subscribe_url
        self.session_header = session_header
        self.reconnect_delay = reconnect_delay
        self._handler: Optional[Handler] = None
        self._stopping = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._thread: Optional[threading.Thread] = None

    def start(self, handler: Handler) -> None:
        self._handler = handler
        self._stopping = False
        self._thread = threading.Thread(target=self._thread_main, daemon=True, name="block-listener")
        self._thread.start()

    def stop(self) -> None:
        self._stopping = True
        loop, task = self._loop, self._task
        if loop is not None and task is not None and not loop.is_closed():
            loop.call_soon_threadsafe(task.cancel)

    def _thread_main(self) -> None:
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._task = self._loop.create_task(self._main())
        try:
            self._loop.run_until_complete(self._task)
        except asyncio.CancelledError:
            pass
        finally:
            self._loop.close()

    async def _main(self) -> None:
        while not self._stopping:
            try:
                await self._listen()
            except (WebSocketException, OSError, httpx.HTTPError) as e:
                log.warning("[events] %s: %s — reconnecting in %ss", self.ws_url, e, self.reconnect_delay)
            if not self._stopping:
                await asyncio.sleep(self.reconnect_delay)

    async def _listen(self) -> None:
        async with websockets.connect(self.ws_url) as websocket:
            log.info("[events] connected to %s", self.ws_url)
            if self.subscribe_url:
                session_id = await websocket.recv()
                if isinstance(session_id, bytes):
                    session_id = session_id.decode("utf-8", errors="replace")
                async with httpx.AsyncClient(http1=True, http2=False) as http_client:
                    res = await http_client.get(self.subscribe_url,
                                                headers={self.session_header: session_id.strip()})
                    res.raise_for_status()
                log.info("[events] subscribed (session %s)", session_id.strip())
            async for raw in websocket:
                block = parse_block_event(raw)
                if block is not None:
                    self._handler(block)


def create_event_source(events_cfg: dict, chain):
    source = events_cfg.get("source", "poll")
    if source == "websocket":
        if not events_cfg.get("wsUrl"):
            raise ValueError("events.wsUrl is required for the websocket event source")
        return WebsocketBlockListener(
            events_cfg["wsUrl"],
            subscribe_url=events_cfg.get("subscribeUrl") or None,
            session_header=events_cfg.get("sessionHeader") or "",
        )
    if source == "poll":
        return BlockPoller(chain, interval=float(events_cfg.get("pollInterval", 1.0)))
    raise ValueError(f"unknown event source {source!r} (expected 'poll' or 'websocket')")
