import asyncio
import inspect
import json
from collections import deque
from typing import Callable, Optional

import websockets
from websockets.exceptions import WebSocketException

from athena.config import TradeConfig
from athena.utils.logger import log

SEND_INTERVAL = 0.1                         # pacing between outbound messages (s)

class DerivTransport:
    """
    Websocket channel to the Deriv API.

    Every outbound payload is stamped with a fresh `req_id` so replies can be
    correlated. Payloads go through a bounded FIFO queue (oldest dropped when
    full) that is flushed with 100 ms pacing while the socket is open and kept
    across reconnects. The handshake messages are sent ahead of the queue on
    every (re)connect.
    """

    def __init__(self, cfg: TradeConfig,
                 on_message: Optional[Callable] = None,
                 handshake: Optional[Callable[[], list]] = None,
                 on_open: Optional[Callable[[], None]] = None,
                 on_close: Optional[Callable[[], None]] = None,
                 connect=websockets.connect):
        self.cfg = cfg
        self.url = f"{cfg.endpoint}?app_id={cfg.app_id}"
        self.on_message = on_message
        self.handshake = handshake
        self.on_open = on_open
        self.on_close = on_close
        self._connect = connect
        self._queue: deque[dict] = deque()
        self._req_id = 0
        self._hold = 0.0
        self._ws = None
        self._wakeup: Optional[asyncio.Event] = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    @property
    def pending(self) -> list[dict]:
        return list(self._queue)

    def next_req_id(self) -> int:
        self._req_id += 1
        return self._req_id

    def _stamp(self, payload: dict) -> dict:
        if "req_id" not in payload:
            payload = {**payload, "req_id": self.next_req_id()}
        return payload

    def send(self, payload: dict) -> int:
        """Queue a request. Returns its req_id."""
        payload = self._stamp(payload)
        self._queue.append(payload)
        while len(self._queue) > self.cfg.max_queue:
            dropped = self._queue.popleft()
            log.warning("Outbound queue full (%d), dropping oldest request %s",
                        self.cfg.max_queue, dropped.get("req_id"))
        if self._wakeup is not None:
            self._wakeup.set()
        return payload["req_id"]

    def discard(self, req_ids) -> int:
        """Remove queued requests by req_id so they are not replayed. Returns how many went."""
        ids = set(req_ids)
        kept = [p for p in self._queue if p.get("req_id") not in ids]
        dropped = len(self._queue) - len(kept)
        if dropped:
            self._queue.clear()
            self._queue.extend(kept)
            log.info("Discarded %d queued request(s)", dropped)
        return dropped

    def backoff(self, seconds: float):
        """Hold the queue for `seconds` before the next send (rate limiting)."""
        self._hold = max(self._hold, float(seconds))
        log.info("⏳ Outbound queue held for %.1fs", seconds)

    # ------------------------------------------------------------------
    async def run(self):
        """Connect, pump messages, reconnect on drops until retries run out or close() is called."""
        self._wakeup = asyncio.Event()
        attempts = 0
        while not self._closing:
            try:
                async with self._connect(self.url, ping_interval=30) as ws:
                    self._ws = ws
                    attempts = 0
                    log.info("🔌 Connected to %s", self.url)
                    await self._session(ws)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                log.warning("Connection lost: %s", e)
            finally:
                if self._ws is not None:
                    self._ws = None
                    self._fire(self.on_close)

            if self._closing:
                break
            attempts += 1
            if attempts > self.cfg.max_retries:
                log.error("❌ Giving up after %d reconnect attempts", self.cfg.max_retries)
                break
            log.info("🔄 Reconnecting in %.0fs (attempt %d/%d)",
                     self.cfg.reconnect_delay, attempts, self.cfg.max_retries)
            await asyncio.sleep(self.cfg.reconnect_delay)

    async def _session(self, ws):
        for payload in (self.handshake() if self.handshake else []):
            await ws.send(json.dumps(self._stamp(payload)))
        self._fire(self.on_open)

        writer = asyncio.create_task(self._writer(ws))
        try:
            async for raw in ws:
                await self._dispatch(raw)
        finally:
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass

    async def _writer(self, ws):
        while True:
            if not self._queue:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            if self._hold > 0:
                hold, self._hold = self._hold, 0.0
                await asyncio.sleep(hold)
                continue
            payload = self._queue[0]
            await ws.send(json.dumps(payload))
            # dequeue only after the send went through so a drop keeps it for replay
            if self._queue and self._queue[0] is payload:
                self._queue.popleft()
            await asyncio.sleep(SEND_INTERVAL)

    async def _dispatch(self, raw):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            log.warning("Dropping malformed message: %s", e)
            return
        if not isinstance(data, dict):
            log.warning("Dropping non-object message: %r", data)
            return
        if self.on_message is None:
            return
        try:
            result = self.on_message(data)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.error("Handler for '%s' failed: %s", data.get("msg_type"), e)

    def _fire(self, hook):
        if hook is None:
            return
        try:
            hook()
        except Exception as e:
            log.error("Connection hook failed: %s", e)

    async def close(self):
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
