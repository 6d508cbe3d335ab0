import asyncio
import json

from athena.config import TradeConfig
from athena.transport import DerivTransport

class FakeSocket:
    """Plays back scripted frames, then stays open briefly so the writer can flush."""

    def __init__(self, frames, linger=0.3):
        self.frames = frames
        self.linger = linger
        self.sent: list[dict] = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def send(self, raw):
        self.sent.append(json.loads(raw))

    async def close(self):
        self.closed = True

    async def __aiter__(self):
        for frame in self.frames:
            yield frame
        await asyncio.sleep(self.linger)

def _offline_cfg(**kw):
    return TradeConfig(max_retries=0, reconnect_delay=0, **kw)

def test_send_stamps_increasing_req_ids():
    t = DerivTransport(_offline_cfg())
    ids = [t.send({"ticks": "R_10"}) for _ in range(3)]
    assert ids == [1, 2, 3]
    assert [p["req_id"] for p in t.pending] == [1, 2, 3]
    assert t.send({"ping": 1, "req_id": 99}) == 99

def test_queue_is_bounded_and_drops_oldest():
    t = DerivTransport(_offline_cfg(max_queue=3))
    for i in range(5):
        t.send({"n": i})
    assert [p["n"] for p in t.pending] == [2, 3, 4]
    assert not t.is_open

def test_url_carries_app_id():
    assert DerivTransport(_offline_cfg(app_id=1234)).url.endswith("?app_id=1234")

def test_session_sends_handshake_then_queue_and_dispatches():
    frames = [
        json.dumps({"msg_type": "authorize", "authorize": {"balance": 10}}),
        "not json",
        json.dumps([1, 2, 3]),
        json.dumps({"msg_type": "tick", "tick": {"quote": 1.0}}),
    ]
    socket = FakeSocket(frames)
    received, hooks = [], []

    async def on_message(data):
        received.append(data["msg_type"])

    t = DerivTransport(
        _offline_cfg(),
        on_message=on_message,
        handshake=lambda: [{"authorize": "token"}],
        on_open=lambda: hooks.append("open"),
        on_close=lambda: hooks.append("close"),
        connect=lambda url, **kw: socket,
    )
    t.send({"balance": 1})
    asyncio.run(t.run())

    assert received == ["authorize", "tick"]
    assert hooks == ["open", "close"]
    assert list(socket.sent[0]) == ["authorize", "req_id"]
    assert socket.sent[1]["balance"] == 1
    assert t.pending == []

def test_failed_connects_give_up_after_retries():
    attempts = []

    def refuse(url, **kw):
        attempts.append(url)
        raise OSError("connection refused")

    t = DerivTransport(TradeConfig(max_retries=2, reconnect_delay=0), connect=refuse)
    asyncio.run(t.run())
    assert len(attempts) == 3

def test_discard_removes_only_named_requests():
    t = DerivTransport(_offline_cfg())
    keep = t.send({"ticks": "R_10"})
    drop = t.send({"buy": "p1", "price": 1})
    assert t.discard([drop, 999]) == 1
    assert [p["req_id"] for p in t.pending] == [keep]
    assert t.discard([]) == 0
