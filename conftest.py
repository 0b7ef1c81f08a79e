import asyncio

import pytest
from pyee.asyncio import AsyncIOEventEmitter

from codebeam.errors import NegotiationError, SessionNotFound


def candidate(n, mid="0"):
    return {
        "candidate": f"candidate:{n} 1 udp 2130706431 192.168.1.{n} 5000{n % 10} typ host",
        "sdpMid": mid,
        "sdpMLineIndex": 0,
    }


class FakeChannel(AsyncIOEventEmitter):
    """In-memory stand-in for an aiortc data channel."""

    def __init__(self, label="file-transfer"):
        super().__init__()
        self.label = label
        self.readyState = "connecting"
        self.bufferedAmount = 0
        self.bufferedAmountLowThreshold = 0
        self.sent = []
        self.peer = None
        # grow bufferedAmount on every binary send until drain() is called
        self.accumulate = False

    def send(self, data):
        if self.readyState != "open":
            raise RuntimeError("channel is not open")
        self.sent.append(data)
        if self.accumulate and isinstance(data, bytes):
            self.bufferedAmount += len(data)
        if self.peer is not None:
            asyncio.get_running_loop().call_soon(self.peer.emit, "message", data)

    def open(self):
        self.readyState = "open"
        self.emit("open")

    def drain(self):
        self.bufferedAmount = 0
        self.emit("bufferedamountlow")

    def close(self):
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")

    @property
    def chunks(self):
        return [frame for frame in self.sent if isinstance(frame, bytes)]


class FakeTransport(AsyncIOEventEmitter):
    def __init__(self, local_candidates=()):
        super().__init__()
        self.local_candidates = list(local_candidates)
        self.channel = None
        self.connection_state = "new"
        self.ops = []
        self.closed = False
        self.reject_answer = False

    def create_data_channel(self, label):
        self.channel = FakeChannel(label)
        return self.channel

    def discover(self, *candidates):
        for c in candidates:
            self.emit("candidate", c)

    async def create_offer(self):
        self.discover(*self.local_candidates)
        return {"sdp": "offer-sdp", "type": "offer"}

    async def create_answer(self, offer):
        self.ops.append(("offer", offer))
        self.discover(*self.local_candidates)
        return {"sdp": "answer-sdp", "type": "answer"}

    async def apply_answer(self, answer):
        if self.reject_answer:
            raise NegotiationError("answer rejected")
        self.ops.append(("answer", answer))

    async def add_candidate(self, c):
        self.ops.append(("candidate", c))

    async def close(self):
        self.closed = True

    def set_state(self, state):
        self.connection_state = state
        self.emit("connectionstatechange", state)

    @property
    def added(self):
        return [arg for op, arg in self.ops if op == "candidate"]

    @property
    def answers(self):
        return [arg for op, arg in self.ops if op == "answer"]


class TransportFactory:
    def __init__(self):
        self.local_candidates = []
        self.created = []

    def __call__(self):
        transport = FakeTransport(self.local_candidates)
        self.created.append(transport)
        return transport

    @property
    def last(self):
        return self.created[-1]


class FakeSignaling:
    """Rendezvous client backed by dicts; `hold` pauses the named calls."""

    def __init__(self):
        self.sessions = {}
        self.next_code = "123456"
        self.posted = []
        self.deleted = []
        self.calls = []
        self.hold = {}

    async def _gate(self, name):
        self.calls.append(name)
        event = self.hold.get(name)
        if event is not None:
            await event.wait()

    def add_session(self, code, offer=None):
        self.sessions[code] = {
            "offer": offer or {"sdp": "offer-sdp", "type": "offer"},
            "answer": None,
            "offer_ice": [],
            "answer_ice": [],
        }

    async def create_session(self, offer):
        await self._gate("create_session")
        self.add_session(self.next_code, offer)
        return self.next_code

    async def get_session(self, code):
        await self._gate("get_session")
        if code not in self.sessions:
            raise SessionNotFound(f"Session not found for {code}")
        return self.sessions[code]["offer"]

    async def post_answer(self, code, answer):
        await self._gate("post_answer")
        self.sessions[code]["answer"] = answer

    async def get_answer(self, code):
        await self._gate("get_answer")
        return self.sessions[code]["answer"]

    async def post_ice(self, code, c, origin):
        await self._gate("post_ice")
        self.sessions[code][f"{origin}_ice"].append(c)
        self.posted.append((origin, c))

    async def get_ice(self, code, origin, last_index=0):
        await self._gate("get_ice")
        items = self.sessions[code][f"{origin}_ice"]
        return items[last_index:], len(items)

    async def delete_session(self, code):
        self.deleted.append(code)


async def eventually(condition, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def channel_pair():
    sender, receiver = FakeChannel(), FakeChannel()
    sender.peer, receiver.peer = receiver, sender
    return sender, receiver


@pytest.fixture
def transports():
    return TransportFactory()


@pytest.fixture
def signaling():
    return FakeSignaling()


@pytest.fixture
def statuses():
    events = []

    def record(status, progress=None, error=None):
        events.append((status, progress, error))

    record.events = events
    return record
