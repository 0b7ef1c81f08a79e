"""
Connection manager: turns a rendezvous code into an open data channel.

Each start_* call builds a fresh PeerLink that owns everything belonging to
that attempt. Anything arriving for a link that is no longer alive (a poll
response after stop(), a transport event after a failure) is dropped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from .config import CHUNK_SIZE, DATA_CHANNEL_LABEL, POLL_INTERVAL
from .errors import NegotiationError, P2PError, ReadError, SignalingError, TransportError
from .negotiation import Negotiation, NegotiationState
from .polling import RepeatingTask
from .rtc import RtcTransport
from .signaling import SignalingClient
from .transfer import FileCallback, FileReceiver, FileSender, StatusCallback


logger = logging.getLogger(__name__)


class Role(str, Enum):
    SENDER = "sender"
    RECEIVER = "receiver"

    @property
    def origin(self) -> str:
        """Candidate list this role publishes to."""
        return "offer" if self is Role.SENDER else "answer"

    @property
    def remote_origin(self) -> str:
        return "answer" if self is Role.SENDER else "offer"


class LinkState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    WAITING_PEER = "waiting-peer"
    CONNECTED = "connected"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STATES = (LinkState.COMPLETED, LinkState.ERROR)


@dataclass
class PeerLink:
    role: Role
    code: Optional[str] = None
    transport: Any = None
    channel: Any = None
    job: Any = None
    state: LinkState = LinkState.IDLE
    connection_state: str = "new"
    negotiation: Negotiation = field(default_factory=Negotiation)
    # local candidates discovered before a code exists
    ice_buffer: List[Dict[str, Any]] = field(default_factory=list)
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    # remote candidates waiting for the remote description
    remote_candidates: List[Dict[str, Any]] = field(default_factory=list)
    last_index: int = 0
    pollers: List[RepeatingTask] = field(default_factory=list)
    uploader: Optional[asyncio.Task] = None
    error: Optional[Exception] = None
    alive: bool = True
    flushing: bool = False
    closed: bool = False


class ConnectionManager:
    def __init__(
        self,
        signaling: SignalingClient,
        on_status: Optional[StatusCallback] = None,
        on_file: Optional[FileCallback] = None,
        transport_factory: Callable[[], Any] = RtcTransport,
        poll_interval: float = POLL_INTERVAL,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self.signaling = signaling
        self.on_status = on_status
        self.on_file = on_file
        self.transport_factory = transport_factory
        self.poll_interval = poll_interval
        self.chunk_size = chunk_size
        self.link: Optional[PeerLink] = None
        self._tasks: Set[asyncio.Task] = set()

    # --- Public API ---

    async def start_sender(self, path: Path) -> Optional[str]:
        """Publish an offer for `path` and return the rendezvous code."""
        link = self._new_link(Role.SENDER)
        self._report(link, LinkState.INITIALIZING)
        try:
            path = Path(path)
            if not path.is_file():
                raise ReadError(f"File not found: {path}")

            link.transport = self._create_transport(link)
            link.channel = link.transport.create_data_channel(DATA_CHANNEL_LABEL)
            link.job = FileSender(
                link.channel,
                path,
                lambda *args: self._on_transfer_status(link, *args),
                chunk_size=self.chunk_size,
            )

            offer = await link.transport.create_offer()
            link.negotiation.fire("local_offer")
            code = await self.signaling.create_session(offer)
            if not link.alive:
                return None

            logger.info("[sender] Session code %s", code)
            self._report(link, LinkState.WAITING_PEER)
            self._assign_code(link, code)
            self._start_polling(
                link,
                RepeatingTask(lambda: self._poll_answer(link), self.poll_interval, "answer-poll"),
                RepeatingTask(lambda: self._poll_ice(link), self.poll_interval, "ice-poll"),
            )
            return code
        except Exception as e:
            self._fail(link, e)
            return None

    async def start_receiver(self, code: str) -> None:
        """Join the session published under `code`."""
        link = self._new_link(Role.RECEIVER)
        self._report(link, LinkState.INITIALIZING)
        try:
            offer = await self.signaling.get_session(code)
            if not link.alive:
                return

            link.transport = self._create_transport(link)
            answer = await link.transport.create_answer(offer)
            link.negotiation.fire("remote_offer")
            link.negotiation.fire("local_answer")
            await self.signaling.post_answer(code, answer)
            if not link.alive:
                return

            self._report(link, LinkState.WAITING_PEER)
            self._assign_code(link, code)
            self._start_polling(
                link,
                RepeatingTask(lambda: self._poll_ice(link), self.poll_interval, "ice-poll"),
            )
        except Exception as e:
            self._fail(link, e)

    async def stop(self) -> None:
        """Tear down the current attempt. Safe to call in any state, repeatedly."""
        link, self.link = self.link, None
        if link is None:
            return
        self._halt(link)
        await self._close(link)

    # --- Attempt lifecycle ---

    def _new_link(self, role: Role) -> PeerLink:
        if self.link is not None and self.link.alive:
            raise RuntimeError("An attempt is already running; call stop() first")
        self.link = PeerLink(role=role)
        return self.link

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _report(
        self,
        link: PeerLink,
        state: LinkState,
        progress: Optional[int] = None,
        error: Optional[Exception] = None,
    ) -> None:
        if not link.alive or link.state in TERMINAL_STATES:
            return
        link.state = state
        if self.on_status is not None:
            self.on_status(state.value, progress, error)

    def _fail(self, link: PeerLink, error: Exception) -> None:
        if not link.alive or link.state in TERMINAL_STATES:
            return
        if isinstance(error, P2PError):
            logger.error("[%s] %s: %s", link.role.value, type(error).__name__, error)
        else:
            logger.error("[%s] Unexpected error: %s", link.role.value, error, exc_info=error)
            error = P2PError(str(error))
        link.error = error
        self._report(link, LinkState.ERROR, error=error)
        self._halt(link)
        self._spawn(self._close(link))

    def _halt(self, link: PeerLink) -> None:
        link.alive = False
        self._stop_signaling(link)
        if link.job is not None:
            link.job.cancel()
        link.ice_buffer.clear()
        link.remote_candidates.clear()
        link.last_index = 0
        link.negotiation.fire("close")

    async def _close(self, link: PeerLink) -> None:
        if link.closed:
            return
        link.closed = True
        if link.channel is not None:
            link.channel.close()
        if link.transport is not None:
            await link.transport.close()

    def _stop_signaling(self, link: PeerLink) -> None:
        for poller in link.pollers:
            poller.cancel()
        link.pollers = []
        if link.uploader is not None:
            link.uploader.cancel()
            link.uploader = None

    # --- Transport events ---

    def _create_transport(self, link: PeerLink):
        transport = self.transport_factory()
        transport.on("candidate", lambda candidate: self._on_local_candidate(link, candidate))
        transport.on("connectionstatechange", lambda state: self._on_connection_state(link, state))
        if link.role is Role.RECEIVER:
            transport.on("datachannel", lambda channel: self._on_datachannel(link, channel))
        return transport

    def _on_connection_state(self, link: PeerLink, state: str) -> None:
        if not link.alive:
            return
        link.connection_state = state
        logger.info("[%s] Connection state: %s", link.role.value, state)

        if state == "connected":
            self._stop_signaling(link)
            # the data channel may already have moved the link on to transferring
            if link.state in (LinkState.INITIALIZING, LinkState.WAITING_PEER):
                self._report(link, LinkState.CONNECTED)
            if link.code is not None:
                self._spawn(self.signaling.delete_session(link.code))
        elif state == "closed":
            self._stop_signaling(link)
            if link.state in (LinkState.CONNECTED, LinkState.TRANSFERRING):
                self._fail(link, TransportError("Connection closed before the transfer completed"))
        elif state == "failed":
            self._fail(link, TransportError("Peer connection failed"))

    def _on_datachannel(self, link: PeerLink, channel) -> None:
        if not link.alive:
            return
        logger.info("[receiver] Data channel %s announced", channel.label)
        link.channel = channel
        link.job = FileReceiver(
            channel,
            lambda *args: self._on_transfer_status(link, *args),
            self.on_file,
        )

    def _on_transfer_status(
        self,
        link: PeerLink,
        status: str,
        progress: Optional[int] = None,
        error: Optional[Exception] = None,
    ) -> None:
        if status == LinkState.ERROR.value:
            self._fail(link, error)
        else:
            self._report(link, LinkState(status), progress)

    # --- Local candidates ---

    def _on_local_candidate(self, link: PeerLink, candidate: Dict[str, Any]) -> None:
        if not link.alive:
            return
        if link.code is None:
            link.ice_buffer.append(candidate)
        else:
            link.outbox.put_nowait(candidate)

    def _assign_code(self, link: PeerLink, code: str) -> None:
        link.code = code
        if link.ice_buffer:
            logger.info("[%s] Flushing %d ICE candidates", link.role.value, len(link.ice_buffer))
        for candidate in link.ice_buffer:
            link.outbox.put_nowait(candidate)
        link.ice_buffer.clear()
        link.uploader = self._spawn(self._upload_candidates(link))

    async def _upload_candidates(self, link: PeerLink) -> None:
        # single consumer keeps the server-side list in discovery order
        while link.alive:
            candidate = await link.outbox.get()
            try:
                await self.signaling.post_ice(link.code, candidate, link.role.origin)
            except SignalingError as e:
                self._fail(link, e)
                return

    # --- Polling ---

    def _start_polling(self, link: PeerLink, *pollers: RepeatingTask) -> None:
        for poller in pollers:
            poller.on_error = lambda e: self._fail(link, e)
            link.pollers.append(poller.start())

    async def _poll_answer(self, link: PeerLink):
        if not link.alive or link.negotiation.state is NegotiationState.STABLE:
            return RepeatingTask.STOP
        answer = await self.signaling.get_answer(link.code)
        if not link.alive:
            return RepeatingTask.STOP
        if answer is None:
            return None

        if not link.negotiation.begin_answer():
            logger.debug("Negotiation already stable, skipping redundant answer")
            return RepeatingTask.STOP
        logger.info("[sender] Got answer")
        try:
            await link.transport.apply_answer(answer)
        except NegotiationError:
            link.negotiation.fire("answer_failed")
            raise
        if not link.alive:
            return RepeatingTask.STOP
        link.negotiation.fire("answer_applied")
        await self._flush_remote_candidates(link)
        return RepeatingTask.STOP

    async def _poll_ice(self, link: PeerLink):
        if not link.alive or link.connection_state in ("connected", "closed"):
            return RepeatingTask.STOP
        candidates, total = await self.signaling.get_ice(
            link.code, link.role.remote_origin, link.last_index
        )
        if not link.alive:
            return RepeatingTask.STOP
        link.last_index = total
        if candidates:
            logger.info("[%s] Got %d remote ICE candidates", link.role.value, len(candidates))
            link.remote_candidates.extend(candidates)
            await self._flush_remote_candidates(link)
        return None

    async def _flush_remote_candidates(self, link: PeerLink) -> None:
        if link.flushing or not link.negotiation.remote_description_set:
            return
        link.flushing = True
        try:
            while link.remote_candidates and link.alive:
                candidate = link.remote_candidates.pop(0)
                await link.transport.add_candidate(candidate)
        finally:
            link.flushing = False
