"""
aiortc-backed peer transport.

aiortc gathers every local candidate inside setLocalDescription and embeds
them in the description. The transport re-announces each of those lines as a
`candidate` event so the connection manager can trickle them through the
rendezvous service exactly like a browser would.

Events: `candidate` (dict), `connectionstatechange` (str), `datachannel`.
"""

import logging
from typing import Any, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

from .config import ICE_SERVERS
from .errors import NegotiationError


logger = logging.getLogger(__name__)


def description_to_dict(description: RTCSessionDescription) -> Dict[str, str]:
    return {"sdp": description.sdp, "type": description.type}


def description_from_dict(data: Dict[str, Any], expected: str) -> RTCSessionDescription:
    if not isinstance(data, dict) or data.get("type") != expected or not data.get("sdp"):
        raise NegotiationError(f"Malformed {expected} description")
    return RTCSessionDescription(sdp=data["sdp"], type=data["type"])


def candidates_from_sdp(sdp: str) -> List[Dict[str, Any]]:
    """List the `a=candidate` lines of a description in browser JSON form."""
    sections: List[Dict[str, Any]] = []
    for line in sdp.splitlines():
        line = line.strip()
        if line.startswith("m="):
            sections.append({"mid": None, "candidates": []})
        elif sections and line.startswith("a=mid:"):
            sections[-1]["mid"] = line[len("a=mid:"):]
        elif sections and line.startswith("a=candidate:"):
            sections[-1]["candidates"].append(line[len("a="):])

    result = []
    for index, section in enumerate(sections):
        for candidate in section["candidates"]:
            result.append(
                {"candidate": candidate, "sdpMid": section["mid"], "sdpMLineIndex": index}
            )
    return result


class RtcTransport(AsyncIOEventEmitter):
    def __init__(self, ice_servers: Optional[List[str]] = None) -> None:
        super().__init__()
        urls = ICE_SERVERS if ice_servers is None else ice_servers
        configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in urls])
        self._pc = RTCPeerConnection(configuration=configuration)
        self._known_remote: set = set()

        @self._pc.on("connectionstatechange")
        def on_connection_state() -> None:
            self.emit("connectionstatechange", self._pc.connectionState)

        @self._pc.on("datachannel")
        def on_datachannel(channel) -> None:
            self.emit("datachannel", channel)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    def create_data_channel(self, label: str):
        return self._pc.createDataChannel(label, ordered=True)

    async def create_offer(self) -> Dict[str, str]:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        self._announce_candidates()
        return description_to_dict(self._pc.localDescription)

    async def create_answer(self, offer: Dict[str, Any]) -> Dict[str, str]:
        await self._set_remote(description_from_dict(offer, "offer"))
        try:
            answer = await self._pc.createAnswer()
            await self._pc.setLocalDescription(answer)
        except (InvalidStateError, InvalidAccessError, ValueError) as e:
            raise NegotiationError(f"Could not answer offer: {e}") from e
        self._announce_candidates()
        return description_to_dict(self._pc.localDescription)

    async def apply_answer(self, answer: Dict[str, Any]) -> None:
        await self._set_remote(description_from_dict(answer, "answer"))

    async def add_candidate(self, candidate: Dict[str, Any]) -> None:
        line = candidate.get("candidate") or ""
        if not line:
            # empty candidate string marks end-of-candidates
            return
        if line in self._known_remote:
            return
        body = line.split(":", 1)[-1]
        if len(body.split()) < 8:
            raise NegotiationError(f"Malformed remote candidate: {line!r}")
        self._known_remote.add(line)

        ice_candidate = candidate_from_sdp(body)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        try:
            await self._pc.addIceCandidate(ice_candidate)
        except ValueError as e:
            # a peer that already signalled end-of-candidates refuses late ones
            logger.warning("Remote candidate rejected: %s", e)

    async def close(self) -> None:
        await self._pc.close()

    async def _set_remote(self, description: RTCSessionDescription) -> None:
        try:
            await self._pc.setRemoteDescription(description)
        except (InvalidStateError, InvalidAccessError, ValueError) as e:
            raise NegotiationError(f"Remote {description.type} rejected: {e}") from e
        self._known_remote.update(c["candidate"] for c in candidates_from_sdp(description.sdp))

    def _announce_candidates(self) -> None:
        candidates = candidates_from_sdp(self._pc.localDescription.sdp)
        logger.debug("Announcing %d local candidates", len(candidates))
        for candidate in candidates:
            self.emit("candidate", candidate)
