import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .config import API_PREFIX, HTTP_TIMEOUT, SERVER_URL
from .errors import SessionNotFound, SignalingError


logger = logging.getLogger(__name__)


class SignalingClient:
    """Async wrapper around the rendezvous HTTP API."""

    def __init__(
        self,
        server: str = SERVER_URL,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = HTTP_TIMEOUT,
    ) -> None:
        self.base = server.rstrip("/") + API_PREFIX
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "SignalingClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._http.request(method, f"{self.base}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise SignalingError(f"{method} {path} failed: {e}") from e
        if response.status_code == 404 and path.startswith(("/session/", "/answer/")):
            raise SessionNotFound(f"Session not found for {path.rsplit('/', 1)[-1]}")
        try:
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise SignalingError(f"{method} {path} returned {response.status_code}") from e
        except ValueError as e:
            raise SignalingError(f"{method} {path} returned invalid JSON") from e

    async def create_session(self, offer: Dict[str, Any]) -> str:
        data = await self._request("POST", "/session", json={"offer": offer})
        if "code" not in data:
            raise SignalingError("Session response carried no code")
        return data["code"]

    async def get_session(self, code: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/session/{code}")
        if not data.get("offer"):
            raise SessionNotFound(f"Session not found for {code}")
        return data["offer"]

    async def post_answer(self, code: str, answer: Dict[str, Any]) -> None:
        await self._request("POST", f"/answer/{code}", json={"answer": answer})

    async def get_answer(self, code: str) -> Optional[Dict[str, Any]]:
        data = await self._request("GET", f"/answer/{code}")
        return data.get("answer")

    async def post_ice(self, code: str, candidate: Dict[str, Any], origin: str) -> None:
        await self._request("POST", f"/ice/{code}", json={"candidate": candidate, "type": origin})

    async def get_ice(self, code: str, origin: str, last_index: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        data = await self._request(
            "GET", f"/ice/{code}", params={"type": origin, "lastIndex": last_index}
        )
        return data.get("candidates", []), data.get("total", last_index)

    async def delete_session(self, code: str) -> None:
        """Drop the session early; the server-side TTL covers any failure here."""
        try:
            await self._request("DELETE", f"/session/{code}")
        except SignalingError as e:
            logger.warning("Session cleanup for %s failed: %s", code, e)
