import heapq
import logging
import os
import random
import threading
import time
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)

SESSION_TTL = int(os.getenv("CODEBEAM_SESSION_TTL", "3600"))
CODE_ATTEMPTS = int(os.getenv("CODEBEAM_CODE_ATTEMPTS", "5"))
CORS_ORIGINS = os.getenv("CODEBEAM_CORS_ORIGINS", "*").split(",")
PREFIX = "p2p_"

Origin = Literal["offer", "answer"]


class SessionNotFound(Exception):
    pass


class CodeSpaceExhausted(Exception):
    pass


# --- Models ---
class CreateSessionRequest(BaseModel):
    offer: Optional[Dict[str, Any]] = None


class AnswerRequest(BaseModel):
    answer: Optional[Dict[str, Any]] = None


class IceRequest(BaseModel):
    candidate: Optional[Dict[str, Any]] = None
    type: Optional[Origin] = None


# --- Store ---
class TTLStore:
    """Key/value store where every put carries its own expiry.

    Expiry times sit in a heap so each write also evicts whatever has
    fallen due, whether or not anyone reads those keys again.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[float, Any]] = {}
        self._expiries: List[Tuple[float, str]] = []
        self._lock = threading.RLock()

    def put(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self.sweep()
            expires_at = self._clock() + ttl
            self._data[key] = (expires_at, value)
            heapq.heappush(self._expiries, (expires_at, key))

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._data[key]
                return None
            return value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def sweep(self) -> int:
        """Drop every entry whose expiry has passed; return how many went."""
        removed = 0
        with self._lock:
            now = self._clock()
            while self._expiries and self._expiries[0][0] <= now:
                expires_at, key = heapq.heappop(self._expiries)
                entry = self._data.get(key)
                # a later put may have refreshed the key
                if entry is not None and entry[0] == expires_at:
                    del self._data[key]
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._data)


def generate_code() -> str:
    return str(random.randint(100000, 999999))


class RendezvousStore:
    """Per-code offer, answer and two ordered candidate lists."""

    def __init__(
        self,
        kv: Optional[TTLStore] = None,
        ttl: float = SESSION_TTL,
        attempts: int = CODE_ATTEMPTS,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        self.kv = kv if kv is not None else TTLStore()
        self.ttl = ttl
        self.attempts = attempts
        self.code_factory = code_factory
        # endpoints run in the threadpool; read-modify-write must not interleave
        self._lock = threading.Lock()

    @staticmethod
    def _key(kind: str, code: str) -> str:
        return f"{PREFIX}{kind}_{code}"

    def create_session(self, offer: Dict[str, Any]) -> str:
        with self._lock:
            for _ in range(self.attempts):
                code = self.code_factory()
                if self.kv.get(self._key("offer", code)) is None:
                    break
                logger.info("Session code collision on %s, drawing again", code)
            else:
                raise CodeSpaceExhausted(f"No free code after {self.attempts} attempts")

            self.kv.put(self._key("offer", code), offer, self.ttl)
            self.kv.put(self._key("ice_offer", code), [], self.ttl)
            self.kv.put(self._key("ice_answer", code), [], self.ttl)
        return code

    def get_session(self, code: str) -> Dict[str, Any]:
        offer = self.kv.get(self._key("offer", code))
        if offer is None:
            raise SessionNotFound(code)
        return offer

    def post_answer(self, code: str, answer: Dict[str, Any]) -> None:
        with self._lock:
            if self.kv.get(self._key("offer", code)) is None:
                raise SessionNotFound(code)
            self.kv.put(self._key("answer", code), answer, self.ttl)

    def get_answer(self, code: str) -> Optional[Dict[str, Any]]:
        return self.kv.get(self._key("answer", code))

    def post_ice(self, code: str, candidate: Dict[str, Any], origin: Origin) -> None:
        key = self._key(f"ice_{origin}", code)
        with self._lock:
            candidates = list(self.kv.get(key) or [])
            candidates.append(candidate)
            self.kv.put(key, candidates, self.ttl)

    def get_ice(self, code: str, origin: Origin, since: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        candidates = self.kv.get(self._key(f"ice_{origin}", code)) or []
        return candidates[since:], len(candidates)

    def delete_session(self, code: str) -> None:
        with self._lock:
            for kind in ("offer", "answer", "ice_offer", "ice_answer"):
                self.kv.delete(self._key(kind, code))


store = RendezvousStore()

router = APIRouter(prefix="/api/p2p")


# --- Endpoints ---
@router.post("/session")
def create_session(req: CreateSessionRequest):
    if not req.offer:
        raise HTTPException(400, "Offer is required")
    return {"code": store.create_session(req.offer)}


@router.get("/session/{code}")
def get_session(code: str):
    return {"offer": store.get_session(code)}


@router.delete("/session/{code}")
def delete_session(code: str):
    """Best-effort cleanup once the peers are connected."""
    store.delete_session(code)
    return {"success": True}


@router.post("/answer/{code}")
def post_answer(code: str, req: AnswerRequest):
    if not req.answer:
        raise HTTPException(400, "Answer is required")
    store.post_answer(code, req.answer)
    return {"success": True}


@router.get("/answer/{code}")
def get_answer(code: str):
    # null means the receiver has not answered yet
    return {"answer": store.get_answer(code)}


@router.post("/ice/{code}")
def post_ice(code: str, req: IceRequest):
    if not req.candidate or not req.type:
        raise HTTPException(400, "Invalid data")
    store.post_ice(code, req.candidate, req.type)
    return {"success": True}


@router.get("/ice/{code}")
def get_ice(
    code: str,
    type: Optional[Origin] = Query(None, description="Which side's candidates to fetch"),
    last_index: int = Query(0, alias="lastIndex", ge=0),
):
    """
    Return the candidates posted by `type` starting at `lastIndex`,
    together with the full list length for the next poll.
    """
    if not type:
        raise HTTPException(400, "Type required")
    candidates, total = store.get_ice(code, type, last_index)
    return {"candidates": candidates, "total": total}


app = FastAPI(title="codebeam rendezvous")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.exception_handler(SessionNotFound)
async def session_not_found_handler(request: Request, exc: SessionNotFound):
    return JSONResponse({"error": "Session not found"}, status_code=404)


@app.exception_handler(CodeSpaceExhausted)
async def code_space_handler(request: Request, exc: CodeSpaceExhausted):
    logger.error("Session creation failed: %s", exc)
    return JSONResponse({"error": "No session code available"}, status_code=503)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
    return JSONResponse({"error": f"Invalid data: {fields}"}, status_code=400)


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s: %s", request.url.path, exc, exc_info=True)
    return JSONResponse({"error": "Internal server error", "details": str(exc)}, status_code=500)
