"""FastAPI service for playing Where's The Ball in the browser."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import Settings
from .errors import (
    GameAlreadyStartedError,
    NotHostError,
    RoomNotFoundError,
    StoreError,
    WheresBallError,
)
from .rooms import PIN_HIGH, PIN_LOW
from .session import DEFAULT_PLAYER_NAME, Backend, PlayerSession

logger = logging.getLogger(__name__)

BACKEND: Backend = Backend.from_settings(Settings.from_env())
SESSIONS: Dict[str, PlayerSession] = {}


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    sessions = list(SESSIONS.values())
    SESSIONS.clear()
    for session in sessions:
        await session.close()


app = FastAPI(
    title="Where's The Ball",
    description="Find the hidden red ball before time runs out",
    lifespan=lifespan,
)

MAX_ROUNDS = 20
MAX_NAME_LENGTH = 20


def _http_error(exc: WheresBallError) -> HTTPException:
    if isinstance(exc, RoomNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, GameAlreadyStartedError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, NotHostError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, StoreError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _normalize_pin(pin: str) -> str:
    normalized = pin.strip()
    if not normalized.isdigit() or not PIN_LOW <= int(normalized) <= PIN_HIGH:
        raise HTTPException(status_code=404, detail="Room not found")
    return normalized


class PlayerRequest(BaseModel):
    """Request payload naming the player."""

    model_config = ConfigDict(populate_by_name=True)

    player_name: str = Field(alias="playerName", min_length=1, max_length=MAX_NAME_LENGTH)

    @field_validator("player_name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Please enter your name")
        return value


class CreateRoomRequest(PlayerRequest):
    rounds: int = Field(default=5, ge=1, le=MAX_ROUNDS)


class SoloRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    player_name: str = Field(
        default=DEFAULT_PLAYER_NAME, alias="playerName", min_length=1, max_length=MAX_NAME_LENGTH
    )


class RoundsRequest(BaseModel):
    rounds: int = Field(ge=1, le=MAX_ROUNDS)


class ClickRequest(BaseModel):
    """Click position as fractions of the rendered image."""

    x: float = Field(ge=0.0, le=1.0)
    y: float = Field(ge=0.0, le=1.0)


class OptionsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    use_new_image: Optional[bool] = Field(default=None, alias="useNewImage")
    muted: Optional[bool] = None
    volume: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class DeleteImageRequest(BaseModel):
    url: str = Field(min_length=1)


def _get_session(session_id: str) -> PlayerSession:
    try:
        return SESSIONS[session_id]
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Session not found") from exc


def _register(session: PlayerSession) -> PlayerSession:
    SESSIONS[session.id] = session
    return session


def _resolve_join_base_url(request: Request) -> str:
    """Determine the best base URL for shareable room links."""

    origin = request.headers.get("origin")
    if origin:
        return origin.rstrip("/")

    forwarded_host = request.headers.get("x-forwarded-host")
    if forwarded_host:
        scheme = request.headers.get("x-forwarded-proto") or request.url.scheme
        return f"{scheme}://{forwarded_host}".rstrip("/")

    host = request.headers.get("host")
    if host:
        return f"{request.url.scheme}://{host}".rstrip("/")

    return str(request.base_url).rstrip("/")


@app.get("/healthz")
def healthz() -> Dict[str, object]:
    return {"status": "ok", "sessions": len(SESSIONS)}


# ---- rooms ----


@app.post("/api/room")
async def create_room(payload: CreateRoomRequest, request: Request) -> Dict[str, object]:
    try:
        session = await PlayerSession.host_room(BACKEND, payload.player_name, payload.rounds)
    except WheresBallError as exc:
        raise _http_error(exc) from exc
    _register(session)
    base_url = _resolve_join_base_url(request)
    return {
        "sessionId": session.id,
        "pin": session.pin,
        "joinUrl": f"{base_url}/?pin={session.pin}",
        "session": session.serialize(),
    }


@app.get("/api/room/{pin}")
async def inspect_room(pin: str) -> Dict[str, object]:
    normalized = _normalize_pin(pin)
    try:
        snapshot = await BACKEND.rooms.load(normalized)
    except WheresBallError as exc:
        raise _http_error(exc) from exc
    room = snapshot.room
    if not room.is_active:
        raise HTTPException(status_code=404, detail="Room not found")
    return {
        "pin": room.pin_code,
        "hostPlayerName": room.host_player_name,
        "totalRounds": room.total_rounds,
        "currentRound": room.current_round,
        "gameStarted": room.game_started,
        "gameCompleted": room.game_completed,
        "joinable": not room.game_started,
        "players": [
            {"name": p.player_name, "score": p.score} for p in snapshot.players
        ],
    }


@app.post("/api/room/{pin}/join")
async def join_room(pin: str, payload: PlayerRequest) -> Dict[str, object]:
    normalized = _normalize_pin(pin)
    try:
        session = await PlayerSession.join_room(BACKEND, normalized, payload.player_name)
    except WheresBallError as exc:
        raise _http_error(exc) from exc
    _register(session)
    return {"sessionId": session.id, "pin": session.pin, "session": session.serialize()}


@app.post("/api/solo")
async def start_solo(payload: Optional[SoloRequest] = None) -> Dict[str, object]:
    payload = payload or SoloRequest()
    session = _register(await PlayerSession.solo(BACKEND, payload.player_name))
    await session.start_game()
    return {"sessionId": session.id, "session": session.serialize()}


# ---- sessions ----


@app.get("/api/session/{session_id}")
def get_session(session_id: str) -> Dict[str, object]:
    return _get_session(session_id).serialize()


@app.post("/api/session/{session_id}/start")
async def start_game(session_id: str) -> Dict[str, object]:
    session = _get_session(session_id)
    if session.game_started:
        raise HTTPException(status_code=400, detail="Game already started")
    try:
        await session.start_game()
    except WheresBallError as exc:
        raise _http_error(exc) from exc
    return session.serialize()


@app.post("/api/session/{session_id}/rounds")
async def set_rounds(session_id: str, payload: RoundsRequest) -> Dict[str, object]:
    session = _get_session(session_id)
    if session.game_started:
        raise HTTPException(status_code=400, detail="Game already started")
    try:
        await session.set_total_rounds(payload.rounds)
    except WheresBallError as exc:
        raise _http_error(exc) from exc
    return session.serialize()


@app.post("/api/session/{session_id}/next")
async def next_round(session_id: str) -> Dict[str, object]:
    session = _get_session(session_id)
    if not session.game_started:
        raise HTTPException(status_code=400, detail="Game has not started")
    if session.multiplayer and not session.is_host:
        raise _http_error(NotHostError("advance to the next round"))
    session.spawn(session.next_round())
    await asyncio.sleep(0)
    return session.serialize()


@app.post("/api/session/{session_id}/click")
async def click(session_id: str, payload: ClickRequest) -> Dict[str, object]:
    session = _get_session(session_id)
    outcome = await session.coordinator.click(payload.x, payload.y)
    state = session.serialize()
    state["outcome"] = outcome
    return state


@app.post("/api/session/{session_id}/image-loaded")
async def image_loaded(session_id: str) -> Dict[str, object]:
    session = _get_session(session_id)
    session.coordinator.image_loaded()
    return session.serialize()


@app.post("/api/session/{session_id}/reset")
async def reset_game(session_id: str) -> Dict[str, object]:
    session = _get_session(session_id)
    try:
        await session.coordinator.reset_game()
    except WheresBallError as exc:
        raise _http_error(exc) from exc
    return session.serialize()


@app.post("/api/session/{session_id}/detect")
async def redetect(session_id: str) -> Dict[str, object]:
    session = _get_session(session_id)
    if not session.coordinator.image_url:
        raise HTTPException(status_code=400, detail="No image loaded")
    box = await session.coordinator.redetect()
    state = session.serialize()
    state["detected"] = box.to_dict() if box else None
    return state


@app.post("/api/session/{session_id}/pinpoint")
async def toggle_pinpoint(session_id: str) -> Dict[str, object]:
    session = _get_session(session_id)
    session.coordinator.toggle_pinpoint()
    return session.serialize()


@app.put("/api/session/{session_id}/options")
async def set_options(session_id: str, payload: OptionsRequest) -> Dict[str, object]:
    session = _get_session(session_id)
    session.set_options(
        use_new_image=payload.use_new_image, muted=payload.muted, volume=payload.volume
    )
    return session.serialize()


@app.post("/api/session/{session_id}/leave")
async def leave(session_id: str) -> Dict[str, object]:
    session = _get_session(session_id)
    SESSIONS.pop(session_id, None)
    await session.leave()
    return {"left": True, "pin": session.pin}


# ---- saved images ----


@app.get("/api/images")
async def list_images() -> List[Dict[str, object]]:
    images = await BACKEND.library.load()
    return [image.to_dict() for image in images]


@app.delete("/api/images")
async def delete_image(payload: DeleteImageRequest) -> Dict[str, object]:
    await BACKEND.library.delete(payload.url)
    return {"deleted": payload.url, "remaining": len(BACKEND.library.images)}


# ---- event stream ----


@app.websocket("/ws/session/{session_id}")
async def session_events(websocket: WebSocket, session_id: str) -> None:
    await websocket.accept()
    session = SESSIONS.get(session_id)
    if session is None:
        await websocket.send_json({"type": "error", "message": "Session not found"})
        await websocket.close()
        return

    queue = session.listen()
    watcher = asyncio.ensure_future(_wait_for_disconnect(websocket))
    try:
        await websocket.send_json({"type": "snapshot", "session": session.serialize()})
        while True:
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({getter, watcher}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                logger.info("Event stream for %s disconnected", session.player_name)
                break
            event = getter.result()
            await websocket.send_json(event)
            if event.get("type") == "closed":
                break
    finally:
        watcher.cancel()
        session.unlisten(queue)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


@app.get("/", response_class=HTMLResponse)
def index() -> str:
    return HTML_PAGE


HTML_PAGE = """<!DOCTYPE html>
<html lang=\"en\">
  <head>
    <meta charset=\"utf-8\" />
    <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\" />
    <title>Where's The Ball!</title>
    <style>
      body {
        margin: 0;
        font-family: system-ui, -apple-system, \"Segoe UI\", sans-serif;
        background: #fff7e6;
        color: #2b1d0e;
        display: flex;
        justify-content: center;
        padding: 1.5rem 1rem;
      }
      main {
        width: min(900px, 100%);
      }
      h1 {
        text-align: center;
        letter-spacing: 0.04em;
      }
      .panel {
        display: flex;
        flex-wrap: wrap;
        gap: 0.75rem;
        justify-content: center;
        margin-bottom: 1rem;
      }
      button,
      input {
        font-size: 1rem;
        padding: 0.5rem 0.9rem;
        border-radius: 999px;
        border: 1px solid rgba(0, 0, 0, 0.2);
      }
      #status {
        text-align: center;
        font-weight: 600;
        min-height: 1.5rem;
      }
      #scene {
        position: relative;
        max-width: 100%;
      }
      #scene img {
        width: 100%;
        cursor: crosshair;
        border-radius: 12px;
      }
      #players {
        list-style: none;
        padding: 0;
        text-align: center;
      }
      .hidden {
        display: none !important;
      }
    </style>
  </head>
  <body>
    <main>
      <h1>Where's The Ball!</h1>
      <div id=\"lobby\" class=\"panel\">
        <input id=\"name\" placeholder=\"Your name\" maxlength=\"20\" />
        <button id=\"solo\">Play solo</button>
        <button id=\"create\">Create room</button>
        <input id=\"pin\" placeholder=\"6-digit pin\" maxlength=\"6\" inputmode=\"numeric\" />
        <button id=\"join\">Join</button>
      </div>
      <div id=\"room\" class=\"panel hidden\">
        <span id=\"room-pin\"></span>
        <button id=\"start\">Start game</button>
        <button id=\"next\">Next round</button>
        <button id=\"leave\">Leave</button>
      </div>
      <div id=\"status\"></div>
      <div id=\"round\"></div>
      <div id=\"scene\"><img id=\"image\" class=\"hidden\" alt=\"Find the red ball\" /></div>
      <ul id=\"players\"></ul>
    </main>
    <script>
      let sessionId = null;
      let socket = null;
      let current = null;
      const $ = (id) => document.getElementById(id);
      const audio = new Audio();

      async function call(method, path, body) {
        const response = await fetch(path, {
          method,
          headers: { 'Content-Type': 'application/json' },
          body: body ? JSON.stringify(body) : undefined,
        });
        const data = await response.json().catch(() => ({}));
        if (!response.ok) {
          throw new Error(data.detail || 'Request failed');
        }
        return data;
      }

      function render(state) {
        if (!state) return;
        current = state;
        $('status').textContent = state.status || '';
        $('round').textContent = state.gameStarted
          ? `Round ${state.round.current}/${state.round.total} - ${state.round.timeRemaining}s`
          : '';
        const img = $('image');
        if (state.round.imageUrl) {
          if (img.src !== state.round.imageUrl) img.src = state.round.imageUrl;
          img.classList.remove('hidden');
        } else {
          img.classList.add('hidden');
        }
        $('players').innerHTML = (state.players || [])
          .map((p) => `<li>${p.name}: ${p.score}</li>`)
          .join('');
        $('room-pin').textContent = state.pin ? `Room ${state.pin}` : 'Solo';
        $('start').classList.toggle('hidden', !state.isHost || state.gameStarted);
        $('next').classList.toggle('hidden', !state.isHost || !state.round.completed);
      }

      async function refresh() {
        if (sessionId) render(await call('GET', `/api/session/${sessionId}`));
      }

      function connect(id) {
        sessionId = id;
        $('lobby').classList.add('hidden');
        $('room').classList.remove('hidden');
        const protocol = window.location.protocol === 'https:' ? 'wss' : 'ws';
        socket = new WebSocket(`${protocol}://${window.location.host}/ws/session/${id}`);
        socket.addEventListener('message', (event) => {
          const payload = JSON.parse(event.data);
          if (payload.type === 'snapshot') {
            render(payload.session);
          } else if (payload.type === 'speech') {
            new Audio(`data:${payload.contentType};base64,${payload.audio}`).play().catch(() => {});
          } else if (payload.type === 'sound') {
            audio.src = payload.src;
            audio.volume = payload.volume;
            audio.play().catch(() => {});
          } else if (payload.type === 'timer' && current) {
            current.round.timeRemaining = payload.remaining;
            render(current);
          } else {
            refresh();
          }
        });
      }

      $('solo').addEventListener('click', async () => {
        const data = await call('POST', '/api/solo', { playerName: $('name').value || 'Player' });
        connect(data.sessionId);
      });
      $('create').addEventListener('click', async () => {
        const data = await call('POST', '/api/room', { playerName: $('name').value, rounds: 5 });
        connect(data.sessionId);
      });
      $('join').addEventListener('click', async () => {
        try {
          const data = await call('POST', `/api/room/${$('pin').value}/join`, {
            playerName: $('name').value,
          });
          connect(data.sessionId);
        } catch (error) {
          $('status').textContent = error.message;
        }
      });
      $('start').addEventListener('click', async () => render(await call('POST', `/api/session/${sessionId}/start`)));
      $('next').addEventListener('click', async () => render(await call('POST', `/api/session/${sessionId}/next`)));
      $('leave').addEventListener('click', async () => {
        await call('POST', `/api/session/${sessionId}/leave`);
        window.location.search = '';
      });
      $('image').addEventListener('load', () => call('POST', `/api/session/${sessionId}/image-loaded`));
      $('image').addEventListener('click', async (event) => {
        const rect = event.target.getBoundingClientRect();
        const x = (event.clientX - rect.left) / rect.width;
        const y = (event.clientY - rect.top) / rect.height;
        render(await call('POST', `/api/session/${sessionId}/click`, { x, y }));
      });
      $('scene').addEventListener('click', async (event) => {
        if (event.target.id !== 'image' && sessionId) {
          render(await call('POST', `/api/session/${sessionId}/click`, { x: 0, y: 0 }));
        }
      });
      setInterval(refresh, 1000);

      const pinParam = new URLSearchParams(window.location.search).get('pin');
      if (pinParam) $('pin').value = pinParam;
    </script>
  </body>
</html>
"""
