import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import openai
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from .agent import AgentRegistry, OpenAIGateway
from .agent.gateway import GenerationGateway
from .errors import GatewayError, InvalidArgumentError, NotFoundError
from .models import AnalysisOptions, Session, message_to_dict, session_to_dict
from .services.analysis import SessionAnalyzer
from .services.chat import ChatService
from .services.collaboration import analyze_agent_collaboration
from .services.session_manager import SessionManager
from .services.storage import SessionStorage, close_session_storage, create_session_storage
from .settings import get_settings


def setup_server_logging() -> logging.Logger:
    """Configure and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("lumos.server")
    if logger.handlers:
        return logger

    logger.setLevel(get_settings().log_level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


LOGGER = setup_server_logging()
settings = get_settings()


@dataclass
class AppServices:
    storage: SessionStorage
    manager: SessionManager
    gateway: GenerationGateway
    analyzer: SessionAnalyzer
    chat: ChatService


def build_services(storage: SessionStorage, gateway: GenerationGateway) -> AppServices:
    manager = SessionManager(storage)
    return AppServices(
        storage=storage,
        manager=manager,
        gateway=gateway,
        analyzer=SessionAnalyzer(gateway),
        chat=ChatService(manager, gateway),
    )


def _load_registry() -> AgentRegistry:
    if settings.agents_file is None:
        return AgentRegistry()
    try:
        return AgentRegistry.from_file(settings.agents_file)
    except (OSError, ValueError) as e:
        LOGGER.warning("Could not load agents from %s: %s", settings.agents_file, e)
        return AgentRegistry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open session storage, hydrate sessions and build services; close storage on shutdown."""
    if getattr(app.state, "services", None) is None:
        storage = await create_session_storage()
        app.state.services = build_services(storage, OpenAIGateway(_load_registry()))
        await app.state.services.manager.load_sessions()
    LOGGER.info("Lumos session service ready")

    yield

    LOGGER.info("Shutting down...")
    await close_session_storage(app.state.services.storage)


app = FastAPI(
    title="Lumos Sessions",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(InvalidArgumentError)
async def invalid_argument_handler(request: Request, exc: InvalidArgumentError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


def _services(request: Request) -> AppServices:
    return request.app.state.services


def _found(session: Optional[Session], session_id: str) -> Dict[str, Any]:
    if session is None:
        raise HTTPException(status_code=404, detail=f"session {session_id} not found")
    return session_to_dict(session)


class CreateSessionBody(BaseModel):
    agent_ids: List[str] = Field(min_length=1)
    title: Optional[str] = None


class AgentBody(BaseModel):
    agent_id: str


class TitleBody(BaseModel):
    title: str


class SystemPromptBody(BaseModel):
    prompt: str


class ModelSettingsBody(BaseModel):
    settings: Dict[str, Any]


class MessageBody(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None


class AnalysisBody(BaseModel):
    include_summary: bool = True
    include_key_points: bool = True
    include_next_steps: bool = True
    include_related_topics: bool = True
    max_messages: int = Field(default_factory=lambda: get_settings().analysis_max_messages, ge=1)


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}


@app.get("/sessions")
async def list_sessions(request: Request) -> list[dict[str, Any]]:
    manager = _services(request).manager
    return [asdict(manager.summarize(s)) for s in manager.list_sessions()]


@app.post("/sessions", status_code=201)
async def create_session(body: CreateSessionBody, request: Request) -> dict[str, Any]:
    manager = _services(request).manager
    if len(body.agent_ids) == 1:
        session = await manager.create_session(body.agent_ids[0], body.title)
    else:
        session = await manager.create_multi_agent_session(body.agent_ids, body.title)
    return session_to_dict(session)


@app.get("/sessions/active")
async def get_active_session(request: Request) -> dict[str, Any]:
    session = await _services(request).manager.get_active_session()
    if session is None:
        raise HTTPException(status_code=404, detail="no active session")
    return session_to_dict(session)


@app.get("/sessions/export")
async def export_sessions(request: Request) -> Response:
    """Every session as a JSON array, suitable for ``POST /sessions/import``."""
    return Response(
        content=_services(request).manager.export_sessions(), media_type="application/json"
    )


@app.post("/sessions/import")
async def import_sessions(request: Request) -> dict[str, Any]:
    """Replace all sessions with the JSON array in the request body."""
    raw = (await request.body()).decode("utf-8", errors="replace")
    if not await _services(request).manager.import_sessions(raw):
        raise HTTPException(status_code=400, detail="invalid session data")
    return {"imported": len(_services(request).manager.list_sessions())}


@app.get("/metrics")
async def session_stats(request: Request) -> dict[str, Any]:
    return asdict(_services(request).manager.metrics.get_session_stats())


@app.get("/sessions/{session_id}/metrics")
async def session_metrics(session_id: str, request: Request) -> dict[str, Any]:
    usage = _services(request).manager.metrics.get_session_metrics(session_id)
    if usage is None:
        raise HTTPException(status_code=404, detail=f"no metrics for session {session_id}")
    return asdict(usage)


@app.put("/sessions/{session_id}/active", status_code=204)
async def activate_session(session_id: str, request: Request) -> None:
    await _services(request).manager.set_active_session(session_id)


@app.get("/sessions/{session_id}")
async def get_session(session_id: str, request: Request) -> dict[str, Any]:
    return _found(_services(request).manager.get_session(session_id), session_id)


@app.delete("/sessions/{session_id}", status_code=204)
async def delete_session(session_id: str, request: Request) -> None:
    if not await _services(request).manager.delete_session(session_id):
        raise HTTPException(status_code=404, detail=f"session {session_id} not found")


@app.patch("/sessions/{session_id}/title")
async def rename_session(session_id: str, body: TitleBody, request: Request) -> dict[str, Any]:
    session = await _services(request).manager.update_session_title(session_id, body.title)
    return _found(session, session_id)


@app.post("/sessions/{session_id}/agents")
async def add_agent(session_id: str, body: AgentBody, request: Request) -> dict[str, Any]:
    session = await _services(request).manager.add_agent_to_session(session_id, body.agent_id)
    return _found(session, session_id)


@app.delete("/sessions/{session_id}/agents/{agent_id}")
async def remove_agent(session_id: str, agent_id: str, request: Request) -> dict[str, Any]:
    session = await _services(request).manager.remove_agent_from_session(session_id, agent_id)
    return _found(session, session_id)


@app.put("/sessions/{session_id}/default-agent")
async def set_default_agent(session_id: str, body: AgentBody, request: Request) -> dict[str, Any]:
    session = await _services(request).manager.set_session_default_agent(
        session_id, body.agent_id
    )
    return _found(session, session_id)


@app.put("/sessions/{session_id}/agents/{agent_id}/system-prompt")
async def set_system_prompt(
    session_id: str, agent_id: str, body: SystemPromptBody, request: Request
) -> dict[str, Any]:
    session = await _services(request).manager.set_agent_system_prompt(
        session_id, agent_id, body.prompt
    )
    return _found(session, session_id)


@app.put("/sessions/{session_id}/agents/{agent_id}/model-settings")
async def set_model_settings(
    session_id: str, agent_id: str, body: ModelSettingsBody, request: Request
) -> dict[str, Any]:
    session = await _services(request).manager.set_agent_model_settings(
        session_id, agent_id, body.settings
    )
    return _found(session, session_id)


@app.post("/sessions/{session_id}/messages", status_code=201)
async def add_message(session_id: str, body: MessageBody, request: Request) -> dict[str, Any]:
    message = await _services(request).manager.add_message(
        session_id,
        body.role,
        body.content,
        agent_id=body.agent_id,
        agent_name=body.agent_name,
    )
    return message_to_dict(message)


@app.delete("/sessions/{session_id}/messages")
async def clear_messages(session_id: str, request: Request) -> dict[str, Any]:
    session = await _services(request).manager.clear_session_messages(session_id)
    return _found(session, session_id)


@app.post("/sessions/{session_id}/analysis")
async def analyze(session_id: str, body: AnalysisBody, request: Request) -> dict[str, Any]:
    services = _services(request)
    session = services.manager.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"session {session_id} not found")
    analysis = await services.analyzer.analyze_session(
        session, AnalysisOptions(**body.model_dump())
    )
    return asdict(analysis)


@app.get("/sessions/{session_id}/summary")
async def quick_summary(session_id: str, request: Request) -> dict[str, Any]:
    services = _services(request)
    session = services.manager.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"session {session_id} not found")
    return {"summary": await services.analyzer.quick_session_summary(session)}


@app.get("/sessions/{session_id}/collaboration")
async def collaboration(session_id: str, request: Request) -> dict[str, Any]:
    session = _services(request).manager.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"session {session_id} not found")
    return asdict(analyze_agent_collaboration(session))


@app.websocket("/ws/chat")
async def chat_ws(websocket: WebSocket) -> None:
    """WebSocket chat endpoint: client sends { session_id, message, agent_id? }, server streams tokens then done.

    Response Format:
        Streams JSON objects with fields:
        - {"type": "token", "data": str} - individual response tokens
        - {"type": "done", "session_id": str, "message_count": int} - completion message
        - {"type": "error", "data": str} - error message if applicable
    """
    await websocket.accept()
    services: AppServices = websocket.app.state.services
    try:
        raw = await websocket.receive_text()
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            LOGGER.error("Invalid WS payload (not JSON): %s", e)
            await websocket.send_json({"type": "error", "data": "Invalid JSON payload"})
            await websocket.close()
            return

        session_id = str(payload.get("session_id") or "")
        message = str(payload.get("message") or "").strip()
        agent_id = payload.get("agent_id") or None

        if not session_id or not message:
            await websocket.send_json({"type": "error", "data": "session_id and message are required"})
            await websocket.close()
            return

        LOGGER.info("WS chat start session_id=%s", session_id)

        try:
            async for token in services.chat.stream_reply(session_id, message, agent_id=agent_id):
                if token:
                    await websocket.send_json({"type": "token", "data": token})
        except (NotFoundError, InvalidArgumentError) as e:
            await websocket.send_json({"type": "error", "data": str(e)})
            await websocket.close()
            return
        except (GatewayError, openai.APIError, TimeoutError, ConnectionError) as e:
            LOGGER.exception("Generation failed during agent streaming: %s", e)
            await websocket.send_json({"type": "error", "data": str(e)})
            await websocket.close()
            return

        session = services.manager.get_session(session_id)
        await websocket.send_json(
            {
                "type": "done",
                "session_id": session_id,
                "message_count": len(session.messages) if session else 0,
            }
        )
        await websocket.close()

    except WebSocketDisconnect:
        LOGGER.info("WS disconnect")
