from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import uuid

from pydantic import ValidationError
import structlog

from .connection_manager import ConnectionManager
from .schema.events import (
    ClientEventType, SegmentEvent, SaveStatusEvent,
    parse_client_event, segment_payload
)
from storyloom.application.api.route.sessions import router as sessions_router
from storyloom.domain.errors import (
    GenerationError, InputValidationError, ResponseParseError, SessionStoreError
)
from storyloom.domain.models.session import Session
from storyloom.domain.orchestration.core.story_engine import StoryEngine
from storyloom.domain.orchestration.narrator.base_narrator import Narrator
from storyloom.domain.persistence.persistence_coordinator import SaveResult
from storyloom.domain.persistence.session_store import SessionStore
from storyloom.domain.streaming.streaming_handler import StreamingHandler
from storyloom.infrastructure.config import Settings
from storyloom.infrastructure.observability.logging import setup_logging, metrics

logger = structlog.get_logger(__name__)


class StoryConnection:
    """Per-socket game loop: one current session at a time"""

    def __init__(self, connection_id: str, engine: StoryEngine, connection_manager: ConnectionManager):
        self.connection_id = connection_id
        self.engine = engine
        self.connection_manager = connection_manager
        self.streaming_handler = StreamingHandler(connection_manager)
        self.session: Optional[Session] = None

    async def on_narrative(self, chunk: str):
        await self.streaming_handler.stream_narrative(self.connection_id, chunk)

    async def on_reasoning(self, chunk: str):
        await self.streaming_handler.stream_reasoning(self.connection_id, chunk)

    def _require_session(self) -> Session:
        if self.session is None:
            raise InputValidationError("No active session; start or resume a game first")
        return self.session

    async def handle(self, data: Dict[str, Any]):
        """Dispatch one client event"""

        request = parse_client_event(data)
        callbacks = {"on_narrative": self.on_narrative, "on_reasoning": self.on_reasoning}

        if request.type == ClientEventType.START_GAME:
            session = await self.engine.start_game(request.mode, request.custom_scene, **callbacks)
        elif request.type == ClientEventType.RESUME:
            session = await self.engine.load(request.session_id)
            if session is None:
                await self.connection_manager.send_error(self.connection_id, "Session not found", "not_found")
                return
        elif request.type == ClientEventType.CHOOSE:
            current = self._require_session()
            choice = next((c for c in current.current_segment.choices if c.id == request.choice_id), None)
            if choice is None:
                raise InputValidationError(f"Unknown choice: {request.choice_id}", field="choice_id")
            session = await self.engine.choose(current, choice, **callbacks)
        elif request.type == ClientEventType.CUSTOM_ACTION:
            session = await self.engine.custom_action(self._require_session(), request.text, **callbacks)
        elif request.type == ClientEventType.REGENERATE:
            session = await self.engine.regenerate(self._require_session(), **callbacks)
        else:
            session = await self.engine.rollback(self._require_session(), request.segment_index)

        await self.streaming_handler.flush_stream(self.connection_id)
        await self._publish(session)

    async def _publish(self, session: Session):
        self.session = session
        self.connection_manager.bind_session(self.connection_id, session.session_id)
        structlog.contextvars.bind_contextvars(session_id=session.session_id)

        await self.connection_manager.send_event(
            self.connection_id,
            SegmentEvent(
                session_id=session.session_id,
                payload=segment_payload(
                    session.get_summary(),
                    session.current_segment.model_dump(mode="json"),
                    [action.model_dump(mode="json") for action in session.action_history]
                )
            )
        )


def create_app(
    narrator: Narrator,
    store: Optional[SessionStore] = None,
    settings: Optional[Settings] = None
) -> FastAPI:
    """Build the story server around a narrator"""

    settings = settings or Settings()
    connection_manager = ConnectionManager()

    async def notify_save_failed(result: SaveResult):
        for connection_id in connection_manager.connections_for_session(result.session_id):
            await connection_manager.send_event(
                connection_id,
                SaveStatusEvent(
                    session_id=result.session_id,
                    success=False,
                    attempts=result.attempts,
                    message=result.error
                )
            )

    engine = StoryEngine(narrator, store=store, settings=settings, on_save_failed=notify_save_failed)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Story server started", narrator=narrator.name)
        yield
        for connection_id in connection_manager.get_active_connections():
            await connection_manager.disconnect(connection_id)
        await engine.shutdown()
        logger.info("Story server shutdown")

    app = FastAPI(title="Storyloom Story Server", lifespan=lifespan)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.engine = engine
    app.state.connection_manager = connection_manager
    app.state.settings = settings
    app.include_router(sessions_router)

    @app.websocket("/ws/story")
    async def story_websocket(websocket: WebSocket):
        """Main WebSocket endpoint for playing a story"""

        connection_id = str(uuid.uuid4())
        await connection_manager.connect(websocket, connection_id)
        connection = StoryConnection(connection_id, engine, connection_manager)

        try:
            while True:
                data = await websocket.receive_json()

                try:
                    await connection.handle(data)
                except (ValidationError, ValueError) as e:
                    await connection_manager.send_error(connection_id, f"Invalid event: {e}", "invalid_event")
                except InputValidationError as e:
                    await connection_manager.send_error(connection_id, str(e), "validation_error")
                except ResponseParseError as e:
                    await connection_manager.send_error(connection_id, str(e), "parse_error")
                except GenerationError as e:
                    await connection_manager.send_error(connection_id, str(e), e.code)
                except SessionStoreError as e:
                    await connection_manager.send_error(connection_id, str(e), "storage_error")
                except Exception as e:
                    logger.error("Error processing event", error=str(e), connection_id=connection_id)
                    await connection_manager.send_error(connection_id, f"Error processing event: {e}", "internal_error")
                finally:
                    await connection.streaming_handler.flush_stream(connection_id)

        except WebSocketDisconnect:
            logger.info("Client disconnected", connection_id=connection_id)
        finally:
            structlog.contextvars.unbind_contextvars("session_id")
            await connection_manager.disconnect(connection_id)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "active_connections": len(connection_manager.get_active_connections()),
            "narrator": narrator.get_info(),
            "save_stats": engine.coordinator.get_save_stats(),
            "metrics": metrics.get_metrics_summary(),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return app


def serve(narrator: Narrator, host: str = "0.0.0.0", port: int = 8000, settings: Optional[Settings] = None):
    """Run the story server with uvicorn"""
    import uvicorn

    settings = settings or Settings.from_env()
    setup_logging(settings.log_level, settings.log_format)
    uvicorn.run(create_app(narrator, settings=settings), host=host, port=port)
