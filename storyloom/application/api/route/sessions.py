from typing import Annotated, Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request
import structlog

from storyloom.domain.errors import SessionStoreError
from storyloom.domain.models.session import generate_session_title
from storyloom.domain.orchestration.core.story_engine import StoryEngine

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/sessions", tags=["sessions"])


def get_engine(request: Request) -> StoryEngine:
    return request.app.state.engine


def _storage_failure(error: SessionStoreError) -> HTTPException:
    logger.error("Session storage failure", error=str(error), retryable=error.retryable)
    return HTTPException(status_code=503 if error.retryable else 500, detail=str(error))


@router.get("")
async def list_sessions(engine: Annotated[StoryEngine, Depends(get_engine)]) -> List[Dict[str, Any]]:
    """Saved sessions, most recent first"""
    try:
        return await engine.list_sessions()
    except SessionStoreError as e:
        raise _storage_failure(e)


@router.get("/{session_id}")
async def get_session(session_id: str, engine: Annotated[StoryEngine, Depends(get_engine)]) -> Dict[str, Any]:
    try:
        session = await engine.load(session_id)
    except SessionStoreError as e:
        raise _storage_failure(e)

    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")

    return {
        "title": generate_session_title(session),
        "summary": session.get_summary(),
        "session": session.model_dump(mode="json")
    }


@router.delete("/{session_id}")
async def delete_session(session_id: str, engine: Annotated[StoryEngine, Depends(get_engine)]) -> Dict[str, Any]:
    try:
        deleted = await engine.delete(session_id)
    except SessionStoreError as e:
        raise _storage_failure(e)

    if not deleted:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"session_id": session_id, "deleted": True}
