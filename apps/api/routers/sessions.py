"""
Client playback sessions.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends

from config import settings
from routers.deps import get_repository, require_repository
from routers.schemas import CreateSessionRequest, serialize_session
from services.errors import ConflictError, NotFoundError
from services.repository import MetadataRepository, best_effort

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/create")
async def create_session(
    request: Optional[CreateSessionRequest] = None,
    repository: Optional[MetadataRepository] = Depends(get_repository),
):
    """
    Open a playback session.
    Without a repository the caller still gets an identifier, it just isn't stored.
    """
    request = request or CreateSessionRequest()
    session = None
    if repository is not None:
        session = await best_effort(
            "create_session",
            repository.create_session(
                user_id=request.user_id,
                device_type=request.device_type,
                platform=request.platform,
            ),
        )

    if session is not None:
        payload = serialize_session(session)
    else:
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            "sessionId": str(uuid.uuid4()),
            "userId": request.user_id,
            "deviceType": request.device_type,
            "platform": request.platform,
            "startedAt": now,
            "lastActivityAt": now,
            "endedAt": None,
            "isActive": True,
            "persisted": False,
        }
        logger.info("Issued ephemeral session %s", payload["sessionId"])

    payload["idleTimeoutMinutes"] = int(settings.SESSION_IDLE_TIMEOUT_MINUTES)
    return payload


@router.post("/{session_id}/heartbeat")
async def heartbeat(
    session_id: str,
    repository: MetadataRepository = Depends(require_repository),
):
    if await repository.touch_session(session_id):
        return serialize_session(await repository.get_session(session_id))
    if await repository.get_session(session_id) is None:
        raise NotFoundError("Session not found")
    raise ConflictError("Session has ended")


@router.post("/{session_id}/end")
async def end_session(
    session_id: str,
    repository: MetadataRepository = Depends(require_repository),
):
    """Close a session; ending an already closed session is a no-op."""
    ended = await repository.end_session(session_id)
    session = await repository.get_session(session_id)
    if session is None:
        raise NotFoundError("Session not found")
    payload = serialize_session(session)
    payload["alreadyEnded"] = not ended
    return payload
