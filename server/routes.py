import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel

from realtime.notifier import RealtimeNotifier
from recorder.errors import (
    AlreadyActiveError,
    ForbiddenError,
    RecorderError,
    RecordingNotFoundError,
    RenameNotAllowedError,
    SessionUnavailableError,
)
from recorder.lifecycle import RecordingLifecycle
from server.auth import current_user
from session.registry import SessionRegistry

logger = logging.getLogger(__name__)

_STATUS_CODES = (
    (RecordingNotFoundError, 404),
    (ForbiddenError, 403),
    (AlreadyActiveError, 409),
    (SessionUnavailableError, 409),
    (RenameNotAllowedError, 409),
)


class StartRecordingRequest(BaseModel):
    title: str | None = None


class UpdateRecordingRequest(BaseModel):
    title: str


def _http_error(e: RecorderError) -> HTTPException:
    for exc_type, status in _STATUS_CODES:
        if isinstance(e, exc_type):
            return HTTPException(status, str(e))
    logger.error("Recording operation failed: %s", e)
    return HTTPException(500, str(e))


def recording_json(rec: dict) -> dict:
    return {
        "id": rec["id"],
        "userId": rec["user_id"],
        "title": rec["title"],
        "status": rec["status"].value,
        "transcript": rec["transcript"],
        "transcriptChunks": rec["transcript_chunks"],
        "currentInterim": rec["current_interim"],
        "duration": rec["duration"],
        "storage": rec["storage"],
        "error": rec["error"],
        "createdAt": rec["created_at"],
        "updatedAt": rec["updated_at"],
    }


def create_router(lifecycle: RecordingLifecycle, registry: SessionRegistry,
                  notifier: RealtimeNotifier) -> APIRouter:
    router = APIRouter()

    # -- Status --

    @router.get("/status")
    def get_status():
        return {
            "activeSessions": len(registry),
            "clients": notifier.client_details(),
        }

    # -- Session --

    @router.get("/session/is-connected")
    def is_connected(user_id: str = Depends(current_user)):
        return {
            "connected": registry.is_connected(user_id),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @router.get("/session/active-sessions")
    def active_sessions():
        sessions = registry.sessions()
        return {"count": len(sessions), "sessions": sessions}

    # -- Recording control --

    @router.post("/recordings/start", status_code=201)
    async def start_recording(body: StartRecordingRequest = StartRecordingRequest(),
                              user_id: str = Depends(current_user)):
        try:
            recording_id = await lifecycle.start(user_id, title=body.title)
            rec = lifecycle.get_owned(user_id, recording_id)
        except RecorderError as e:
            raise _http_error(e)
        return {"id": recording_id, "status": rec["status"].value}

    @router.post("/recordings/{recording_id}/stop")
    async def stop_recording(recording_id: str, user_id: str = Depends(current_user)):
        try:
            lifecycle.get_owned(user_id, recording_id)
            await lifecycle.stop(recording_id)
            rec = lifecycle.get_owned(user_id, recording_id)
        except RecorderError as e:
            raise _http_error(e)
        return recording_json(rec)

    # -- Recordings CRUD --

    @router.get("/recordings")
    def list_recordings(user_id: str = Depends(current_user)):
        return [recording_json(r) for r in lifecycle.list_for_user(user_id)]

    @router.get("/recordings/{recording_id}")
    def get_recording(recording_id: str, user_id: str = Depends(current_user)):
        try:
            rec = lifecycle.get_owned(user_id, recording_id)
        except RecorderError as e:
            raise _http_error(e)
        return recording_json(rec)

    @router.get("/recordings/{recording_id}/download")
    async def download_recording(recording_id: str, user_id: str = Depends(current_user)):
        try:
            rec = lifecycle.get_owned(user_id, recording_id)
            if not rec["storage"]["fileUrl"]:
                raise HTTPException(404, "Audio not available yet")
            data = await lifecycle.read_audio(user_id, recording_id)
        except RecorderError as e:
            raise _http_error(e)
        return Response(
            content=data,
            media_type="audio/wav",
            headers={"Content-Disposition": f'attachment; filename="{recording_id}.wav"'},
        )

    @router.put("/recordings/{recording_id}")
    async def update_recording(recording_id: str, body: UpdateRecordingRequest,
                               user_id: str = Depends(current_user)):
        title = body.title.strip()
        if not title:
            raise HTTPException(400, "Title is required")
        try:
            rec = await lifecycle.rename(user_id, recording_id, title)
        except RecorderError as e:
            raise _http_error(e)
        return recording_json(rec)

    @router.delete("/recordings/{recording_id}", status_code=204)
    async def delete_recording(recording_id: str, user_id: str = Depends(current_user)):
        try:
            await lifecycle.delete(user_id, recording_id)
        except RecorderError as e:
            raise _http_error(e)
        return Response(status_code=204)

    return router
