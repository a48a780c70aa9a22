import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from models.common_models import AddFileRequest, FileContentRequest, OutputRequest, SessionRunRequest
from services.client_context import ClientContext
from services.errors import CocodeError, MissingCredential, SessionNotFound, TransientSyncFailure
from services.file_map_service import guess_editor_language
from services.presence_service import PresenceTracker
from services.run_service import run_for_session
from services.session_service import SessionStore
from services.session_stream_service import SessionStreamNormalizer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])

def get_context(request: Request) -> ClientContext:
    return request.app.state.context

def get_store(context: ClientContext = Depends(get_context)) -> SessionStore:
    return SessionStore(context)

def _http_error(e: CocodeError) -> HTTPException:
    if isinstance(e, SessionNotFound):
        return HTTPException(status_code=404, detail="Session not found.")
    if isinstance(e, TransientSyncFailure):
        return HTTPException(status_code=503, detail=f"Session store unavailable: {e}")
    if isinstance(e, MissingCredential):
        return HTTPException(status_code=500, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))

@router.post("")
async def create_session(store: SessionStore = Depends(get_store)):
    try:
        session_id = await store.create_session()
    except CocodeError as e:
        raise _http_error(e)
    return {"session_id": session_id}

@router.get("/{session_id}")
async def get_session(session_id: str, store: SessionStore = Depends(get_store)):
    try:
        session = await store.get_session(session_id)
    except CocodeError as e:
        raise _http_error(e)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found.")
    return session

@router.put("/{session_id}/files/{filename:path}")
async def update_file(session_id: str, filename: str, req: FileContentRequest,
                      store: SessionStore = Depends(get_store)):
    try:
        await store.update_file(session_id, filename, req.content)
    except CocodeError as e:
        raise _http_error(e)
    return {"ok": True}

@router.post("/{session_id}/files", status_code=201)
async def add_file(session_id: str, req: AddFileRequest, store: SessionStore = Depends(get_store)):
    filename = req.filename.strip()
    if not filename:
        raise HTTPException(status_code=400, detail="Missing filename.")
    try:
        session = await store.get_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found.")
        if filename in (session.files or {}):
            raise HTTPException(status_code=409, detail="File already exists.")
        await store.add_file(session_id, filename, req.content)
    except CocodeError as e:
        raise _http_error(e)
    return {"filename": filename, "language": guess_editor_language(filename)}

@router.put("/{session_id}/output")
async def update_output(session_id: str, req: OutputRequest, store: SessionStore = Depends(get_store)):
    try:
        await store.update_output(session_id, req.output)
    except CocodeError as e:
        raise _http_error(e)
    return {"ok": True}

@router.post("/{session_id}/run")
async def run_file(session_id: str, req: SessionRunRequest, store: SessionStore = Depends(get_store)):
    try:
        session = await store.get_session(session_id)
    except CocodeError as e:
        raise _http_error(e)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found.")
    source = (session.files or {}).get(req.filename, "")
    output = await run_for_session(store, session_id, source, req.language_id)
    return {"output": output}

@router.get("/{session_id}/participants")
async def participants(session_id: str, context: ClientContext = Depends(get_context)):
    try:
        people = await PresenceTracker(context).list_participants(session_id)
    except CocodeError as e:
        raise _http_error(e)
    return {"participants": people, "count": len(people)}

@router.websocket("/{session_id}/stream")
async def stream_session(websocket: WebSocket, session_id: str,
                         uid: str = Query(...), name: Optional[str] = None):
    """
    Push normalized session snapshots to a browser. The connection doubles as
    the participant's presence: it joins on connect and leaves on disconnect.
    Incoming messages: {"type": "update_file", "filename", "content"} or
    {"type": "update_output", "output"}.
    """
    await websocket.accept()
    context: ClientContext = websocket.app.state.context
    store = SessionStore(context)

    async def push(snapshot):
        await websocket.send_json(snapshot.model_dump())

    try:
        subscription = await SessionStreamNormalizer(context).subscribe(session_id, push, uid=uid, name=name)
    except CocodeError as e:
        logger.warning(f"Could not subscribe {uid} to {session_id}: {e}")
        await websocket.close(code=1011)
        return

    try:
        while True:
            message = await websocket.receive_text()
            try:
                await _apply_client_message(store, session_id, json.loads(message))
            except (ValueError, KeyError, TypeError) as e:
                await websocket.send_json({"error": f"Bad message: {e}"})
            except CocodeError as e:
                await websocket.send_json({"error": str(e)})
    except WebSocketDisconnect:
        logger.info(f"{uid} disconnected from {session_id}")
    finally:
        cleanup = subscription.unsubscribe()
        if cleanup is not None:
            await cleanup

async def _apply_client_message(store: SessionStore, session_id: str, message: dict) -> None:
    kind = message["type"]
    if kind == "update_file":
        await store.update_file(session_id, str(message["filename"]), str(message["content"]))
    elif kind == "update_output":
        await store.update_output(session_id, str(message["output"]))
    else:
        raise ValueError(f"unknown message type {kind!r}")
