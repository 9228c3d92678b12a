"""Ownership-chain analysis endpoints.

Sessions live in process memory only: an expediente is registered with
POST /expediente, analyzed with POST /{session_id}/analyze and read back
with GET /{session_id}/results.  POST /sequence does all of it in one call.
"""

import json
import time
import logging
from typing import Any, Optional
from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from cadena.config import MAX_SESSIONS, SESSION_TTL_SECONDS
from cadena.pipeline.models import ReturnPolicy
from cadena.pipeline.orchestrator import AnalysisSession, analyze_ownership_sequence
from cadena.pipeline.utils import to_date

router = APIRouter()
logger = logging.getLogger(__name__)

# session_id → (session, last access as time.time())
_sessions: dict[str, tuple[AnalysisSession, float]] = {}


def purge_stale_sessions(now: float | None = None) -> int:
    """Drop sessions idle for longer than SESSION_TTL_SECONDS."""
    now = now if now is not None else time.time()
    stale = [sid for sid, (_, touched) in _sessions.items() if now - touched > SESSION_TTL_SECONDS]
    for sid in stale:
        del _sessions[sid]
    if stale:
        logger.info(f"Session cleanup: removed {len(stale)} stale session(s)")
    return len(stale)


def _store(session: AnalysisSession):
    purge_stale_sessions()
    while len(_sessions) >= MAX_SESSIONS:
        oldest = min(_sessions, key=lambda sid: _sessions[sid][1])
        logger.warning(f"Session store full ({MAX_SESSIONS}); evicting {oldest}")
        del _sessions[oldest]
    _sessions[session.session_id] = (session, time.time())


def _get_session(session_id: str) -> AnalysisSession:
    entry = _sessions.get(session_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Session not found")
    session = entry[0]
    _sessions[session_id] = (session, time.time())
    return session


def _safe_json_response(data: dict, status_code: int = 200) -> JSONResponse:
    """JSONResponse via ``json.dumps(…, default=str)`` so dates and enums never break encoding."""
    content = json.loads(
        json.dumps(data, default=str, ensure_ascii=False)
    )
    return JSONResponse(content=content, status_code=status_code)


def _check_options(as_of: Optional[str], return_policy: Optional[str]):
    if return_policy is not None:
        try:
            ReturnPolicy.parse(return_policy)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
    if as_of is not None and to_date(as_of) is None:
        raise HTTPException(status_code=422, detail=f"Invalid as_of date: {as_of}")


# ── Request models ──

class ExpedienteRequest(BaseModel):
    files: Optional[list[dict[str, Any]]] = None
    created_at: Optional[str] = None
    active_vehicle: Optional[Any] = None


class AnalyzeOptions(BaseModel):
    as_of: Optional[str] = None
    return_policy: Optional[str] = None


class SequenceRequest(ExpedienteRequest):
    as_of: Optional[str] = None
    return_policy: Optional[str] = None


# ── Routes ──

@router.post("/expediente")
async def create_expediente(request: ExpedienteRequest):
    """Register an expediente and return its session_id."""
    session = AnalysisSession.from_expediente(request.model_dump())
    session._log("upload", f"Expediente recibido con {len(request.files or [])} archivo(s)")
    _store(session)
    logger.info(f"Session {session.session_id}: expediente registered ({len(request.files or [])} files)")
    return {
        "session_id": session.session_id,
        "status": session.status,
        "total_files": len(request.files or []),
    }


@router.post("/sequence")
async def analyze_sequence(request: SequenceRequest):
    """One-shot analysis without a stored session."""
    _check_options(request.as_of, request.return_policy)
    session = AnalysisSession.from_expediente(request.model_dump())
    result = analyze_ownership_sequence(session, as_of=request.as_of,
                                        return_policy=request.return_policy)
    if not result.get("success"):
        raise HTTPException(status_code=422, detail=result)
    return _safe_json_response(result)


@router.post("/{session_id}/analyze")
async def analyze_session(session_id: str, options: Optional[AnalyzeOptions] = None):
    session = _get_session(session_id)
    options = options or AnalyzeOptions()
    _check_options(options.as_of, options.return_policy)
    result = analyze_ownership_sequence(session, as_of=options.as_of,
                                        return_policy=options.return_policy)
    return _safe_json_response(result)


@router.get("/{session_id}/results")
async def get_results(session_id: str):
    session = _get_session(session_id)
    if session.result is None:
        raise HTTPException(status_code=400, detail="Analysis has not been run for this session")
    return _safe_json_response(session.result)


@router.get("/{session_id}")
async def get_session(session_id: str):
    return _safe_json_response(_get_session(session_id).to_dict())


@router.delete("/{session_id}")
async def delete_session(session_id: str):
    _get_session(session_id)
    del _sessions[session_id]
    logger.info(f"Session {session_id}: cleared")
    return {"deleted": session_id}
