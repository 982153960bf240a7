from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from chatrelay.api.auth import CurrentUser, get_current_user, require_admin
from chatrelay.api.schemas import (
    ChatRequest,
    ChatResponse,
    ModelInfo,
    NewChatRequest,
    ProbeModelRequest,
    SwitchModelRequest,
)
from chatrelay.config import settings
from chatrelay.core.orchestrator import TurnResult, new_session_id
from chatrelay.llm.errors import TurnFailedError
from chatrelay.observability.logger import get_logger

log = get_logger("api")

router = APIRouter(prefix="/api")

MAX_HISTORY_LIMIT = 20


def get_app_state():
    """Get shared app state, set during startup."""
    from chatrelay.main import app_state

    return app_state


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_prompt(prompt: str) -> str:
    if not isinstance(prompt, str) or not prompt.strip():
        raise HTTPException(status_code=400, detail="Valid prompt is required")
    return prompt.strip()


# ── Chat ───────────────────────────────────────────────────────────────────


@router.post("/chat", response_model=ChatResponse)
async def chat(body: ChatRequest, user: CurrentUser = Depends(get_current_user)):
    prompt = _require_prompt(body.prompt)
    orchestrator = get_app_state()["orchestrator"]

    try:
        result: TurnResult = await orchestrator.run_turn(user.id, body.session_id, prompt)
    except TurnFailedError as e:
        log.error("turn_failed", user_id=user.id, kind=e.kind.value, provider=e.provider)
        raise HTTPException(status_code=502, detail=str(e)) from e

    debug = None
    if settings.expose_debug_to_client:
        debug = {**orchestrator.status(), "timestamp": _now()}

    return ChatResponse(
        message=result.text,
        session_id=result.session_id,
        model=result.provider_used,
        model_info=ModelInfo(
            name=result.provider_used,
            switched=result.switched,
            switched_from=result.switched_from,
        ),
        debug=debug,
    )


@router.post("/stream")
async def stream(body: ChatRequest, user: CurrentUser = Depends(get_current_user)):
    prompt = _require_prompt(body.prompt)
    orchestrator = get_app_state()["orchestrator"]

    try:
        turn = await orchestrator.stream_turn(
            user.id, body.session_id, prompt,
            chunk_size=settings.stream_chunk_size,
            delay_seconds=settings.stream_chunk_delay_ms / 1000,
        )
    except TurnFailedError as e:
        log.error("turn_failed", user_id=user.id, kind=e.kind.value, provider=e.provider)
        raise HTTPException(status_code=502, detail=str(e)) from e

    async def body_iter():
        chunks = turn.chunks()
        try:
            async for chunk in chunks:
                yield chunk
        finally:
            # Client went away: close the inner stream so the partial reply is stored now
            await chunks.aclose()
        result = turn.result
        yield f"\n\n[MODEL:{result.provider_used}]"
        yield f"[SESSION:{result.session_id}]"
        if result.switched:
            yield f"[SWITCHED_FROM:{result.switched_from}]"

    return StreamingResponse(
        body_iter(),
        media_type="text/plain; charset=utf-8",
        headers={"Cache-Control": "no-cache"},
    )


@router.post("/chat/new")
async def new_chat(body: Optional[NewChatRequest] = None, user: CurrentUser = Depends(get_current_user)):
    """Mint a session id. Nothing is stored until the first message arrives.

    With ``inheritSummaryFrom`` the parent conversation's summary is carried
    into the new one and shows up in its context from the first turn.
    """
    session_id = new_session_id(user.id)
    inherited = False
    if body and body.inherit_summary_from:
        store = get_app_state()["store"]
        parent = await store.get_conversation(body.inherit_summary_from, user.id)
        if parent is None:
            raise HTTPException(status_code=404, detail="Chat to inherit from not found")
        if parent.summary:
            await store.set_inherited_summary(session_id, user.id, parent.summary)
            inherited = True
    log.info("session_minted", user_id=user.id, session_id=session_id, inherited_summary=inherited)
    return {
        "success": True,
        "sessionId": session_id,
        "inheritedSummary": inherited,
        "message": "New chat session ready",
    }


@router.get("/chat/history")
async def chat_history(limit: int = 10, user: CurrentUser = Depends(get_current_user)):
    store = get_app_state()["store"]
    limit = max(1, min(limit, MAX_HISTORY_LIMIT))
    chats = await store.list_conversations(user.id, limit=limit)
    return {
        "success": True,
        "chats": [
            {
                "sessionId": c.session_id,
                "title": c.title,
                "totalMessages": c.total_turns,
                "createdAt": c.created_at,
                "updatedAt": c.last_activity,
            }
            for c in chats
        ],
    }


@router.get("/chat/{session_id}")
async def get_chat(session_id: str, user: CurrentUser = Depends(get_current_user)):
    store = get_app_state()["store"]
    info = await store.get_conversation(session_id, user.id)
    if info is None:
        raise HTTPException(status_code=404, detail="Chat not found")
    turns = await store.get_turns(session_id, user.id)
    return {
        "success": True,
        "sessionId": info.session_id,
        "title": info.title,
        "messages": [
            {
                "role": t.role,
                "content": t.content,
                "model": t.provider_used,
                "interrupted": t.interrupted,
                "createdAt": t.created_at,
            }
            for t in turns
        ],
        "updatedAt": info.last_activity,
    }


# ── Provider status & control ──────────────────────────────────────────────


@router.get("/ai/status")
async def ai_status(user: CurrentUser = Depends(get_current_user)):
    status = get_app_state()["orchestrator"].status()
    return {
        "success": True,
        "status": {
            "currentModel": status["currentProvider"],
            "availableModels": status["availableProviders"],
            "quotaStatus": status["exceeded"],
            "testResults": status["testResults"],
            "usageStats": status["usage"],
            "timestamp": _now(),
        },
    }


@router.get("/ai/usage")
async def ai_usage(user: CurrentUser = Depends(get_current_user)):
    status = get_app_state()["orchestrator"].status()
    usage = {
        name: {**stats, "quotaExceeded": status["exceeded"][name]}
        for name, stats in status["usage"].items()
    }
    return {"success": True, "usage": usage, "timestamp": _now()}


@router.post("/ai/switch-model")
async def switch_model(body: SwitchModelRequest, user: CurrentUser = Depends(get_current_user)):
    orchestrator = get_app_state()["orchestrator"]
    try:
        orchestrator.switch_model(body.target_model)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    log.info("global_model_switched", target=body.target_model, user_id=user.id)
    return {
        "success": True,
        "message": f"Global model switched to {body.target_model}",
        "currentModel": body.target_model,
        "timestamp": _now(),
    }


@router.post("/ai/test-model")
async def test_model(body: ProbeModelRequest, user: CurrentUser = Depends(get_current_user)):
    orchestrator = get_app_state()["orchestrator"]
    try:
        result = await orchestrator.test_provider(body.model)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    log.info("model_tested", model=body.model, status=result["status"])
    return {"success": True, "model": body.model, "result": result, "timestamp": _now()}


@router.get("/ai/test-all-models")
async def test_all_models(user: CurrentUser = Depends(get_current_user)):
    results = await get_app_state()["orchestrator"].test_all()
    return {"success": True, "results": results, "timestamp": _now()}


@router.get("/admin/monitor")
async def admin_monitor(user: CurrentUser = Depends(require_admin)):
    return {"success": True, "monitoring": {**get_app_state()["orchestrator"].status(), "timestamp": _now()}}


@router.get("/health")
async def health():
    return {
        "success": True,
        "status": "healthy",
        "timestamp": _now(),
        "apiKeys": {
            "groq": bool(settings.groq_api_key),
            "gemini": bool(settings.gemini_api_key),
            "tavily": bool(settings.tavily_api_key),
        },
    }
