import logging
from functools import lru_cache
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from config.pipeline_config import PipelineConfig
from services.ai.chat.chat_models import ChatRequest
from services.ai.chat.chat_orchestrator import ChatOrchestrator, StreamingAnswer
from services.ai.chat.image_generator import build_image_generator
from services.ai.chat.module_policy import policy_snapshot

logger = logging.getLogger(__name__)

router = APIRouter()


@lru_cache(maxsize=1)
def get_chat_orchestrator() -> ChatOrchestrator:
    return ChatOrchestrator(image_generator=build_image_generator(), config=PipelineConfig.from_env())


@router.post("/chat")
async def chat_endpoint(
    req: ChatRequest,
    request: Request,
    orchestrator: ChatOrchestrator = Depends(get_chat_orchestrator),
):
    request_id = getattr(request.state, "request_id", None)
    if req.stream:
        headers = {
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        }
        return StreamingResponse(
            orchestrator.stream_sse(
                req, is_disconnected=request.is_disconnected, request_id=request_id
            ),
            media_type="text/event-stream",
            headers=headers,
        )

    outcome = await orchestrator.respond(req, request_id=request_id)
    if isinstance(outcome, StreamingAnswer):
        # respond() only streams when the request asked for it
        raise HTTPException(status_code=500, detail="Unexpected streaming answer")
    return outcome.to_payload()


@router.get("/chat/policy")
def chat_policy() -> Dict[str, Any]:
    return policy_snapshot()
