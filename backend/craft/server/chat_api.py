"""Streaming chat endpoint for the coding agent."""

from collections.abc import AsyncGenerator
from collections.abc import AsyncIterator

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi.responses import StreamingResponse

from craft.agent.packets import AgentPacket
from craft.agent.packets import format_sse_event
from craft.agent.streaming_loop import AgentStreamingLoop
from craft.errors import UsageDeniedError
from craft.server.dependencies import get_agent_loop
from craft.server.models import ChatRequest
from craft.server.models import UsageDeniedDetail
from craft.utils.logger import CURRENT_PROJECT_ID_CONTEXTVAR
from craft.utils.logger import setup_logger

logger = setup_logger()


router = APIRouter()


async def _sse_stream(
    packets: AsyncGenerator[AgentPacket, None],
) -> AsyncIterator[str]:
    """Format packets as SSE and close the turn when the client goes away."""
    try:
        async for packet in packets:
            yield format_sse_event(packet)
    finally:
        # Runs the turn's cleanup (usage commit) now rather than at GC time
        await packets.aclose()


@router.post("/chat")
async def chat(
    request: ChatRequest,
    agent_loop: AgentStreamingLoop = Depends(get_agent_loop),
) -> StreamingResponse:
    """
    Run one agent turn and stream it back as Server-Sent Events.

    The credit check runs before the stream starts: a user without credits
    gets a 429 and the model is never called.
    """
    if not request.project_id or not request.project_id.strip():
        raise HTTPException(status_code=400, detail="project_id is required")

    project_id = request.project_id.strip()
    CURRENT_PROJECT_ID_CONTEXTVAR.set(project_id)

    try:
        packets = await agent_loop.run(
            messages=[message.to_llm_message() for message in request.messages],
            project_id=project_id,
            user_id=request.user_id,
            tier=request.tier,
        )
    except UsageDeniedError as e:
        raise HTTPException(
            status_code=429,
            detail=UsageDeniedDetail(
                reason=e.reason, used=e.used, limit=e.limit, remaining=e.remaining
            ).model_dump(),
        )

    return StreamingResponse(
        _sse_stream(packets),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
