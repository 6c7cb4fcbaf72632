from fastapi import APIRouter, Request

router = APIRouter()


@router.get("")
async def get_status(request: Request):
    """In-memory counters for monitoring."""
    context = request.app.state.session_context
    return {
        "sessions": len(context.sessions),
        "active_operations": context.operations.active_count(),
        "pending_voice_intents": context.voice_intents.pending_count(),
        "conversations": len(context.conversations),
        "generation_enabled": request.app.state.generation_enabled,
    }
