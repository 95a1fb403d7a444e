import time

from fastapi import APIRouter, Depends

from thinking_chat.dependencies import get_generation_registry
from thinking_chat.services.streaming import GenerationRegistry

router = APIRouter()

_start_time = time.monotonic()


@router.get("/api/health")
async def health_check(registry: GenerationRegistry = Depends(get_generation_registry)) -> dict:
    """Liveness check."""
    return {
        "status": "ok",
        "active_streams": len(registry),
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
    }
