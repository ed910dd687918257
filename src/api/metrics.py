from __future__ import annotations

from fastapi import APIRouter
from src.metrics.usage import snapshot

router = APIRouter(prefix="/api/metrics", tags=["metrics"])


@router.get("/llm-usage")
async def llm_usage(reset: bool = False):
    return snapshot(reset=reset)
