from __future__ import annotations

import json

import redis.asyncio as redis
from .settings import REDIS_URL, REPORT_CHANNEL, RECENT_RUNS_KEY, RECENT_RUNS_KEEP

r = redis.from_url(REDIS_URL, decode_responses=True)

async def publish_report(run_id: str, pipeline: str | None, verdict: str) -> None:
    message = json.dumps({"run_id": run_id, "pipeline": pipeline, "verdict": verdict})
    await r.publish(REPORT_CHANNEL, message)
    await r.lpush(RECENT_RUNS_KEY, run_id)  # newest first
    await r.ltrim(RECENT_RUNS_KEY, 0, RECENT_RUNS_KEEP - 1)

async def recent_run_ids(limit: int) -> list[str]:
    return await r.lrange(RECENT_RUNS_KEY, 0, limit - 1)
