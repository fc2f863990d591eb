import redis, json, time, asyncio
from fastapi import APIRouter, HTTPException

from tripsync.config import REDIS_URL, STREAM
from tripsync.logging_config import get_logger

# Redis connection (binary mode)
r = redis.from_url(REDIS_URL, decode_responses=False)

router = APIRouter()
logger = get_logger("webhook", "webhook.log")


# ---------------------------------------------------
#                TELEMETRY INGEST
# ---------------------------------------------------
@router.post("/telemetry")
async def telemetry_hook(payload: dict):

    collection = payload.get("collection")
    if not collection:
        raise HTTPException(status_code=400, detail="missing collection")

    document = payload.get("document")
    if not isinstance(document, dict):
        raise HTTPException(status_code=400, detail="missing document")

    if document.get("_id") is None:
        raise HTTPException(status_code=400, detail="missing document _id")

    # Convert payload to string for Redis
    json_str = json.dumps(payload, ensure_ascii=False)

    # Push to Redis inside executor (non-blocking)
    await asyncio.get_event_loop().run_in_executor(
        None,
        r.xadd,
        STREAM,
        {"ts": time.time(), "data": json_str},
    )

    logger.info(f"Queued {collection} document {document['_id']}")
    return {"ok": True}


@router.get("/health")
async def health():
    return {"ok": True}
