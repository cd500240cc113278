"""Idempotency-Key replay for mutating routes.

First request with a key takes a short "processing" lock (SET NX); once the
handler finishes, the response is stored and replayed for repeats. Reusing a
key with a different body is a 409.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Union

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from .redis_client import get_redis

logger = logging.getLogger("decision_os.idempotency")

DONE_TTL_SEC = 60 * 60 * 24
PROCESSING_TTL_SEC = 60


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _hash_request(method: str, path: str, body_bytes: bytes) -> str:
    h = hashlib.sha256()
    for part in (method.encode("utf-8"), path.encode("utf-8"), body_bytes or b""):
        h.update(part)
        h.update(b"|")
    return h.hexdigest()


def _idemp_redis_key(household_key: str, route_key: str, idem_key: str) -> str:
    return f"decision_os:idemp:{household_key}:{route_key}:{idem_key}"


async def idempotency_precheck(
    request: Request, *, household_key: str, route_key: str
) -> Union[tuple[str, str], JSONResponse]:
    """Return (redis_key, request_hash) to proceed, or a JSONResponse to replay."""
    idem_key = request.headers.get("Idempotency-Key")
    if not idem_key:
        raise HTTPException(status_code=400, detail="Missing Idempotency-Key header")

    body_bytes = await request.body()
    req_hash = _hash_request(request.method, request.url.path, body_bytes)
    rkey = _idemp_redis_key(household_key, route_key, idem_key)
    r = await get_redis()

    raw = await r.get(rkey)
    if raw:
        data = json.loads(raw)
        if data.get("request_hash") and data["request_hash"] != req_hash:
            raise HTTPException(status_code=409, detail="Idempotency-Key reused with different request payload")
        if data.get("state") == "done":
            return JSONResponse(content=data.get("body"), status_code=int(data.get("status", 200)))
        raise HTTPException(status_code=409, detail="Request with this Idempotency-Key is still processing. Retry shortly.")

    processing = {"state": "processing", "request_hash": req_hash, "created_at": _iso_now()}
    ok = await r.set(rkey, json.dumps(processing), ex=PROCESSING_TTL_SEC, nx=True)
    if not ok:
        raise HTTPException(status_code=409, detail="Request with this Idempotency-Key is still processing. Retry shortly.")
    return (rkey, req_hash)


async def idempotency_store_result(redis_key: str, req_hash: str, *, status: int, body: dict) -> None:
    r = await get_redis()
    payload = {
        "state": "done",
        "status": int(status),
        "body": body,
        "completed_at": _iso_now(),
        "request_hash": req_hash,
    }
    await r.set(redis_key, json.dumps(payload), ex=DONE_TTL_SEC)


async def idempotency_clear_key(redis_key: Optional[str]) -> None:
    """Release the processing lock after a failed request."""
    if not redis_key:
        return
    try:
        r = await get_redis()
        await r.delete(redis_key)
    except RedisError as e:
        # The lock expires on its own after PROCESSING_TTL_SEC
        logger.warning(f"Failed to clear idempotency key {redis_key}: {e}")
