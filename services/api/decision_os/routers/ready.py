import logging

from fastapi import APIRouter, Depends
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import get_db
from ..infra.redis_client import get_redis

router = APIRouter()
logger = logging.getLogger("decision_os")


@router.get("/ready")
async def ready(db: Session = Depends(get_db)):
    redis_ok = False
    db_ok = False
    try:
        r = await get_redis()
        redis_ok = bool(await r.ping())
    except (RedisError, OSError) as e:
        logger.warning(f"Readiness: redis unavailable: {e}")
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError as e:
        logger.warning(f"Readiness: database unavailable: {e}")
    return {"ok": redis_ok and db_ok, "redis_ok": redis_ok, "db_ok": db_ok}
