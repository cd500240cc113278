# Decision OS API Main Entry Point
import logging
import sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .core.errors import AppendOnlyViolationError
from .core.invariants import InvariantViolationError
from .infra.rate_limit import limiter
from .routers.decision import router as decision_router
from .routers.drm import router as drm_router
from .routers.feedback import router as feedback_router
from .routers.ready import router as ready_router
from .settings import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger("decision_os")

app = FastAPI(title="Decision OS API", version="0.1.0")
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(InvariantViolationError)
async def invariant_violation_handler(request: Request, exc: InvariantViolationError):
    logger.error(f"Invariant violation on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "invariant_violation", "detail": str(exc)})


@app.exception_handler(AppendOnlyViolationError)
async def append_only_handler(request: Request, exc: AppendOnlyViolationError):
    logger.error(f"Append-only violation on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "append_only_violation", "detail": str(exc)})


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ready_router, prefix="/api", tags=["ready"])
app.include_router(decision_router, prefix="/api/decision-os", tags=["decision"])
app.include_router(drm_router, prefix="/api/decision-os", tags=["drm"])
app.include_router(feedback_router, prefix="/api/decision-os", tags=["feedback"])
