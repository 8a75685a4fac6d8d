# src/wakeguard/main.py
import os
import time
import asyncio
import uvicorn
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Request # type: ignore
from fastapi.responses import JSONResponse # type: ignore
from sqlalchemy import text

from .dependencies import get_engine
from .errors import (
    ChallengeExpired,
    ChallengeNotFound,
    TerminalSettlementFailure,
    TransientError,
    ValidationError,
)
from .metrics import http_request_duration, http_requests_total, start_metrics_server
from .models.base import new_id
from .models.challenge import LocationPing
from .models.database import check_db_connection, init_db
from .schemas import ArrivalRequest, ChallengeOutcomeResponse, ChargeEvent, TimeResponse
from .config import settings
from .state_machine import ChallengeEngine
from .utils.geofence import passes_quality_filter
from .utils.logging import setup_logger

logger = setup_logger(__name__)

# FastAPI app
app = FastAPI(title="wakeguard")


@app.middleware("http")
async def count_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    http_request_duration.labels(method=request.method, endpoint=endpoint).observe(time.time() - start_time)
    http_requests_total.labels(method=request.method, endpoint=endpoint, status=response.status_code).inc()
    return response


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": type(exc).__name__, "detail": str(exc)})


@app.exception_handler(ChallengeNotFound)
async def not_found_handler(request: Request, exc: ChallengeNotFound):
    return _error(404, exc)


@app.exception_handler(ChallengeExpired)
async def expired_handler(request: Request, exc: ChallengeExpired):
    return _error(410, exc)


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return _error(422, exc)


@app.exception_handler(TransientError)
async def transient_handler(request: Request, exc: TransientError):
    logger.warning(f"Transient error on {request.url.path}: {exc}")
    return _error(503, exc)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/time", response_model=TimeResponse)
async def server_time(client_time: Optional[datetime] = None, engine: ChallengeEngine = Depends(get_engine)):
    """Server time; with ``client_time`` also the server's offset from it in ms."""
    offset_ms = engine.clock.skew_check(client_time) if client_time is not None else None
    return TimeResponse(server_time=engine.clock.now(), offset_ms=offset_ms)


@app.post("/challenges/{challenge_id}/arrival", response_model=ChallengeOutcomeResponse)
async def record_arrival(challenge_id: str, body: ArrivalRequest, engine: ChallengeEngine = Depends(get_engine)):
    # 404 before anything is written
    await engine.get_status(challenge_id)

    now = engine.clock.now()
    ping = LocationPing(
        id=new_id(),
        challenge_id=challenge_id,
        lat=body.lat,
        lng=body.lng,
        accuracy_meters=body.accuracy_meters,
        observed_at=body.observed_at,
        source=body.source,
        is_valid=passes_quality_filter(body.accuracy_meters, settings.max_ping_accuracy_meters),
        created_at=now,
        updated_at=now,
    )
    await engine.repository.add_location_ping(ping)

    try:
        outcome = await engine.record_arrival(challenge_id, ping)
    except TerminalSettlementFailure as e:
        logger.error(str(e))
        return ChallengeOutcomeResponse.from_outcome(await engine.get_status(challenge_id),
                                                     manual_payment_required=True)
    return ChallengeOutcomeResponse.from_outcome(outcome)


@app.get("/challenges/{challenge_id}/status", response_model=ChallengeOutcomeResponse)
async def challenge_status(challenge_id: str, engine: ChallengeEngine = Depends(get_engine)):
    return ChallengeOutcomeResponse.from_outcome(await engine.get_status(challenge_id))


@app.post("/payments/{attempt_id}/retry", response_model=ChallengeOutcomeResponse)
async def retry_payment(attempt_id: str, engine: ChallengeEngine = Depends(get_engine)):
    """User-initiated retry of a declined penalty charge."""
    try:
        outcome = await engine.retry_payment(attempt_id)
    except TerminalSettlementFailure as e:
        logger.error(str(e))
        return ChallengeOutcomeResponse.from_outcome(await engine.get_status(e.challenge_id),
                                                     manual_payment_required=True)
    return ChallengeOutcomeResponse.from_outcome(outcome)


@app.post("/payments/events", response_model=ChallengeOutcomeResponse)
async def payment_event(event: ChargeEvent, engine: ChallengeEngine = Depends(get_engine)):
    """Provider callback carrying the final state of a charge."""
    logger.info(f"Charge event {event.charge_ref}: {event.status}")
    try:
        outcome = await engine.apply_charge_update(event.charge_ref, event.status,
                                                   event.failure_code, event.failure_message)
    except TerminalSettlementFailure as e:
        logger.error(str(e))
        return ChallengeOutcomeResponse.from_outcome(await engine.get_status(e.challenge_id),
                                                     manual_payment_required=True)
    return ChallengeOutcomeResponse.from_outcome(outcome)


async def wait_for_db(max_retries: int = 5, retry_interval: int = 5):
    """Wait for database to be ready."""
    from .models.database import engine
    for i in range(max_retries):
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
                logger.info("Database is ready")
                return
        except Exception as e:
            if i == max_retries - 1:
                raise
            logger.warning(f"Database not ready, retrying in {retry_interval} seconds: {e}")
            await asyncio.sleep(retry_interval)


@app.on_event("startup")
async def on_startup():
    """Initialize services on startup."""
    try:
        # 1) Wait for database
        await wait_for_db()

        # 2) Create tables
        await init_db()

        # 3) Start metrics server
        start_metrics_server()

        # 4) Check database connection
        if not await check_db_connection():
            raise Exception("Database connection failed")

        logger.info("Application startup completed successfully")
    except Exception as e:
        logger.error(f"Error during startup: {e}")
        raise


@app.on_event("shutdown")
async def on_shutdown():
    """Cleanup on shutdown."""
    from .models.database import engine
    get_engine().settlement.gateway.close()
    await engine.dispose()
    logger.info("Application shutdown complete")


if __name__ == "__main__":
    uvicorn.run("wakeguard.main:app", host="0.0.0.0", port=int(os.environ.get("PORT", 8080)))
