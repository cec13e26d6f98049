"""
FastAPI main application for the hockey training booking engine.
"""

import logging
import json
from datetime import date, datetime, timezone
from typing import List, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from redis.exceptions import RedisError

from rinkbook.config import settings
from rinkbook.data.packages import CREDIT_PACKAGES, CreditPackage
from rinkbook.db.connection import redis_connection
from rinkbook.models.schemas import (
    BalanceReconciliation,
    BookingIntent,
    BookingRequest,
    CancelBookingRequest,
    CapacityReport,
    CreditAdjustmentRecord,
    CreditAdjustmentRequest,
    CreditBalanceSummary,
    ErrorCode,
    FulfillmentRequest,
    OperationResult,
    PaymentVerificationRequest,
    RecurringRunStats,
    RecurringSchedule,
    SagaReconciliationReport,
    ScheduleRequest,
    ScheduleUpdateRequest,
    SessionBooking,
    SessionType,
    normalize_time_slot,
    utcnow,
)
from rinkbook.saga.compensation import compensation_handler
from rinkbook.saga.orchestrator import saga_orchestrator
from rinkbook.services.booking import booking_service
from rinkbook.services.cancellation import cancellation_service
from rinkbook.services.capacity import capacity_oracle
from rinkbook.services.credits import credit_service
from rinkbook.services.fulfillment import fulfillment_service
from rinkbook.services.payments import payment_verification_service
from rinkbook.services.schedules import schedule_manager

logging.basicConfig(level=logging.INFO, format='%(message)s')
logger = logging.getLogger(__name__)


# Custom JSON formatter for structured logging
class StructuredLogFormatter(logging.Formatter):
    def format(self, record):
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Safely extract extra fields added via logger.info(msg, extra={...})
        standard_attrs = {
            'args', 'asctime', 'created', 'exc_info', 'exc_text', 'filename',
            'funcName', 'levelname', 'levelno', 'lineno', 'module', 'msecs',
            'message', 'msg', 'name', 'pathname', 'process', 'processName',
            'relativeCreated', 'stack_info', 'thread', 'threadName', 'taskName'
        }
        for key, value in record.__dict__.items():
            if key not in standard_attrs and not key.startswith('_'):
                log_data[key] = value
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


# Apply structured logging
for handler in logging.root.handlers:
    handler.setFormatter(StructuredLogFormatter())


# Error code -> HTTP status
ERROR_STATUS = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_SESSION: 400,
    ErrorCode.WRONG_SESSION_TYPE: 400,
    ErrorCode.MALFORMED_METADATA: 400,
    ErrorCode.ALREADY_CANCELLED: 400,
    ErrorCode.SESSION_ALREADY_OCCURRED: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INSUFFICIENT_CREDIT: 402,
    ErrorCode.SLOT_FULL: 409,
    ErrorCode.DUPLICATE_BOOKING: 409,
    ErrorCode.SLOT_UNAVAILABLE: 409,
    ErrorCode.BOOKING_CREATION_FAILED: 503,
    ErrorCode.DEPENDENCY_ERROR: 502,
    ErrorCode.COMPENSATION_FAILED: 500,
}


def respond(result: OperationResult) -> JSONResponse:
    """Serialize an engine result with the status code its error maps to."""
    status_code = 200 if result.success else ERROR_STATUS.get(result.error_code, 500)
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json", by_alias=True))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting hockey training booking engine")
    logger.info(f"Group capacity: {settings.max_group_capacity}")
    logger.info(f"Timezone: {settings.timezone}")
    try:
        await compensation_handler.recover_stale_intents()
    except RedisError as e:
        logger.warning("Stale saga recovery skipped at startup", extra={"error": str(e)})
    yield
    logger.info("Shutting down hockey training booking engine")
    await redis_connection.close()


app = FastAPI(
    title="Hockey Training Booking Engine",
    description="Credit-funded session booking with a compensating SAGA",
    version="1.0.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RedisError)
async def redis_error_handler(request: Request, exc: RedisError):
    logger.error(f"Datastore error on {request.url.path}", extra={"error": str(exc)})
    return JSONResponse(
        status_code=502,
        content={
            "success": False,
            "error_code": ErrorCode.DEPENDENCY_ERROR.value,
            "error_message": "Datastore unavailable, please retry"
        }
    )


# Request/Response models for API
class HealthResponse(BaseModel):
    status: str
    timestamp: str
    redis_connected: bool


class SimulateFailureRequest(BaseModel):
    enable: bool


# API Endpoints

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    redis_ok = False
    try:
        r = await redis_connection.get_redis()
        await r.ping()
        redis_ok = True
    except RedisError as e:
        logger.warning("Health check could not reach Redis", extra={"error": str(e)})

    return HealthResponse(
        status="healthy" if redis_ok else "degraded",
        timestamp=utcnow().isoformat(),
        redis_connected=redis_ok
    )


@app.get("/packages", response_model=List[CreditPackage])
async def list_packages():
    """Credit packages available for purchase."""
    return list(CREDIT_PACKAGES.values())


# Credits

@app.post("/credits/fulfill")
async def fulfill_credit_purchase(request: FulfillmentRequest):
    """Fulfill a paid credit checkout. Safe to repeat."""
    result = await fulfillment_service.fulfill(request.checkout_session_id)
    return respond(result)


@app.get("/credits/{owner_id}", response_model=CreditBalanceSummary)
async def get_credit_balance(owner_id: str):
    return await credit_service.get_summary(owner_id)


@app.post("/credits/{owner_id}/reconcile", response_model=BalanceReconciliation)
async def reconcile_credit_balance(owner_id: str):
    """Rewrite the aggregate balance from the purchase lots."""
    return await credit_service.reconcile(owner_id)


# Bookings

@app.post("/bookings")
async def create_booking(request: BookingRequest):
    """Book one credit-funded session through the booking saga."""
    logger.info(
        "Received booking request",
        extra={
            "owner_id": request.owner_id,
            "registration_id": request.registration_id,
            "session_type": request.session_type.value
        }
    )
    result = await saga_orchestrator.execute(request)
    return respond(result)


@app.get("/bookings", response_model=List[SessionBooking])
async def list_bookings(owner_id: str = Query(..., min_length=1)):
    return await booking_service.list_bookings(owner_id)


@app.get("/bookings/saga/{request_id}", response_model=BookingIntent)
async def get_saga_status(request_id: str):
    """Recorded saga intent, including its event trail."""
    intent = await saga_orchestrator.get_status(request_id)
    if not intent:
        raise HTTPException(status_code=404, detail="Booking saga not found")
    return intent


@app.post("/bookings/{booking_id}/cancel")
async def cancel_booking(booking_id: str, request: CancelBookingRequest):
    result = await cancellation_service.cancel_booking(booking_id, request.owner_id, request.reason)
    return respond(result)


@app.get("/availability", response_model=CapacityReport)
async def check_availability(session_date: date, time_slot: str, session_type: SessionType):
    try:
        time_slot = normalize_time_slot(time_slot)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return await capacity_oracle.get_slot_capacity(
        session_date, time_slot, session_type, settings.capacity_for(session_type.value)
    )


# Recurring schedules

@app.post("/schedules")
async def create_schedule(request: ScheduleRequest):
    result = await schedule_manager.create_schedule(request)
    return respond(result)


@app.get("/schedules", response_model=List[RecurringSchedule])
async def list_schedules(owner_id: str = Query(..., min_length=1)):
    return await schedule_manager.list_schedules(owner_id)


@app.patch("/schedules/{schedule_id}")
async def update_schedule(schedule_id: str, request: ScheduleUpdateRequest):
    """Pause or resume a schedule."""
    result = await schedule_manager.update_schedule(schedule_id, request)
    return respond(result)


@app.delete("/schedules/{schedule_id}")
async def delete_schedule(schedule_id: str, owner_id: str = Query(..., min_length=1)):
    result = await schedule_manager.delete_schedule(schedule_id, owner_id)
    return respond(result)


@app.post("/cron/recurring", response_model=RecurringRunStats)
async def process_recurring(x_cron_secret: Optional[str] = Header(default=None)):
    """Auto-book every due recurring schedule."""
    if settings.cron_secret and x_cron_secret != settings.cron_secret:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return await schedule_manager.process_due_schedules()


# Subscription payments

@app.post("/payments/verify")
async def verify_payment(request: PaymentVerificationRequest):
    """Confirm a registration payment after re-checking its slot."""
    result = await payment_verification_service.verify_payment(request.checkout_session_id)
    return respond(result)


# Admin endpoints

@app.post("/admin/credits/adjust")
async def adjust_credits(request: CreditAdjustmentRequest):
    result = await credit_service.adjust(request)
    return respond(result)


@app.get("/admin/credits/{owner_id}/adjustments", response_model=List[CreditAdjustmentRecord])
async def list_credit_adjustments(owner_id: str):
    return await credit_service.list_adjustments(owner_id)


@app.post("/admin/sagas/reconcile", response_model=SagaReconciliationReport)
async def reconcile_sagas(older_than_seconds: Optional[int] = Query(default=None, ge=0)):
    """Settle booking sagas left unfinished by a crashed process."""
    return await compensation_handler.recover_stale_intents(older_than_seconds)


@app.post("/admin/simulate-failure")
async def toggle_failure_simulation(request: SimulateFailureRequest):
    """Toggle booking failure simulation (testing only)."""
    await booking_service.set_failure_simulation(request.enable)

    return {
        "success": True,
        "simulate_failure": request.enable,
        "message": f"Failure simulation {'enabled' if request.enable else 'disabled'}"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8080)
