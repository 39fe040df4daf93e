import asyncio
import logging
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, time
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import AwareDatetime, BaseModel

from shiftdrop.config import Settings, load_settings
from shiftdrop.database import Database
from shiftdrop.models import Casual, Shift
from shiftdrop.notifier import send_sms
from shiftdrop.outbox import run_outbox_processor
from shiftdrop.results import (
    Conflict,
    NotFound,
    PreconditionFailure,
    Result,
    Success,
    ValidationFailure,
)
from shiftdrop.service import ShiftService

logger = logging.getLogger(__name__)

router = APIRouter()


class PostShiftRequest(BaseModel):
    starts_at: AwareDatetime
    ends_at: AwareDatetime
    spots_needed: int


class PhoneRequest(BaseModel):
    phone_number: str


class TokenRequest(BaseModel):
    token: str


class InviteCasualRequest(BaseModel):
    name: str
    phone_number: str


class AvailabilitySlot(BaseModel):
    day_of_week: int
    from_time: time
    to_time: time


class SetAvailabilityRequest(BaseModel):
    availability: list[AvailabilitySlot]


def get_service(request: Request) -> ShiftService:
    state = request.app.state
    return ShiftService(
        state.database,
        state.settings,
        now_fn=state.now_fn,
        token_fn=state.token_fn,
    )


async def get_principal(
    x_principal_id: str | None = Header(default=None, alias="X-Principal-Id"),
) -> str:
    # set by the authentication layer in front of this service
    if not x_principal_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_principal_id


def unwrap[T](result: Result[T]) -> T:
    match result:
        case Success(value):
            return value
        case NotFound(message):
            raise HTTPException(
                status_code=404, detail={"error": message, "reason": "not_found"}
            )
        case Conflict(message):
            raise HTTPException(
                status_code=409, detail={"error": message, "reason": "conflict"}
            )
        case ValidationFailure(message, reason):
            raise HTTPException(
                status_code=400, detail={"error": message, "reason": reason}
            )
        case PreconditionFailure(reason):
            raise HTTPException(
                status_code=400,
                detail={"error": result.message, "reason": reason},
            )
    raise TypeError(f"unexpected result {result!r}")


def shift_body(shift: Shift) -> dict[str, Any]:
    body = shift.model_dump(mode="json", exclude={"claims"})
    body["claimed_casual_ids"] = sorted(shift.claimed_casual_ids())
    return body


def casual_body(casual: Casual) -> dict[str, Any]:
    return casual.model_dump(
        mode="json",
        include={
            "id",
            "pool_id",
            "name",
            "phone_number",
            "invite_status",
            "opted_out_at",
            "removed_at",
            "availability",
        },
    )


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


# manager routes


@router.post("/pools/{pool_id}/shifts", status_code=201)
async def post_shift(
    pool_id: str,
    body: PostShiftRequest,
    principal_id: str = Depends(get_principal),
    service: ShiftService = Depends(get_service),
) -> dict:
    report = unwrap(
        await service.post_shift(
            principal_id, pool_id, body.starts_at, body.ends_at, body.spots_needed
        )
    )
    return {"shift": shift_body(report.shift), "notified_count": report.notified_count}


@router.get("/pools/{pool_id}/shifts")
async def list_shifts(
    pool_id: str,
    principal_id: str = Depends(get_principal),
    service: ShiftService = Depends(get_service),
) -> dict:
    shifts = unwrap(await service.list_shifts(principal_id, pool_id))
    return {"shifts": [shift_body(s) for s in shifts]}


@router.post("/pools/{pool_id}/shifts/{shift_id}/cancel")
async def cancel_shift(
    pool_id: str,
    shift_id: str,
    principal_id: str = Depends(get_principal),
    service: ShiftService = Depends(get_service),
) -> dict:
    shift = unwrap(await service.cancel_shift(principal_id, pool_id, shift_id))
    return {"shift": shift_body(shift)}


@router.post("/pools/{pool_id}/shifts/{shift_id}/release/{casual_id}")
async def release_casual(
    pool_id: str,
    shift_id: str,
    casual_id: str,
    principal_id: str = Depends(get_principal),
    service: ShiftService = Depends(get_service),
) -> dict:
    receipt = unwrap(
        await service.release_casual(principal_id, pool_id, shift_id, casual_id)
    )
    return {
        "shift": shift_body(receipt.shift),
        "claim_status": receipt.claim.status,
        "notified_count": receipt.notified_count,
    }


@router.post("/pools/{pool_id}/shifts/{shift_id}/resend")
async def resend_shift_notifications(
    pool_id: str,
    shift_id: str,
    principal_id: str = Depends(get_principal),
    service: ShiftService = Depends(get_service),
) -> dict:
    report = unwrap(
        await service.resend_notifications(principal_id, pool_id, shift_id)
    )
    count = report.notified_count
    if count == 0:
        message = "No casuals to notify"
    else:
        message = f"Notification sent to {count} casual{'' if count == 1 else 's'}"
    return {"notified_count": count, "message": message}


@router.post("/pools/{pool_id}/casuals", status_code=201)
async def invite_casual(
    pool_id: str,
    body: InviteCasualRequest,
    principal_id: str = Depends(get_principal),
    service: ShiftService = Depends(get_service),
) -> dict:
    casual = unwrap(
        await service.invite_casual(
            principal_id, pool_id, body.name, body.phone_number
        )
    )
    return {"casual": casual_body(casual)}


@router.post("/pools/{pool_id}/casuals/{casual_id}/resend-invite")
async def resend_invite(
    pool_id: str,
    casual_id: str,
    principal_id: str = Depends(get_principal),
    service: ShiftService = Depends(get_service),
) -> dict:
    casual = unwrap(await service.resend_invite(principal_id, pool_id, casual_id))
    return {"casual": casual_body(casual), "message": "Invite resent"}


@router.delete("/pools/{pool_id}/casuals/{casual_id}", status_code=204)
async def remove_casual(
    pool_id: str,
    casual_id: str,
    principal_id: str = Depends(get_principal),
    service: ShiftService = Depends(get_service),
) -> None:
    unwrap(await service.remove_casual(principal_id, pool_id, casual_id))


@router.put("/pools/{pool_id}/casuals/{casual_id}/availability")
async def set_availability(
    pool_id: str,
    casual_id: str,
    body: SetAvailabilityRequest,
    principal_id: str = Depends(get_principal),
    service: ShiftService = Depends(get_service),
) -> dict:
    slots = [(s.day_of_week, s.from_time, s.to_time) for s in body.availability]
    casual = unwrap(
        await service.set_availability(principal_id, pool_id, casual_id, slots)
    )
    return {"casual": casual_body(casual)}


# casual routes


@router.get("/casual/shifts")
async def get_available_shifts(
    phone_number: str, service: ShiftService = Depends(get_service)
) -> dict:
    found = unwrap(await service.open_shifts(phone_number))
    return {
        "casual": casual_body(found.casual),
        "available_shifts": [shift_body(s) for s in found.shifts],
    }


@router.post("/casual/shifts/{shift_id}/claim")
async def claim_shift(
    shift_id: str,
    body: PhoneRequest,
    service: ShiftService = Depends(get_service),
) -> dict:
    receipt = unwrap(await service.claim_shift(shift_id, body.phone_number))
    return {
        "status": "claimed",
        "message": "Shift claimed successfully!",
        "shift": shift_body(receipt.shift),
        "claim_id": receipt.claim.id,
    }


@router.post("/casual/shifts/{shift_id}/release")
async def release_shift(
    shift_id: str,
    body: PhoneRequest,
    service: ShiftService = Depends(get_service),
) -> dict:
    receipt = unwrap(await service.release_shift(shift_id, body.phone_number))
    return {
        "status": "released",
        "message": "You've been released from this shift.",
        "shift": shift_body(receipt.shift),
    }


@router.post("/casual/claim/{token}")
async def claim_by_token(
    token: str, service: ShiftService = Depends(get_service)
) -> dict:
    receipt = unwrap(await service.claim_by_token(token))
    return {
        "status": "claimed",
        "message": "Shift claimed successfully!",
        "shift": shift_body(receipt.shift),
        "casual_name": receipt.casual.name,
    }


@router.post("/casual/verify")
async def verify_invite(
    body: TokenRequest, service: ShiftService = Depends(get_service)
) -> dict:
    casual, pool = unwrap(await service.verify_invite(body.token))
    return {
        "casual_id": casual.id,
        "casual_name": casual.name,
        "pool_name": pool.name,
        "message": "Phone verified successfully! You'll now receive shift notifications.",
    }


@router.post("/casual/opt-out")
async def opt_out(
    body: TokenRequest, service: ShiftService = Depends(get_service)
) -> dict:
    unwrap(await service.opt_out(body.token))
    return {"message": "You have been unsubscribed from shift notifications."}


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled error on %s %s", request.method, request.url.path, exc_info=exc
    )
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    task = None
    if settings.outbox_enabled:
        task = asyncio.create_task(
            run_outbox_processor(
                app.state.database,
                send_sms,
                now_fn=lambda: app.state.now_fn(),
                sleep_fn=app.state.sleep_fn,
                poll_interval=settings.outbox_poll_seconds,
                batch_size=settings.outbox_batch_size,
            )
        )
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()

    app = FastAPI(title="ShiftDrop", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = Database()

    app.state.now_fn = lambda: datetime.now(UTC)
    app.state.sleep_fn = asyncio.sleep
    app.state.token_fn = lambda: secrets.token_hex(16)

    app.add_exception_handler(Exception, handle_unexpected_error)
    app.include_router(router)
    return app
