"""FastAPI application: HTTP endpoints for booking and cancelling rooms.

Endpoints:

  GET    /health                                          Health check
  GET    /communities/{cid}/rooms                         Bookable rooms
  GET    /communities/{cid}/rooms/{slug}/availability     Day summary
  POST   /communities/{cid}/bookings                      Start a booking
  POST   /communities/{cid}/bookings/{uid}/date           Choose a date
  POST   /communities/{cid}/bookings/{uid}/time           Choose a start time
  POST   /communities/{cid}/bookings/{uid}/duration       Choose a duration
  POST   /communities/{cid}/bookings/{uid}/name           Name the event
  POST   /communities/{cid}/bookings/{uid}/token          Pick the payment token
  POST   /communities/{cid}/bookings/{uid}/back           Go back a step
  POST   /communities/{cid}/bookings/{uid}/confirm        Pay and book
  DELETE /communities/{cid}/bookings/{uid}                Abort the booking
  GET    /communities/{cid}/cancellations/{uid}           Cancellable bookings
  POST   /communities/{cid}/cancellations/{uid}/select    Pick one, get a quote
  POST   /communities/{cid}/cancellations/{uid}/confirm   Refund and cancel
  GET    /admin/compensations                             Unrefunded failures
  POST   /admin/compensations/retry                       Retry them

Each request is one user action.  A ``BookingError`` becomes a JSON body
``{"error": kind, "message": user_message}``; anything else is logged with
its traceback and answered with a generic message.
"""

from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import logging
import time
from dataclasses import asdict
from datetime import date
from typing import Optional

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from roombook.config import settings
from roombook.errors import BookingError
from roombook.formatting import format_amount
from roombook.service import BookingService
from roombook.services.cancellation import CancellationCandidate, RefundQuote
from roombook.session import Prompt
from roombook.workflows.room_booking import BookingStep

log = logging.getLogger("roombook.app")

_START_TIME = time.time()

_STATUS = {
    "session_expired": 410,
    "invalid_step": 409,
    "resource_not_found": 404,
    "resource_not_bookable": 422,
    "slot_unavailable": 409,
    "insufficient_balance": 402,
    "payment_failed": 502,
    "commit_failed": 502,
    "commit_conflict": 409,
    "refund_failed": 502,
    "cancellation_in_progress": 409,
}


# ── Request bodies ─────────────────────────────────────────────


class StartBooking(BaseModel):
    user_id: str
    room: str
    display_name: str = ""


class DateChoice(BaseModel):
    day: date


class TimeChoice(BaseModel):
    hour: int
    minute: int = 0


class DurationChoice(BaseModel):
    minutes: int


class NameChoice(BaseModel):
    name: Optional[str] = None


class TokenChoice(BaseModel):
    token: str


class BackChoice(BaseModel):
    step: BookingStep


class CancellationChoice(BaseModel):
    reservation_id: str


def create_app(service: BookingService | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Without ``service`` the providers are built from settings on first use.
    """
    app = FastAPI(
        title="Room Booking",
        description="Token-paid room reservations on shared calendars",
        version="0.1.0",
    )
    app.state.service = service

    def _service() -> BookingService:
        if app.state.service is None:
            app.state.service = _create_service()
        return app.state.service

    @app.exception_handler(BookingError)
    async def booking_error(request: Request, exc: BookingError) -> JSONResponse:
        status = _STATUS.get(exc.kind, 400)
        if status >= 500:
            log.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.kind, exc)
        return JSONResponse(
            {"error": exc.kind, "message": exc.user_message()}, status_code=status
        )

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "Unhandled error on %s %s", request.method, request.url.path, exc_info=exc
        )
        return JSONResponse(
            {"error": "internal_error", "message": "Something went wrong. Please try again."},
            status_code=500,
        )

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({"status": "ok", "uptime": uptime})

    # ── Rooms ──────────────────────────────────────────────────

    @app.get("/communities/{community_id}/rooms")
    async def list_rooms(community_id: str):
        rooms = _service().rooms(community_id)
        return {
            "rooms": [
                {"slug": r.slug, "name": r.name, "channel_id": r.channel_id}
                for r in rooms
            ]
        }

    @app.get("/communities/{community_id}/rooms/{slug}/availability")
    async def room_availability(community_id: str, slug: str, day: date):
        summary = await _service().availability_summary(community_id, slug, day)
        return {"summary": summary}

    # ── Booking flow ───────────────────────────────────────────

    @app.post("/communities/{community_id}/bookings")
    async def start_booking(community_id: str, body: StartBooking):
        prompt = await _service().start_booking(
            community_id, body.user_id, body.room, body.display_name
        )
        return _prompt(prompt)

    @app.post("/communities/{community_id}/bookings/{user_id}/date")
    async def choose_date(community_id: str, user_id: str, body: DateChoice):
        return _prompt(await _service().choose_date(community_id, user_id, body.day))

    @app.post("/communities/{community_id}/bookings/{user_id}/time")
    async def choose_time(community_id: str, user_id: str, body: TimeChoice):
        return _prompt(
            await _service().choose_time(community_id, user_id, body.hour, body.minute)
        )

    @app.post("/communities/{community_id}/bookings/{user_id}/duration")
    async def choose_duration(community_id: str, user_id: str, body: DurationChoice):
        return _prompt(await _service().choose_duration(community_id, user_id, body.minutes))

    @app.post("/communities/{community_id}/bookings/{user_id}/name")
    async def choose_name(community_id: str, user_id: str, body: NameChoice):
        return _prompt(await _service().choose_name(community_id, user_id, body.name))

    @app.post("/communities/{community_id}/bookings/{user_id}/token")
    async def choose_token(community_id: str, user_id: str, body: TokenChoice):
        return _prompt(await _service().choose_token(community_id, user_id, body.token))

    @app.post("/communities/{community_id}/bookings/{user_id}/back")
    async def go_back(community_id: str, user_id: str, body: BackChoice):
        return _prompt(await _service().go_back(community_id, user_id, body.step))

    @app.post("/communities/{community_id}/bookings/{user_id}/confirm")
    async def confirm(community_id: str, user_id: str):
        return _prompt(await _service().confirm(community_id, user_id))

    @app.delete("/communities/{community_id}/bookings/{user_id}")
    async def abort_booking(community_id: str, user_id: str):
        return {"aborted": _service().abort_booking(community_id, user_id)}

    # ── Cancellation flow ──────────────────────────────────────

    @app.get("/communities/{community_id}/cancellations/{user_id}")
    async def list_cancellations(community_id: str, user_id: str):
        candidates = await _service().list_cancellations(community_id, user_id)
        return {"bookings": [_candidate(c) for c in candidates]}

    @app.post("/communities/{community_id}/cancellations/{user_id}/select")
    async def select_cancellation(community_id: str, user_id: str, body: CancellationChoice):
        candidate, quote = _service().select_cancellation(
            community_id, user_id, body.reservation_id
        )
        return {"booking": _candidate(candidate), "refund": _quote(candidate, quote)}

    @app.post("/communities/{community_id}/cancellations/{user_id}/confirm")
    async def confirm_cancellation(community_id: str, user_id: str):
        result = await _service().confirm_cancellation(community_id, user_id)
        return {
            "reservation_id": result.reservation.id,
            "percent": result.quote.percent,
            "amount": result.quote.amount,
            "refund_ref": result.refund_ref,
        }

    # ── Admin ──────────────────────────────────────────────────

    @app.get("/admin/compensations")
    async def pending_compensations():
        pending = _service().compensations.pending
        return {
            "pending": [
                {
                    "payment_ref": p.payment_ref,
                    "token": p.token.symbol,
                    "amount": p.amount,
                    "attempts": p.attempts,
                    "reason": p.reason,
                }
                for p in pending
            ]
        }

    @app.post("/admin/compensations/retry")
    async def retry_compensations():
        return {"refunded": await _service().retry_compensations()}

    return app


# ── Helper functions ──────────────────────────────────────────────


def _create_service() -> BookingService:
    """Build a BookingService with the configured Google and web3 providers."""
    from roombook.calendar_providers.google import GoogleCalendarProvider
    from roombook.ledger.web3_ledger import Web3LedgerProvider

    for warning in settings.validate_startup():
        log.warning(warning)
    return BookingService(
        calendar=GoogleCalendarProvider(
            service_account_path=settings.google_service_account_json or None,
        ),
        ledger=Web3LedgerProvider(),
    )


def _prompt(prompt: Prompt) -> dict:
    return asdict(prompt)


def _candidate(c: CancellationCandidate) -> dict:
    r = c.reservation
    return {
        "reservation_id": r.id,
        "summary": r.summary,
        "room": c.resource_slug,
        "room_name": c.resource_name,
        "start": r.start.isoformat(),
        "end": r.end.isoformat(),
        "token": c.token.symbol if c.token else None,
        "price_amount": c.price_amount,
    }


def _quote(c: CancellationCandidate, quote: RefundQuote) -> dict:
    decimals = c.token.decimals if c.token else 0
    return {
        "percent": quote.percent,
        "amount": quote.amount,
        "display": format_amount(quote.amount, decimals),
        "hours_until_start": round(quote.hours_until_start, 2),
    }


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "roombook.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
