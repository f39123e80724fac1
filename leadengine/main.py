"""
Lead Allocation Engine - API
============================
FastAPI application for lead intake, bidding and allocation
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from leadengine.allocation.policy import AllocationPolicy, build_selector
from leadengine.bidding.engine import BiddingEngine
from leadengine.config import get_settings
from leadengine.core.lead_fsm_db import LeadFSM
from leadengine.errors import LeadEngineError
from leadengine.intake.pipeline import DemandIntake, Enquiry, ManualLead
from leadengine.logging_config import setup_logging
from leadengine.reporting.analytics import get_lead_analytics
from leadengine.reporting.listing import list_bids, list_leads
from leadengine.scheduler import create_scheduler, get_scheduler_status, start_scheduler, stop_scheduler
from leadengine.schemas import (
    APIResponse,
    BidOut,
    EnquiryOut,
    ErrorResponse,
    LeadEventOut,
    LeadHistoryOut,
    LeadOut,
    PartnerOut,
    SyncOut,
)

logger = logging.getLogger(__name__)


# ── Request Models ────────────────────────────────────────────────────────────

class EnquiryRequest(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    category: Optional[str] = None
    service: Optional[str] = None
    sub_service: Optional[str] = None
    city: Optional[str] = None
    address: Optional[str] = None
    landmark: Optional[str] = None
    pincode: Optional[str] = None
    description: Optional[str] = None
    estimated_budget: Optional[float | str] = None


class ManualLeadRequest(BaseModel):
    partner_id: Optional[str] = None
    category: Optional[str] = None
    service: Optional[str] = None
    sub_service: Optional[str] = None
    city: Optional[str] = None
    address: Optional[str] = None
    landmark: Optional[str] = None
    pincode: Optional[str] = None
    value: Optional[float | str] = None
    allocation_strategy: Optional[str] = None
    priority: Optional[str] = None
    description: Optional[str] = None


class FromBookingRequest(BaseModel):
    booking_id: str


class BidRequest(BaseModel):
    partner_id: str
    bid_amount: float | str
    eta: Optional[str] = None
    score: Optional[float] = None
    notes: Optional[str] = None


class WithdrawRequest(BaseModel):
    partner_id: str


class StatusUpdateRequest(BaseModel):
    status: str
    assigned_partner_id: Optional[str] = None


class AutoAssignRequest(BaseModel):
    strategy: Optional[str] = Field(None, description="first_eligible or round_robin")


# ── App ───────────────────────────────────────────────────────────────────────

def create_app(session_factory=None, run_scheduler: Optional[bool] = None) -> FastAPI:
    settings = get_settings()
    owns_store = session_factory is None
    if owns_store:
        from leadengine.db.database import async_session_factory
        session_factory = async_session_factory
    if run_scheduler is None:
        run_scheduler = settings.scheduler_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        if owns_store and settings.is_development:
            from leadengine.db.database import init_db
            await init_db()
        if run_scheduler:
            create_scheduler(session_factory, settings)
            start_scheduler()
        logger.info("Lead engine started")
        yield
        if run_scheduler:
            stop_scheduler()

    app = FastAPI(
        title="Lead Allocation Engine",
        description="Lead lifecycle, partner bidding and allocation",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.session_factory = session_factory
    app.state.intake = DemandIntake(session_factory, settings)
    app.state.bidding = BiddingEngine(session_factory)
    app.state.policy = AllocationPolicy(session_factory, build_selector(settings.partner_selection_strategy))

    @app.exception_handler(LeadEngineError)
    async def lead_engine_error_handler(request: Request, exc: LeadEngineError):
        if exc.status_code >= 500:
            logger.error("%s: %s", exc.code, exc.message)
        body = ErrorResponse(
            error=exc.error,
            error_code=exc.code,
            message=exc.message,
            details=exc.details or None,
        )
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        body = ErrorResponse(
            error="internal_error",
            error_code="INTERNAL_ERROR",
            message="Internal server error",
        )
        return JSONResponse(status_code=500, content=body.model_dump(mode="json"))

    _register_routes(app)
    return app


def _register_routes(app: FastAPI):

    @app.get("/")
    async def root():
        return {
            "service": "Lead Allocation Engine",
            "version": "1.0.0",
            "status": "running",
        }

    @app.get("/health")
    async def health():
        """Health check endpoint"""
        return {"status": "healthy", "scheduler": get_scheduler_status()}

    # ── Intake ────────────────────────────────────────────────────────────────

    @app.post("/leads/from-booking", status_code=201)
    async def create_lead_from_booking(body: FromBookingRequest, request: Request):
        lead = await request.app.state.intake.from_booking(body.booking_id)
        return APIResponse(data=LeadOut.model_validate(lead), message="Lead created from booking")

    @app.post("/leads/manual", status_code=201)
    async def create_manual_lead(body: ManualLeadRequest, request: Request):
        lead = await request.app.state.intake.manual(ManualLead(**body.model_dump()))
        return APIResponse(data=LeadOut.model_validate(lead), message="Lead created")

    @app.post("/enquiries", status_code=201)
    async def submit_enquiry(body: EnquiryRequest, request: Request):
        receipt = await request.app.state.intake.from_enquiry(Enquiry(**body.model_dump()))
        return APIResponse(
            data=EnquiryOut(lead_id=receipt.lead_id, booking_id=receipt.booking_id),
            message="Enquiry submitted",
        )

    @app.post("/leads/sync")
    async def sync_bookings(request: Request):
        outcome = await request.app.state.intake.sync_bookings()
        return APIResponse(
            data=SyncOut(created=outcome.created, leads=outcome.leads, errors=outcome.errors),
            message=f"{outcome.created} leads created",
        )

    # ── Reads ─────────────────────────────────────────────────────────────────

    @app.get("/leads")
    async def get_leads(
        request: Request,
        status: Optional[str] = None,
        city: Optional[str] = None,
        allocation_strategy: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ):
        async with request.app.state.session_factory() as session:
            listing = await list_leads(
                session, status, city, allocation_strategy, start_date, end_date, page, limit,
            )
        return APIResponse(data=listing["data"], pagination=listing["pagination"])

    @app.get("/leads/analytics")
    async def lead_analytics(request: Request):
        async with request.app.state.session_factory() as session:
            stats = await get_lead_analytics(session)
        return APIResponse(data=stats)

    @app.get("/leads/{lead_ref}")
    async def get_lead(lead_ref: str, request: Request):
        async with request.app.state.session_factory() as session:
            lead = await LeadFSM(session).load(lead_ref)
        return APIResponse(data=LeadOut.model_validate(lead))

    @app.get("/leads/{lead_ref}/history")
    async def get_lead_history(lead_ref: str, request: Request):
        """Full event history for a lead (audit trail)"""
        async with request.app.state.session_factory() as session:
            lead, events = await LeadFSM(session).history(lead_ref)
        return APIResponse(data=LeadHistoryOut(
            lead_id=lead.lead_id,
            current_state=lead.status,
            event_count=len(events),
            events=[LeadEventOut.model_validate(e) for e in events],
        ))

    @app.get("/bids")
    async def get_bids(
        request: Request,
        status: Optional[str] = None,
        lead_id: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ):
        async with request.app.state.session_factory() as session:
            listing = await list_bids(session, status, lead_id, page, limit)
        return APIResponse(data=listing["data"], pagination=listing["pagination"])

    # ── Bidding ───────────────────────────────────────────────────────────────

    @app.post("/leads/{lead_ref}/bids", status_code=201)
    async def submit_bid(lead_ref: str, body: BidRequest, request: Request):
        bid = await request.app.state.bidding.submit_bid(
            lead_ref, body.partner_id, body.bid_amount,
            eta=body.eta, score=body.score, notes=body.notes,
        )
        return APIResponse(data=BidOut.model_validate(bid), message="Bid submitted")

    @app.post("/leads/{lead_ref}/bids/{bid_id}/accept")
    async def accept_bid(lead_ref: str, bid_id: str, request: Request):
        lead = await request.app.state.bidding.accept_bid(lead_ref, bid_id)
        return APIResponse(data=LeadOut.model_validate(lead), message="Bid accepted")

    @app.post("/leads/{lead_ref}/bids/{bid_id}/withdraw")
    async def withdraw_bid(lead_ref: str, bid_id: str, body: WithdrawRequest, request: Request):
        bid = await request.app.state.bidding.withdraw_bid(lead_ref, bid_id, body.partner_id)
        return APIResponse(data=BidOut.model_validate(bid), message="Bid withdrawn")

    # ── Administration ────────────────────────────────────────────────────────

    @app.patch("/leads/{lead_ref}/status")
    async def update_lead_status(lead_ref: str, body: StatusUpdateRequest, request: Request):
        lead = await request.app.state.policy.update_lead_status(
            lead_ref, body.status, body.assigned_partner_id,
        )
        return APIResponse(data=LeadOut.model_validate(lead), message="Lead status updated")

    @app.delete("/leads/{lead_ref}")
    async def delete_lead(lead_ref: str, request: Request):
        async with request.app.state.session_factory() as session:
            lead_id = await LeadFSM(session).delete(lead_ref)
            await session.commit()
        return APIResponse(data={"lead_id": lead_id}, message="Lead deleted")

    @app.post("/bookings/{booking_id}/auto-assign")
    async def auto_assign_booking(booking_id: str, request: Request, body: Optional[AutoAssignRequest] = None):
        selector = build_selector(body.strategy) if body and body.strategy else None
        partner = await request.app.state.policy.auto_assign_booking(booking_id, selector)
        if partner is None:
            return APIResponse(data=None, message="No eligible partner for this booking")
        return APIResponse(data=PartnerOut.model_validate(partner), message="Booking assigned")


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
