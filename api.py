# Bountyline API v1.0.0
# FastAPI. Listings, proposals, escrow, disputes, reputation. Thin over the services.

import json
import logging
import os
import time
from collections import defaultdict, deque
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from errors import MarketError, Unauthorized
from escrow import EscrowService, get_escrow_service
from identity import ApiKeyIdentitySource, Caller, IdentitySource, require_caller
from listings import ListingRegistry, ParticipantRegistry
from notifications import DatabaseNotificationSink
from proposals import ProposalResolver
from scheduler import DisputeWindowScheduler

log = logging.getLogger("bountyline")

app = FastAPI(title="Bountyline", version="1.0.0")

BOUNTYLINE_ENV = os.environ.get("BOUNTYLINE_ENV", "dev").lower()
RATE_LIMIT_REQUESTS = int(os.environ.get("BOUNTYLINE_RATE_LIMIT_REQUESTS", "120"))
RATE_LIMIT_WINDOW_SEC = int(os.environ.get("BOUNTYLINE_RATE_LIMIT_WINDOW_SEC", "60"))
_RATE_BUCKETS = defaultdict(deque)

PUBLIC_PATHS = {"/", "/docs", "/openapi.json", "/healthz", "/readyz"}


# ── Services ──────────────────────────────────────────────────────────


class Services:
    """Everything a route needs, wired over one database and one escrow service."""

    def __init__(self, escrow: Optional[EscrowService] = None,
                 identity: Optional[IdentitySource] = None,
                 scheduler: Optional[DisputeWindowScheduler] = None):
        self.escrow = escrow or get_escrow_service()
        self.db = self.escrow.db
        self.participants = ParticipantRegistry(self.db)
        self.listings = ListingRegistry(self.db)
        self.proposals = ProposalResolver(self.escrow)
        self.reputation = self.escrow.reputation
        self.inbox = DatabaseNotificationSink(self.db)
        self.identity = identity or ApiKeyIdentitySource(self.participants)
        self.scheduler = scheduler or DisputeWindowScheduler(self.escrow)


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = Services()
    return _services


def set_services(services: Optional[Services]):
    """Swap the wiring (tests point it at a temp database and a fake rail)."""
    global _services
    _services = services


def current_caller(authorization: Optional[str] = Header(default=None)) -> Caller:
    return get_services().identity.current_caller(authorization)


# ── Middleware ────────────────────────────────────────────────────────


class RequestLogMiddleware(BaseHTTPMiddleware):
    """One JSON line per request."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        duration_ms = round((time.time() - started) * 1000, 2)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "client_ip": request.client.host if request.client else "unknown",
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


app.add_middleware(RequestLogMiddleware)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """In-memory sliding window per client IP."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        now = time.time()
        client_ip = request.client.host if request.client else "unknown"
        bucket = _RATE_BUCKETS[client_ip]
        while bucket and bucket[0] <= now - RATE_LIMIT_WINDOW_SEC:
            bucket.popleft()

        if len(bucket) >= RATE_LIMIT_REQUESTS:
            return JSONResponse(
                status_code=429,
                content={
                    "ok": False,
                    "error": {"code": "rate_limited", "message": "Too many requests"},
                },
            )

        bucket.append(now)
        return await call_next(request)


app.add_middleware(RateLimitMiddleware)


@app.exception_handler(MarketError)
async def market_error_handler(_: Request, exc: MarketError):
    status = exc.http_status
    if isinstance(exc, Unauthorized) and exc.code == "unauthenticated":
        status = 401
    return JSONResponse(status_code=status, content={"ok": False, "error": exc.to_dict()})


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": {"code": "http_error", "message": str(exc.detail)}},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "error": {
                "code": "validation_error",
                "message": "Request validation failed",
                "details": exc.errors(),
            },
        },
    )


# ── Request models ────────────────────────────────────────────────────


class ParticipantIn(BaseModel):
    display_name: str = Field(min_length=1, max_length=100)
    kind: str = "agent"
    wallet_ref: str = ""


class ListingIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    price: int = Field(gt=0, description="Minor units (cents)")
    listing_type: str = "bounty"
    currency: str = Field(default="USD", min_length=3, max_length=3)
    competition_mode: bool = False


class ProposalIn(BaseModel):
    proposal_text: str = Field(min_length=1, max_length=5000)
    proposed_price: int | None = Field(default=None, gt=0)


class DeliverIn(BaseModel):
    deliverable: str = Field(min_length=1)


class DisputeIn(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


class EvidenceIn(BaseModel):
    content: str
    evidence_type: str = "text"


class CancelIn(BaseModel):
    reason: str = ""


class ReviewIn(BaseModel):
    rating: int = Field(ge=1, le=5)
    review_text: str = ""


class ResolveIn(BaseModel):
    release_to_seller: bool
    note: str = ""


# ── Participants ──────────────────────────────────────────────────────


@app.post("/participants")
def api_register_participant(p: ParticipantIn):
    """Register an agent or human. The API key is only ever returned here."""
    participant, api_key = get_services().participants.register(
        p.display_name, kind=p.kind, wallet_ref=p.wallet_ref,
    )
    return {"ok": True, "participant": participant.to_dict(), "api_key": api_key}


@app.get("/participants/{participant_id}")
def api_get_participant(participant_id: str):
    return {"ok": True, "participant": get_services().participants.get(participant_id).to_dict()}


@app.post("/participants/me/rotate-key")
def api_rotate_key(caller: Caller = Depends(current_caller)):
    """Issue a new API key. The old key stops working immediately."""
    api_key = get_services().participants.rotate_key(require_caller(caller))
    return {"ok": True, "participant_id": caller.participant_id, "api_key": api_key}


# ── Listings ──────────────────────────────────────────────────────────


@app.post("/listings")
def api_create_listing(body: ListingIn, caller: Caller = Depends(current_caller)):
    owner_id = require_caller(caller)
    listing = get_services().listings.create(
        owner_id, body.title, body.price, listing_type=body.listing_type,
        description=body.description, currency=body.currency,
        competition_mode=body.competition_mode,
    )
    return {"ok": True, "listing": listing.to_dict()}


@app.get("/listings")
def api_list_listings(listing_type: str | None = None, limit: int = 50):
    """Open listings, newest first."""
    listings = get_services().listings.list_open(listing_type=listing_type, limit=limit)
    return {"ok": True, "listings": [l.to_dict() for l in listings]}


@app.get("/listings/{listing_id}")
def api_get_listing(listing_id: str):
    return {"ok": True, "listing": get_services().listings.get(listing_id).to_dict()}


@app.post("/listings/{listing_id}/withdraw")
def api_withdraw_listing(listing_id: str, caller: Caller = Depends(current_caller)):
    listing = get_services().listings.withdraw(listing_id, require_caller(caller))
    return {"ok": True, "listing": listing.to_dict()}


@app.post("/listings/{listing_id}/claim")
def api_claim_listing(listing_id: str, caller: Caller = Depends(current_caller)):
    """Seller claims an open bounty. Concurrent claims: one wins, the rest get 409."""
    return {"ok": True, "transaction": get_services().escrow.claim(listing_id, caller)}


@app.post("/listings/{listing_id}/buy")
def api_buy_listing(listing_id: str, caller: Caller = Depends(current_caller)):
    return {"ok": True, "transaction": get_services().escrow.purchase(listing_id, caller)}


# ── Proposals ─────────────────────────────────────────────────────────


@app.post("/listings/{listing_id}/proposals")
def api_submit_proposal(listing_id: str, body: ProposalIn,
                        caller: Caller = Depends(current_caller)):
    proposal = get_services().proposals.submit(
        listing_id, caller, body.proposal_text, proposed_price=body.proposed_price,
    )
    return {"ok": True, "proposal": proposal.to_dict()}


@app.get("/listings/{listing_id}/proposals")
def api_list_proposals(listing_id: str, status: str | None = None,
                       caller: Caller = Depends(current_caller)):
    """Owner sees every proposal; anyone else sees only their own."""
    caller_id = require_caller(caller)
    svc = get_services()
    proposals = svc.proposals.list_for_listing(listing_id, status=status)
    listing = svc.listings.get(listing_id)
    if listing.owner_id != caller_id and not caller.is_admin:
        proposals = [p for p in proposals if p.agent_id == caller_id]
    return {"ok": True, "proposals": [p.to_dict() for p in proposals]}


@app.post("/proposals/{proposal_id}/shortlist")
def api_shortlist_proposal(proposal_id: str, caller: Caller = Depends(current_caller)):
    return {"ok": True, "proposal": get_services().proposals.shortlist(proposal_id, caller).to_dict()}


@app.post("/proposals/{proposal_id}/decline")
def api_decline_proposal(proposal_id: str, caller: Caller = Depends(current_caller)):
    return {"ok": True, "proposal": get_services().proposals.decline(proposal_id, caller).to_dict()}


@app.post("/proposals/{proposal_id}/accept")
def api_accept_proposal(proposal_id: str, caller: Caller = Depends(current_caller)):
    result = get_services().proposals.accept(proposal_id, caller)
    return {"ok": True, **result}


# ── Transactions ──────────────────────────────────────────────────────


def _require_party(tx: dict, caller: Caller):
    if caller.is_admin:
        return
    caller_id = require_caller(caller)
    if caller_id not in (tx["buyer_id"], tx["seller_id"]):
        raise Unauthorized("Only the buyer or seller can view this transaction")


@app.get("/transactions")
def api_list_transactions(agent_id: str | None = None, state: str | None = None,
                          role: str | None = None, limit: int = 50,
                          caller: Caller = Depends(current_caller)):
    """Transactions for agent_id (defaults to the caller). Admins may list all."""
    if not caller.is_admin:
        caller_id = require_caller(caller)
        if agent_id and agent_id != caller_id:
            raise Unauthorized("Participants can only list their own transactions")
        agent_id = caller_id
    txs = get_services().escrow.list_transactions(agent_id, state=state, role=role, limit=limit)
    return {"ok": True, "transactions": txs}


@app.get("/transactions/{transaction_id}")
def api_get_transaction(transaction_id: str, caller: Caller = Depends(current_caller)):
    """State, projected timestamps, and minutes left in the dispute window."""
    tx = get_services().escrow.get_transaction(transaction_id)
    _require_party(tx, caller)
    return {"ok": True, "transaction": tx}


@app.get("/transactions/{transaction_id}/timeline")
def api_transaction_timeline(transaction_id: str, caller: Caller = Depends(current_caller)):
    svc = get_services()
    _require_party(svc.escrow.get_transaction(transaction_id), caller)
    return {"ok": True, "transaction_id": transaction_id,
            "events": svc.escrow.timeline(transaction_id)}


@app.post("/transactions/{transaction_id}/deliver")
def api_deliver(transaction_id: str, body: DeliverIn, caller: Caller = Depends(current_caller)):
    tx = get_services().escrow.deliver(transaction_id, caller, body.deliverable)
    return {"ok": True, "transaction": tx}


@app.post("/transactions/{transaction_id}/release")
def api_release(transaction_id: str, caller: Caller = Depends(current_caller)):
    return {"ok": True, "transaction": get_services().escrow.release(transaction_id, caller)}


@app.post("/transactions/{transaction_id}/dispute")
def api_dispute(transaction_id: str, body: DisputeIn, caller: Caller = Depends(current_caller)):
    tx = get_services().escrow.dispute(transaction_id, caller, body.reason)
    return {"ok": True, "transaction": tx}


@app.post("/transactions/{transaction_id}/evidence")
def api_add_evidence(transaction_id: str, body: EvidenceIn,
                     caller: Caller = Depends(current_caller)):
    event = get_services().escrow.add_evidence(
        transaction_id, caller, body.content, evidence_type=body.evidence_type,
    )
    return {"ok": True, "event": event}


@app.post("/transactions/{transaction_id}/cancel")
def api_cancel(transaction_id: str, body: CancelIn | None = None,
               caller: Caller = Depends(current_caller)):
    reason = body.reason if body else ""
    return {"ok": True, "transaction": get_services().escrow.cancel(transaction_id, caller, reason)}


@app.post("/transactions/{transaction_id}/review")
def api_review(transaction_id: str, body: ReviewIn, caller: Caller = Depends(current_caller)):
    review = get_services().escrow.submit_review(
        transaction_id, caller, body.rating, body.review_text,
    )
    return {"ok": True, "review": review}


# ── Admin ─────────────────────────────────────────────────────────────


def _require_admin(caller: Caller):
    if not caller.is_admin:
        raise Unauthorized("Admin token required")


@app.post("/admin/transactions/{transaction_id}/resolve")
def api_resolve_dispute(transaction_id: str, body: ResolveIn,
                        caller: Caller = Depends(current_caller)):
    tx = get_services().escrow.resolve_dispute(
        transaction_id, caller, body.release_to_seller, note=body.note,
    )
    return {"ok": True, "transaction": tx}


@app.post("/admin/sweep")
def api_sweep(caller: Caller = Depends(current_caller)):
    """Run one dispute-window sweep now."""
    _require_admin(caller)
    return {"ok": True, "sweep": get_services().scheduler.sweep()}


@app.post("/admin/participants/{participant_id}/deactivate")
def api_deactivate_participant(participant_id: str, caller: Caller = Depends(current_caller)):
    _require_admin(caller)
    svc = get_services()
    svc.participants.set_active(participant_id, False)
    return {"ok": True, "participant": svc.participants.get(participant_id).to_dict()}


@app.post("/admin/participants/{participant_id}/activate")
def api_activate_participant(participant_id: str, caller: Caller = Depends(current_caller)):
    _require_admin(caller)
    svc = get_services()
    svc.participants.set_active(participant_id, True)
    return {"ok": True, "participant": svc.participants.get(participant_id).to_dict()}


@app.get("/admin/transactions/{transaction_id}/verify")
def api_verify_chain(transaction_id: str, caller: Caller = Depends(current_caller)):
    _require_admin(caller)
    return {"ok": True, "verification": get_services().escrow.verify_chain(transaction_id)}


# ── Reputation ────────────────────────────────────────────────────────


@app.get("/agents/{agent_id}/reputation")
def api_agent_reputation(agent_id: str):
    svc = get_services()
    svc.participants.get(agent_id)
    score = svc.reputation.score(agent_id)
    return {"ok": True, "reputation": score.to_dict()}


@app.get("/agents/{agent_id}/reputation/feedback")
def api_agent_feedback(agent_id: str):
    """Recency-weighted average of the agent's review ratings."""
    svc = get_services()
    svc.participants.get(agent_id)
    return {"ok": True, **svc.reputation.feedback_score(agent_id)}


@app.get("/leaderboard")
def api_leaderboard(limit: int = 20):
    return {"ok": True, "leaderboard": get_services().reputation.get_leaderboard(limit)}


# ── Notifications ─────────────────────────────────────────────────────


@app.get("/notifications")
def api_notifications(unread_only: bool = False, mark_read: bool = False, limit: int = 50,
                      caller: Caller = Depends(current_caller)):
    participant_id = require_caller(caller)
    inbox = get_services().inbox
    items = inbox.inbox(participant_id, unread_only=unread_only, limit=limit)
    if mark_read:
        inbox.mark_read(participant_id)
    return {"ok": True, "notifications": items}


# ── Health ────────────────────────────────────────────────────────────


@app.get("/healthz")
def healthz():
    return {"ok": True, "status": "healthy", "env": BOUNTYLINE_ENV}


@app.get("/readyz")
def readyz():
    svc = get_services()
    if BOUNTYLINE_ENV not in {"dev", "development", "test"} and not os.environ.get(
        "BOUNTYLINE_ADMIN_TOKEN"
    ):
        raise HTTPException(
            status_code=503, detail="BOUNTYLINE_ADMIN_TOKEN must be set in non-dev environments"
        )
    try:
        svc.db.ping()
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Storage not ready: {e}")
    return {"ok": True, "status": "ready", "backend": svc.db.backend,
            "rail": svc.escrow.rail.name}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("BOUNTYLINE_PORT", "9600")))
