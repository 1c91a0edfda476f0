"""
UGC Creator Payments — FastAPI application.

Thin HTTP layer over the payment engine in services/. The caller's
identity is resolved upstream and arrives as headers:

  X-Actor-Role   company_admin | creator
  X-Company-Id   company the actor belongs to
  X-Creator-Id   the creator's own id (creator role only)

Endpoints are admin-only unless noted, and every record touched is checked
against the actor's company.

  GET    /api/videos/{id}/payments          live vs frozen view (admin or owning creator)
  POST   /api/videos                        submit a video (admin or the creator)
  POST   /api/videos/{id}/base-cpm/toggle   freeze / unfreeze base + CPM
  POST   /api/tier-payments/{id}/toggle     freeze / unfreeze one tier bonus
  PUT    /api/videos/{id}/views             manual view count edit
  PUT    /api/videos/{id}/status            approve / reject / back to pending
  POST   /api/metrics/refresh               batch metrics from the scraper
  PUT    /api/tiers/{scope}/{scope_id}      replace a tier set, regenerate rows
  PUT    /api/rates/{scope}/{scope_id}      edit base pay / CPM at one level
  PUT    /api/creators/{id}/niche           move a creator between niches
  GET    /api/creators/{id}/total-paid      (admin or the creator themself)
  GET    /api/companies/{id}/total-paid
  POST   /api/companies/{id}/report         generate .xlsx report
  GET    /api/download/{filename}           serve a generated report
  DELETE /api/videos/{id}                   cascades to tier payments
  DELETE /api/creators/{id}                 cascades to videos and tiers

Error handling (body: {"detail": {"status": "error", "message": ...}}):
  - InvalidArgument        → 400
  - actor not allowed      → 403
  - NotFound               → 404
  - ConcurrentUpdateError  → 409
  - DataIntegrityError     → 500
  - PersistenceError       → 502
"""

import os
import logging
import threading
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

import config
from models.schemas import (
    ZERO,
    Actor,
    ActorRole,
    Creator,
    CreatorNicheRequest,
    MetricsRefreshResult,
    MetricsUpdate,
    RateChangeImpact,
    RatesUpdateRequest,
    ReportResponse,
    TierScope,
    TierSetRequest,
    TierSetResponse,
    TotalPaidResponse,
    Video,
    VideoPaymentView,
    VideoStatusRequest,
    VideoSubmitRequest,
    VideoTierPayment,
    ViewsUpdateRequest,
)
from services.aggregation import (
    build_creator_summaries,
    build_paid_line_items,
    find_integrity_issues,
    load_tier_payments,
    total_paid_for_company,
    total_paid_for_creator,
)
from services.errors import (
    ConcurrentUpdateError,
    InvalidArgument,
    NotFound,
    PaymentError,
    PersistenceError,
)
from services.excel_export import generate_report
from services.freeze import build_video_payment_view, toggle_base_cpm_paid, toggle_tier_paid
from services.rates import update_rates
from services.sql_store import SqlPaymentStore
from services.store import new_id
from services.tiers import save_tier_set
from services.videos import (
    apply_metrics_refresh,
    assign_creator_niche,
    delete_creator,
    delete_video,
    set_video_status,
    submit_video,
    update_views,
)

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------
app = FastAPI(
    title="UGC Creator Payments",
    description="Computes, freezes and reconciles creator payments for UGC campaigns",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in config.ALLOWED_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Ensure output directory exists at startup
os.makedirs(config.OUTPUT_DIR, exist_ok=True)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# ===========================================================================
# Dependencies
# ===========================================================================

_store: Optional[SqlPaymentStore] = None
_store_lock = threading.Lock()


def get_store():
    """Process-wide store, created once on first use from DATABASE_URL."""
    global _store
    if _store is None:
        with _store_lock:
            if _store is None:
                _store = SqlPaymentStore.from_url(config.DATABASE_URL)
    return _store


def get_actor(
    x_actor_role: str = Header(...),
    x_company_id: str = Header(...),
    x_creator_id: Optional[str] = Header(None),
) -> Actor:
    try:
        role = ActorRole(x_actor_role)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={"status": "error", "message": f"Unknown actor role: {x_actor_role}"},
        )
    if role == ActorRole.CREATOR and not x_creator_id:
        raise HTTPException(
            status_code=400,
            detail={"status": "error", "message": "X-Creator-Id is required for the creator role"},
        )
    return Actor(role=role, company_id=x_company_id, creator_id=x_creator_id)


# ===========================================================================
# Error mapping
# ===========================================================================

def _status_for(error: PaymentError) -> int:
    if isinstance(error, InvalidArgument):
        return 400
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, ConcurrentUpdateError):
        return 409
    if isinstance(error, PersistenceError):
        return 502
    # DataIntegrityError and anything unexpected
    return 500


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    status_code = _status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(f"{request.method} {request.url.path} failed ({status_code}): {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": {"status": "error", "message": str(exc)}},
    )


def _forbidden(message: str) -> HTTPException:
    return HTTPException(status_code=403, detail={"status": "error", "message": message})


def _require_admin(actor: Actor, company_id: str) -> None:
    if actor.role != ActorRole.COMPANY_ADMIN:
        raise _forbidden("Company admin role required")
    if actor.company_id != company_id:
        raise _forbidden(f"Company {company_id} is outside the actor's company")


def _require_admin_or_creator(actor: Actor, company_id: str, creator_id: str) -> None:
    if actor.role == ActorRole.CREATOR:
        if actor.company_id != company_id or actor.creator_id != creator_id:
            raise _forbidden("Creators can only access their own records")
        return
    _require_admin(actor, company_id)


def _scope_company(store, scope: TierScope) -> str:
    if scope.kind == "creator":
        return store.get_creator(scope.id).company_id
    if scope.kind == "niche":
        return store.get_niche(scope.id).company_id
    return store.get_company(scope.id).id


# ===========================================================================
# Videos
# ===========================================================================

@app.get("/api/videos/{video_id}/payments", response_model=VideoPaymentView)
def get_video_payments(video_id: str, store=Depends(get_store), actor: Actor = Depends(get_actor)):
    """Live amounts from current rates next to the frozen (paid) amounts."""
    video = store.get_video(video_id)
    _require_admin_or_creator(actor, video.company_id, video.creator_id)
    return build_video_payment_view(store, video_id)


@app.post("/api/videos", response_model=Video, status_code=201)
def create_video(request: VideoSubmitRequest, store=Depends(get_store), actor: Actor = Depends(get_actor)):
    """Submit a video; its tier payment rows are created with it."""
    creator = store.get_creator(request.creator_id)
    _require_admin_or_creator(actor, creator.company_id, creator.id)

    video = Video(
        id=new_id(),
        company_id=creator.company_id,
        creator_id=creator.id,
        title=request.title,
        platform=request.platform,
        video_url=request.video_url,
        views=request.views,
    )
    return submit_video(store, video)


@app.post("/api/videos/{video_id}/base-cpm/toggle", response_model=Video)
def toggle_video_base_cpm(video_id: str, store=Depends(get_store), actor: Actor = Depends(get_actor)):
    _require_admin(actor, store.get_video(video_id).company_id)
    return toggle_base_cpm_paid(store, video_id)


@app.post("/api/tier-payments/{tier_payment_id}/toggle", response_model=VideoTierPayment)
def toggle_tier_payment(tier_payment_id: str, store=Depends(get_store), actor: Actor = Depends(get_actor)):
    row = store.get_tier_payment(tier_payment_id)
    _require_admin(actor, store.get_video(row.video_id).company_id)
    return toggle_tier_paid(store, tier_payment_id)


@app.put("/api/videos/{video_id}/views", response_model=Video)
def set_video_views(
    video_id: str,
    request: ViewsUpdateRequest,
    store=Depends(get_store),
    actor: Actor = Depends(get_actor),
):
    _require_admin(actor, store.get_video(video_id).company_id)
    return update_views(store, video_id, request.views)


@app.put("/api/videos/{video_id}/status", response_model=Video)
def change_video_status(
    video_id: str,
    request: VideoStatusRequest,
    store=Depends(get_store),
    actor: Actor = Depends(get_actor),
):
    _require_admin(actor, store.get_video(video_id).company_id)
    return set_video_status(store, video_id, request.status)


@app.delete("/api/videos/{video_id}")
def remove_video(video_id: str, store=Depends(get_store), actor: Actor = Depends(get_actor)):
    _require_admin(actor, store.get_video(video_id).company_id)
    delete_video(store, video_id)
    return {"status": "success", "video_id": video_id}


# ===========================================================================
# Metrics refresh
# ===========================================================================

@app.post("/api/metrics/refresh", response_model=MetricsRefreshResult)
def refresh_metrics(
    updates: list[MetricsUpdate],
    store=Depends(get_store),
    actor: Actor = Depends(get_actor),
):
    """
    Apply a batch of scraped metrics. Records for videos outside the
    actor's company are counted as failed and never written.
    """
    _require_admin(actor, actor.company_id)

    allowed: list[MetricsUpdate] = []
    rejected: list[str] = []
    for update in updates:
        try:
            company_id = store.get_video(update.video_id).company_id
        except NotFound:
            allowed.append(update)  # reported as failed by apply_metrics_refresh
            continue
        if company_id == actor.company_id:
            allowed.append(update)
        else:
            rejected.append(update.video_id)

    if rejected:
        logger.warning(f"Ignoring metrics for {len(rejected)} videos outside company {actor.company_id}")

    result = apply_metrics_refresh(store, allowed)
    result.processed += len(rejected)
    result.failed += len(rejected)
    result.failed_video_ids.extend(rejected)
    return result


# ===========================================================================
# Tier sets and rates
# ===========================================================================

@app.put("/api/tiers/{scope}/{scope_id}", response_model=TierSetResponse)
def put_tier_set(
    scope: Literal["creator", "niche", "company"],
    scope_id: str,
    request: TierSetRequest,
    store=Depends(get_store),
    actor: Actor = Depends(get_actor),
):
    """Replace the tier set at a scope and regenerate affected videos' rows."""
    tier_scope = TierScope(kind=scope, id=scope_id)
    _require_admin(actor, _scope_company(store, tier_scope))

    tiers, results = save_tier_set(store, tier_scope, request.tiers)
    return TierSetResponse(status="success", tiers=tiers, regenerated_videos=len(results))


@app.put("/api/rates/{scope}/{scope_id}", response_model=RateChangeImpact)
def put_rates(
    scope: Literal["creator", "niche", "company"],
    scope_id: str,
    request: RatesUpdateRequest,
    store=Depends(get_store),
    actor: Actor = Depends(get_actor),
):
    """
    Set base pay / CPM at one level. affected_paid_videos counts paid videos
    whose frozen amounts will no longer match the live figure.
    """
    rate_scope = TierScope(kind=scope, id=scope_id)
    _require_admin(actor, _scope_company(store, rate_scope))
    return update_rates(store, rate_scope, request.base_pay, request.cpm)


# ===========================================================================
# Creators
# ===========================================================================

@app.put("/api/creators/{creator_id}/niche", response_model=Creator)
def put_creator_niche(
    creator_id: str,
    request: CreatorNicheRequest,
    store=Depends(get_store),
    actor: Actor = Depends(get_actor),
):
    _require_admin(actor, store.get_creator(creator_id).company_id)
    return assign_creator_niche(store, creator_id, request.niche_id)


@app.delete("/api/creators/{creator_id}")
def remove_creator(creator_id: str, store=Depends(get_store), actor: Actor = Depends(get_actor)):
    _require_admin(actor, store.get_creator(creator_id).company_id)
    delete_creator(store, creator_id)
    return {"status": "success", "creator_id": creator_id}


# ===========================================================================
# Totals
# ===========================================================================

@app.get("/api/creators/{creator_id}/total-paid", response_model=TotalPaidResponse)
def get_creator_total_paid(creator_id: str, store=Depends(get_store), actor: Actor = Depends(get_actor)):
    creator = store.get_creator(creator_id)
    _require_admin_or_creator(actor, creator.company_id, creator.id)

    total, video_count = total_paid_for_creator(store, creator_id)
    return TotalPaidResponse(scope=TierScope.creator(creator_id), total_paid=total, video_count=video_count)


@app.get("/api/companies/{company_id}/total-paid", response_model=TotalPaidResponse)
def get_company_total_paid(company_id: str, store=Depends(get_store), actor: Actor = Depends(get_actor)):
    _require_admin(actor, company_id)

    total, video_count = total_paid_for_company(store, company_id)
    return TotalPaidResponse(scope=TierScope.company_wide(company_id), total_paid=total, video_count=video_count)


# ===========================================================================
# POST /api/companies/{id}/report — Excel report of frozen payments
# ===========================================================================

@app.post("/api/companies/{company_id}/report", response_model=ReportResponse)
def create_report(company_id: str, store=Depends(get_store), actor: Actor = Depends(get_actor)):
    """
    Build the 3-tab report for a company. Inconsistent records are listed
    on the Integrity Issues tab and left out of the totals.
    """
    _require_admin(actor, company_id)

    logger.info(f"=" * 60)
    logger.info(f"PAYMENT REPORT: company {company_id}")
    logger.info(f"=" * 60)

    summaries = build_creator_summaries(store, company_id, skip_inconsistent=True)
    line_items = build_paid_line_items(store, company_id, skip_inconsistent=True)
    videos = store.list_videos(company_id=company_id)
    issues = find_integrity_issues(videos, load_tier_payments(store, videos))

    filepath = generate_report(
        summaries, line_items, issues, company_id=company_id, output_dir=_report_dir(company_id),
    )
    filename = os.path.basename(filepath)

    total_paid = sum((s.total_paid for s in summaries), ZERO)
    summary = {
        "total_creators": len(summaries),
        "total_paid": str(total_paid),
        "paid_line_items": len(line_items),
        "integrity_issues": len(issues),
    }
    logger.info(f"Report complete: {summary}")

    return ReportResponse(status="success", filename=filename, summary=summary)


# ===========================================================================
# GET /api/download/{filename} — Serve generated .xlsx files
# ===========================================================================

def _report_dir(company_id: str) -> str:
    """Reports are kept per company under OUTPUT_DIR/<company_id>/."""
    if company_id in ("", ".", "..") or os.path.basename(company_id) != company_id:
        raise InvalidArgument(f"Invalid company id for reports: {company_id!r}")
    return os.path.join(config.OUTPUT_DIR, company_id)


@app.get("/api/download/{filename}")
def download_report(filename: str, actor: Actor = Depends(get_actor)):
    """
    Download a generated .xlsx report of the actor's own company.

    Returns 404 if the file doesn't exist (including reports of other
    companies, which are never looked up).
    """
    _require_admin(actor, actor.company_id)

    if os.path.basename(filename) != filename:
        raise HTTPException(
            status_code=400,
            detail={"status": "error", "message": f"Invalid report name: {filename}"},
        )

    file_path = os.path.join(_report_dir(actor.company_id), filename)

    if not os.path.exists(file_path):
        raise HTTPException(
            status_code=404,
            detail={
                "status": "error",
                "message": f"Report not found: {filename}",
            },
        )

    return FileResponse(
        file_path,
        media_type=XLSX_MEDIA_TYPE,
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
        },
    )


# ===========================================================================
# Main entry point
# ===========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
