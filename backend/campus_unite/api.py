from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import analytics, auth, models, schemas
from .config import settings
from .database import engine, get_db
from .domain import EventSnapshot, ScoredEvent, UserProfile
from .errors import CampusUniteError, NotFound
from .event_store import EventStore, parse_event_id
from .external_scorer import build_external_scorer
from .logging_utils import RequestIdMiddleware, configure_logging, log_event, log_exception, log_warning
from .moderation import ModerationWorkflow
from .profiles import update_interests
from .ranking import RankingEngine
from .risk import FLAG_THRESHOLD

configure_logging()


def _run_migrations():
    """Run Alembic migrations to latest head. Controlled via settings.auto_run_migrations."""
    from alembic import command
    from alembic.config import Config

    base_dir = Path(__file__).resolve().parent.parent
    alembic_ini = base_dir / "alembic.ini"
    if not alembic_ini.exists():
        log_warning("migrations_skipped", reason="alembic.ini not found")
        return
    cfg = Config(str(alembic_ini))
    cfg.set_main_option("script_location", str(base_dir / "alembic"))
    try:
        command.upgrade(cfg, "head")
    except Exception:
        log_exception("migrations_failed")
        raise
    log_event("migrations_applied", revision="head")


def _check_configuration():
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is required")
    if not settings.secret_key:
        raise RuntimeError("SECRET_KEY is required")
    if settings.rsvp_max_retries < 1:
        raise RuntimeError("RSVP_MAX_RETRIES must be at least 1")
    if settings.external_scorer_url and settings.external_scorer_deadline_seconds <= 0:
        raise RuntimeError("EXTERNAL_SCORER_DEADLINE_SECONDS must be positive")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _check_configuration()
    if settings.auto_run_migrations:
        _run_migrations()
    elif settings.auto_create_tables:
        models.Base.metadata.create_all(bind=engine)

    _app.state.external_scorer = build_external_scorer()
    if _app.state.external_scorer is not None:
        log_event("external_scorer_enabled", url=settings.external_scorer_url)
    try:
        yield
    finally:
        if _app.state.external_scorer is not None:
            _app.state.external_scorer.close()


app = FastAPI(title="Campus Unite API", version="1.0.0", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins or [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CampusUniteError)
async def domain_error_handler(request: Request, exc: CampusUniteError):
    log_event(
        "request_rejected",
        code=exc.code,
        status_code=exc.status_code,
        method=request.method,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path"))
            or "body",
            "message": err.get("msg", "invalid value"),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "code": "validation_error", "message": "Invalid request.", "errors": errors},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Error"
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "code": f"http_{exc.status_code}", "message": message},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    log_exception("storage_failure", method=request.method, path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "code": "internal_error", "message": "An unexpected error occurred."},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    log_exception("unhandled_error", method=request.method, path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "code": "internal_error", "message": "An unexpected error occurred."},
    )


def get_store(db: Session = Depends(get_db)) -> EventStore:
    return EventStore(db)


def get_workflow(store: EventStore = Depends(get_store)) -> ModerationWorkflow:
    return ModerationWorkflow(store.db, store)


def get_ranking_engine(request: Request, store: EventStore = Depends(get_store)) -> RankingEngine:
    return RankingEngine(store, scorer=getattr(request.app.state, "external_scorer", None))


def _ok(data):
    return {"success": True, "data": data}


def _event(event: models.Event) -> schemas.EventResponse:
    return schemas.EventResponse.model_validate(event)


def _review_event(event: models.Event) -> schemas.ReviewEventResponse:
    item = schemas.ReviewEventResponse.model_validate(event)
    return item.model_copy(update={"flagged": (event.moderation_score or 0.0) >= FLAG_THRESHOLD})


def _snapshot_event(snapshot: EventSnapshot) -> schemas.EventResponse:
    return schemas.EventResponse(
        id=snapshot.id,
        organizer_id=snapshot.organizer_id,
        title=snapshot.title,
        description=snapshot.description,
        category=snapshot.category,
        mode=snapshot.mode,
        tags=list(snapshot.tags),
        start_time=snapshot.start_time,
        end_time=snapshot.end_time,
        venue=snapshot.venue,
        city=snapshot.city,
        capacity=snapshot.capacity,
        rsvp_count=snapshot.attendee_count,
        status=models.EventStatus.approved.value,
        featured=snapshot.featured,
    )


def _recommendation(item: ScoredEvent) -> schemas.RecommendationResponse:
    breakdown = None
    if item.breakdown is not None:
        breakdown = schemas.ScoreBreakdownResponse(
            tag_score=item.breakdown.tag_score,
            recency_score=item.breakdown.recency_score,
            popularity_score=item.breakdown.popularity_score,
            matched_tags=list(item.breakdown.matched_tags),
        )
    return schemas.RecommendationResponse(
        event=_snapshot_event(item.event),
        score=item.score,
        scorer=item.scorer,
        reason=item.reason,
        breakdown=breakdown,
    )


def _profile(profile: UserProfile) -> schemas.ProfileResponse:
    return schemas.ProfileResponse(id=profile.id, role=profile.role, interests=sorted(profile.interests, key=str.lower))


@app.get("/")
def read_root():
    return {"message": "Hello from Campus Unite API!"}


@app.get("/api/health")
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok", "database": "ok"}
    except SQLAlchemyError:
        log_exception("health_check_failed")
        raise HTTPException(status_code=503, detail="Database unavailable")


@app.get("/api/events", response_model=schemas.Envelope[schemas.PaginatedEvents])
def list_events(
    category: Optional[str] = None,
    mode: Optional[str] = None,
    city: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    organizer_id: Optional[int] = None,
    page: int = 1,
    page_size: int = 20,
    store: EventStore = Depends(get_store),
    current_user: Optional[UserProfile] = Depends(auth.get_optional_profile),
):
    filters = {
        key: value
        for key, value in {
            "category": category,
            "mode": mode,
            "city": city,
            "status": status_filter,
            "organizer_id": organizer_id,
        }.items()
        if value is not None
    }
    events = store.list(filters, current_user)
    items = events.page(page, page_size)
    return _ok(
        {"items": [_event(e) for e in items], "total": events.count(), "page": page, "page_size": page_size}
    )


@app.post("/api/events", response_model=schemas.Envelope[schemas.EventResponse], status_code=status.HTTP_201_CREATED)
def create_event(
    payload: schemas.EventDraft,
    store: EventStore = Depends(get_store),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    return _ok(_event(store.create(payload, current_user)))


@app.get("/api/events/{event_id}", response_model=schemas.Envelope[schemas.EventResponse])
def get_event(
    event_id: str,
    store: EventStore = Depends(get_store),
    current_user: Optional[UserProfile] = Depends(auth.get_optional_profile),
):
    if current_user is not None:
        return _ok(_event(store.get(event_id, current_user)))
    event = store.get(event_id)
    if event.status != models.EventStatus.approved.value:
        raise NotFound("Event not found.")
    return _ok(_event(event))


@app.put("/api/events/{event_id}", response_model=schemas.Envelope[schemas.EventResponse])
def update_event(
    event_id: str,
    payload: schemas.EventPatch,
    store: EventStore = Depends(get_store),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    return _ok(_event(store.update(event_id, payload, current_user)))


@app.delete("/api/events/{event_id}", response_model=schemas.Envelope[schemas.EventDeletedResponse])
def delete_event(
    event_id: str,
    store: EventStore = Depends(get_store),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    return _ok(store.delete(event_id, current_user))


@app.post("/api/events/{event_id}/rsvp", response_model=schemas.Envelope[schemas.RsvpResponse])
def toggle_rsvp(
    event_id: str,
    store: EventStore = Depends(get_store),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    return _ok(store.rsvp(event_id, current_user.id))


@app.post("/api/events/{event_id}/bookmark", response_model=schemas.Envelope[schemas.BookmarkResponse])
def bookmark_event(
    event_id: str,
    store: EventStore = Depends(get_store),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    return _ok(store.bookmark(event_id, current_user.id))


@app.delete("/api/events/{event_id}/bookmark", response_model=schemas.Envelope[schemas.BookmarkResponse])
def unbookmark_event(
    event_id: str,
    store: EventStore = Depends(get_store),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    return _ok(store.unbookmark(event_id, current_user.id))


@app.get("/api/me", response_model=schemas.Envelope[schemas.ProfileResponse])
def read_me(current_user: UserProfile = Depends(auth.get_current_profile)):
    return _ok(_profile(current_user))


@app.put("/api/me/interests", response_model=schemas.Envelope[schemas.ProfileResponse])
def update_my_interests(
    payload: schemas.InterestsUpdate,
    db: Session = Depends(get_db),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    profile = update_interests(db, current_user, skills=payload.skills, hobbies=payload.hobbies)
    return _ok(_profile(profile))


@app.get("/api/me/events", response_model=schemas.Envelope[schemas.MyEventsResponse])
def my_events(
    store: EventStore = Depends(get_store),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    return _ok(
        {
            "organized": [_event(e) for e in store.list_organized(current_user)],
            "attending": [_event(e) for e in store.list_attending(current_user.id)],
        }
    )


@app.get("/api/me/bookmarks", response_model=schemas.Envelope[List[schemas.EventResponse]])
def my_bookmarks(
    store: EventStore = Depends(get_store),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    return _ok([_event(e) for e in store.list_bookmarked(current_user.id)])


@app.get("/api/recommendations", response_model=schemas.Envelope[List[schemas.RecommendationResponse]])
def recommendations(
    search: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=100),
    ranking: RankingEngine = Depends(get_ranking_engine),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    results = ranking.recommend(current_user, search=search, limit=limit or settings.recommendations_limit)
    return _ok([_recommendation(item) for item in results])


@app.get("/api/moderation/queue", response_model=schemas.Envelope[List[schemas.ReviewEventResponse]])
def moderation_queue(
    workflow: ModerationWorkflow = Depends(get_workflow),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    return _ok([_review_event(e) for e in workflow.queue(current_user)])


@app.post(
    "/api/moderation/events/{event_id}/approve",
    response_model=schemas.Envelope[schemas.ModerationRecordResponse],
)
def approve_event(
    event_id: str,
    workflow: ModerationWorkflow = Depends(get_workflow),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    return _ok(schemas.ModerationRecordResponse.model_validate(workflow.approve(event_id, current_user)))


@app.post(
    "/api/moderation/events/{event_id}/deny",
    response_model=schemas.Envelope[schemas.ModerationRecordResponse],
)
def deny_event(
    event_id: str,
    payload: Optional[schemas.DenyRequest] = None,
    workflow: ModerationWorkflow = Depends(get_workflow),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    record = workflow.deny(event_id, current_user, payload.reason if payload else None)
    return _ok(schemas.ModerationRecordResponse.model_validate(record))


@app.get(
    "/api/moderation/events/{event_id}/history",
    response_model=schemas.Envelope[schemas.ModerationHistoryResponse],
)
def moderation_history(
    event_id: str,
    workflow: ModerationWorkflow = Depends(get_workflow),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    records = [schemas.ModerationRecordResponse.model_validate(r) for r in workflow.history(event_id, current_user)]
    event_id_value = parse_event_id(event_id)
    return _ok(
        {
            "event_id": event_id_value,
            "current_status": workflow.status_from_history(event_id_value),
            "records": records,
        }
    )


@app.put("/api/admin/events/{event_id}/feature", response_model=schemas.Envelope[schemas.EventResponse])
def feature_event(
    event_id: str,
    store: EventStore = Depends(get_store),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    return _ok(_event(store.toggle_featured(event_id, current_user)))


@app.get("/api/admin/dashboard", response_model=schemas.Envelope[schemas.DashboardStats])
def admin_dashboard(
    db: Session = Depends(get_db),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    return _ok(analytics.dashboard_stats(db, current_user))


@app.get("/api/admin/analytics/rsvps", response_model=schemas.Envelope[List[schemas.RsvpDayStat]])
def admin_rsvps_by_day(
    days: int = 30,
    db: Session = Depends(get_db),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    return _ok(analytics.rsvps_by_day(db, current_user, days=days))


@app.get("/api/admin/analytics/categories", response_model=schemas.Envelope[List[schemas.CategoryStat]])
def admin_categories(
    db: Session = Depends(get_db),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    return _ok(analytics.category_distribution(db, current_user))


@app.get("/api/admin/analytics/organizers", response_model=schemas.Envelope[List[schemas.OrganizerStat]])
def admin_top_organizers(
    limit: int = 10,
    db: Session = Depends(get_db),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    return _ok(analytics.top_organizers(db, current_user, limit=limit))


@app.get("/api/admin/reports/top-tags", response_model=schemas.Envelope[List[schemas.TagStat]])
def admin_top_tags(
    limit: int = 10,
    db: Session = Depends(get_db),
    current_user: UserProfile = Depends(auth.get_current_profile),
):
    return _ok(analytics.top_tags(db, current_user, limit=limit))
