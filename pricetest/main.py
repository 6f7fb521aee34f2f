import io
import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, Response, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import config, models
from .aggregation import aggregate, build_analytics, date_window
from .assignment import resolve_assignment
from .automation import create_rule, delete_rule, process_automation_rules, set_enabled, update_rule
from .db import SessionLocal, engine
from .domain import (
    EVENT_PURCHASE,
    EVENT_TYPES,
    STATUS_COMPLETED,
    STATUS_DRAFT,
    STATUS_RUNNING,
    STATUSES,
    AutomationSettings,
    PriceTestConfig,
    TrackedEvent,
)
from .exceptions import ConcurrentUpdateError, ConfigurationError, UnknownRuleError
from .export import analytics_to_csv
from .geoip import resolve_country
from .hashing import visitor_id_from_request
from .lifecycle import TERMINAL_STATUSES, auto_complete, transition, validate_for_launch
from .schemas import (
    AutomationRequest,
    EventIn,
    PriceTestCreate,
    StatusUpdate,
    StopVariationRequest,
    WinnerConfirmation,
)
from .stats import calculate_statistical_significance, load_performance_csv
from .targeting import RequestContext
from .winner import analyze_winner, confirm_winner

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Price Testing")

# Create DB tables on startup (simple approach, good enough for this project)
models.Base.metadata.create_all(bind=engine)


@app.exception_handler(ConcurrentUpdateError)
async def concurrent_update_handler(request: Request, exc: ConcurrentUpdateError):
    logger.info("Rejected stale write: %s", exc)
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# Dependency that gives a DB session to routes
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _utcnow() -> datetime:
    # stored timestamps are naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _naive_utc(ts: datetime) -> datetime:
    if ts.tzinfo is not None:
        return ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def _get_test_or_404(db: Session, test_id: Optional[str]) -> models.PriceTest:
    if not test_id:
        raise HTTPException(status_code=400, detail="Test ID required")
    test = db.query(models.PriceTest).filter(models.PriceTest.id == str(test_id)).first()
    if not test:
        raise HTTPException(status_code=404, detail="Test not found")
    return test


def _commit(db: Session) -> None:
    try:
        db.commit()
    except StaleDataError as err:
        db.rollback()
        raise ConcurrentUpdateError("Test was modified concurrently, retry the request") from err


def _load_events(db: Session, test_id: str, start: datetime, end: datetime) -> List[TrackedEvent]:
    rows = (
        db.query(models.Event)
        .filter(models.Event.test_id == test_id, models.Event.ts >= start, models.Event.ts <= end)
        .order_by(models.Event.ts.asc())
        .all()
    )
    return [row.to_tracked() for row in rows]


def _matches_product(test: models.PriceTest, product_ids: List[str]) -> bool:
    if test.product_id in product_ids:
        return True
    for product in test.selected_products or []:
        if str(product.get("id")) in product_ids:
            return True
    return False


# Storefront ------------------------------------------------------------------

@app.get("/proxy")
def storefront_assignment(
    request: Request,
    response: Response,
    product_id: Optional[str] = None,
    variant_id: Optional[str] = None,
    test_price: Optional[float] = None,
    preview: bool = False,
    db: Session = Depends(get_db),
):
    """
    Tell the storefront which price this visitor should see.
    """
    if not product_id:
        raise HTTPException(status_code=400, detail="Product ID required")

    # Preview mode: the merchant is looking at a specific variation
    if preview and test_price is not None:
        return {
            "ok": True,
            "hasTest": True,
            "isPreview": True,
            "variation": variant_id or "A",
            "price": test_price,
            "isControl": variant_id in ("A", "control"),
        }

    now = _utcnow()
    product_ids = [pid for pid in (product_id, variant_id) if pid]
    rows = (
        db.query(models.PriceTest)
        .filter(models.PriceTest.status == STATUS_RUNNING)
        .order_by(models.PriceTest.created_at.desc())
        .all()
    )

    active: List[PriceTestConfig] = []
    expired = False
    for row in rows:
        if not _matches_product(row, product_ids):
            continue
        snapshot = row.to_config()
        finished = auto_complete(snapshot, now)
        if finished is not snapshot:
            row.apply_config(finished)
            expired = True
            continue
        active.append(snapshot)
    if expired:
        try:
            db.commit()
        except StaleDataError:
            # another request completed it first
            db.rollback()

    if not active:
        return {"ok": True, "hasTest": False, "originalPrice": None}

    headers = request.headers
    needs_country = any(t.targeting.countries for t in active)
    ctx = RequestContext(
        user_agent=headers.get("user-agent") or "",
        referrer=headers.get("referer") or headers.get("referrer") or "",
        query=request.url.query or "",
        country=resolve_country(headers) if needs_country else None,
    )

    visitor_id = visitor_id_from_request(request.cookies, headers, config.VISITOR_COOKIE)
    assignment = resolve_assignment(visitor_id, active, ctx, product_id=product_id)
    if assignment is None:
        return {"ok": True, "hasTest": False, "originalPrice": None}

    response.set_cookie(
        config.VISITOR_COOKIE,
        visitor_id,
        max_age=config.VISITOR_COOKIE_MAX_AGE,
        path="/",
        secure=True,
        samesite="lax",
    )
    return {"ok": True, **assignment.to_dict()}


@app.post("/proxy/events")
def track_event(body: EventIn, db: Session = Depends(get_db)):
    """
    Append one storefront event. Events are never updated afterwards.
    """
    if body.type not in EVENT_TYPES:
        raise HTTPException(status_code=400, detail="Invalid payload")

    payload = body.payload
    _get_test_or_404(db, payload.test_id)

    event = models.Event(
        type=body.type,
        test_id=payload.test_id,
        variation=payload.variation,
        product_id=payload.product_id,
        variant_id=payload.variant_id,
        qty=payload.qty,
        revenue_cents=payload.revenue_cents if body.type == EVENT_PURCHASE else None,
        path=payload.path,
        ts=_naive_utc(payload.ts) if payload.ts else _utcnow(),
        visitor_id=payload.visitor_id,
        session_id=payload.session_id,
        referrer=payload.referrer,
        user_agent=payload.user_agent,
    )
    db.add(event)
    db.commit()
    return {"ok": True}


# Events & analytics ----------------------------------------------------------

@app.get("/api/events")
def recent_events(testId: Optional[str] = None, limit: int = 50, db: Session = Depends(get_db)):
    query = db.query(models.Event)
    if testId:
        query = query.filter(models.Event.test_id == testId)
    rows = query.order_by(models.Event.ts.desc()).limit(max(1, min(limit, 200))).all()
    return {"events": [row.to_tracked().to_dict() for row in rows]}


@app.get("/api/analytics")
def test_analytics(
    testId: Optional[str] = None,
    dateRange: str = config.DEFAULT_DATE_RANGE,
    db: Session = Depends(get_db),
):
    """
    Per-variation performance, KPIs, 7-day chart data and significance.
    """
    row = _get_test_or_404(db, testId)
    now = _utcnow()
    start, end = date_window(dateRange, now)
    events = _load_events(db, row.id, start, end)

    analytics = build_analytics(row.to_config(), events, now, dedup_key=config.VISITOR_DEDUP_KEY)
    return {
        "ok": True,
        "analytics": analytics,
        "statisticalAnalysis": analytics["statisticalAnalysis"],
        "test": row.to_dict(),
        "dateRange": {"start": start.isoformat(), "end": end.isoformat()},
        "lastUpdated": now.isoformat(),
    }


@app.get("/api/analytics/export")
def export_analytics(testId: Optional[str] = None, db: Session = Depends(get_db)):
    row = _get_test_or_404(db, testId)
    now = _utcnow()
    start, end = date_window("30d", now)
    analytics = build_analytics(
        row.to_config(), _load_events(db, row.id, start, end), now, dedup_key=config.VISITOR_DEDUP_KEY
    )
    return Response(
        content=analytics_to_csv(analytics),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="test-{row.id}-analytics.csv"'},
    )


@app.post("/api/analytics/upload")
async def upload_counts(file: UploadFile = File(...)):
    """
    Significance for counts exported from elsewhere (CSV of variation,
    visitors, conversions).
    """
    # Basic file type check (not bulletproof, but ok for now)
    if not (file.filename or "").lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Please upload a .csv file.")

    contents = await file.read()
    try:
        performance = load_performance_csv(io.BytesIO(contents))
    except (ValueError, KeyError) as err:
        raise HTTPException(status_code=400, detail=f"Could not read CSV: {err}")

    control = next((p for p in performance if p.is_control), None)
    report = calculate_statistical_significance(performance, control.variation if control else None)
    return {
        "ok": True,
        "variationPerformance": [p.to_dict() for p in performance],
        "statisticalAnalysis": report.to_dict(),
    }


# Automation ------------------------------------------------------------------

@app.get("/api/automation")
def automation_logs(testId: Optional[str] = None, db: Session = Depends(get_db)):
    if not testId:
        raise HTTPException(status_code=400, detail="Test ID required")
    logs = (
        db.query(models.AutomationLog)
        .filter(models.AutomationLog.test_id == testId)
        .order_by(models.AutomationLog.timestamp.desc(), models.AutomationLog.id.desc())
        .limit(50)
        .all()
    )
    return {"ok": True, "logs": [log.to_dict() for log in logs]}


def _run_rules(db: Session, row: models.PriceTest) -> dict:
    now = _utcnow()
    snapshot = row.to_config()
    start, end = date_window("7d", now)
    performance = aggregate(_load_events(db, row.id, start, end), snapshot, dedup_key=config.VISITOR_DEDUP_KEY)

    outcome = process_automation_rules(snapshot, performance, now)
    if outcome.test != snapshot:
        row.apply_config(outcome.test)
    for entry in outcome.logs:
        db.add(models.AutomationLog(test_id=entry.test_id, action=entry.action, details=entry.details, timestamp=entry.timestamp))
    _commit(db)

    if not outcome.results and (snapshot.status != STATUS_RUNNING or not snapshot.automation_settings.enabled):
        message = "Test not running or automation not enabled"
    else:
        message = f"Processed {len(outcome.results)} automation rules"
    return {
        "success": True,
        "results": [r.to_dict() for r in outcome.results],
        "logs": [e.to_dict() for e in outcome.logs],
        "message": message,
    }


@app.post("/api/automation")
def automation_action(body: AutomationRequest, db: Session = Depends(get_db)):
    row = _get_test_or_404(db, body.test_id)
    settings = AutomationSettings.from_dict(row.automation_settings)
    now = _utcnow()

    if body.action == "process_rules":
        return {"ok": True, "result": _run_rules(db, row)}

    try:
        if body.action == "create_rule":
            settings, rule = create_rule(settings, body.data, now)
            payload = {"ok": True, "rule": rule}
        elif body.action == "update_rule":
            settings, rule = update_rule(settings, body.data, now)
            payload = {"ok": True, "rule": rule}
        elif body.action == "delete_rule":
            settings = delete_rule(settings, str(body.data.get("ruleId")))
            payload = {"ok": True, "message": "Rule deleted successfully"}
        elif body.action == "enable_automation":
            enabled = bool(body.data.get("enabled"))
            settings = set_enabled(settings, enabled)
            payload = {
                "ok": True,
                "enabled": enabled,
                "message": f"Automation {'enabled' if enabled else 'disabled'} successfully",
            }
        else:
            raise HTTPException(status_code=400, detail="Invalid action")
    except KeyError as err:
        raise HTTPException(status_code=404, detail=str(err.args[0]) if err.args else "Rule not found")
    except (UnknownRuleError, ValueError, TypeError) as err:
        raise HTTPException(status_code=400, detail=str(err))

    row.automation_settings = settings.to_dict()
    _commit(db)
    return payload


# Tests -----------------------------------------------------------------------

@app.get("/api/tests")
def list_tests(db: Session = Depends(get_db)):
    tests = db.query(models.PriceTest).order_by(models.PriceTest.created_at.desc()).all()
    return {"ok": True, "data": [t.to_dict() for t in tests]}


@app.get("/api/tests/{test_id}")
def get_test(test_id: str, db: Session = Depends(get_db)):
    return {"ok": True, "data": _get_test_or_404(db, test_id).to_dict()}


@app.post("/api/tests")
def save_test(body: PriceTestCreate, db: Session = Depends(get_db)):
    """
    Create a test, or overwrite the configuration of an existing one.
    """
    product_id = body.primary_product_id()
    if not product_id or not body.variations:
        raise HTTPException(status_code=400, detail="Invalid payload (missing name/product/variations/trafficSplit)")
    if body.status not in STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status: {body.status}")

    now = _utcnow()
    row = None
    if body.id:
        row = db.query(models.PriceTest).filter(models.PriceTest.id == body.id).first()
    existing = row is not None
    if existing and row.status in TERMINAL_STATUSES:
        raise HTTPException(status_code=400, detail=f"Cannot modify a {row.status} test")
    if not existing:
        row = models.PriceTest(id=body.id) if body.id else models.PriceTest()
        row.status = body.status
        db.add(row)

    row.name = body.name
    row.product_id = product_id
    row.selected_products = body.selected_products
    row.variations = [v.to_dict() for v in body.variations]
    row.traffic_split = list(body.traffic_split)
    row.goal = body.goal
    row.description = body.description
    row.hypothesis = body.hypothesis
    row.duration = body.duration
    row.duration_unit = body.duration_unit
    row.targeting = body.targeting
    row.stopped_variations = body.stopped_variations or []
    row.automation_settings = body.automation_settings or {"enabled": False, "rules": []}
    if row.created_at is None:
        row.created_at = now

    try:
        if existing and body.status != row.status:
            # status changes on an existing test follow the same rules as PATCH
            row.apply_config(transition(row.to_config(), body.status, now))
        elif row.status == STATUS_RUNNING:
            validate_for_launch(row.to_config())
            row.started_at = row.started_at or now
    except ConfigurationError as err:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(err))

    _commit(db)
    db.refresh(row)
    return {"ok": True, "data": row.to_dict()}


@app.patch("/api/tests/{test_id}")
def update_status(test_id: str, body: StatusUpdate, db: Session = Depends(get_db)):
    row = _get_test_or_404(db, test_id)
    try:
        updated = transition(row.to_config(), body.status, _utcnow())
    except ConfigurationError as err:
        raise HTTPException(status_code=400, detail=str(err))

    row.apply_config(updated)
    _commit(db)
    db.refresh(row)
    return {"ok": True, "data": row.to_dict()}


@app.delete("/api/tests/{test_id}")
def delete_test(test_id: str, db: Session = Depends(get_db)):
    """
    Delete a test with its events and automation logs. Deleting twice is fine.
    """
    row = db.query(models.PriceTest).filter(models.PriceTest.id == test_id).first()
    if not row:
        return {"ok": True, "deleted": 0}
    db.delete(row)
    db.commit()
    return {"ok": True, "deleted": 1}


@app.post("/api/tests/{test_id}/stop-variation")
def stop_variation(test_id: str, body: StopVariationRequest, db: Session = Depends(get_db)):
    row = _get_test_or_404(db, test_id)
    snapshot = row.to_config()
    if snapshot.variation(body.variation) is None:
        raise HTTPException(status_code=400, detail=f"Variation {body.variation} not found")
    if not snapshot.is_stopped(body.variation):
        row.apply_config(snapshot.evolve(stopped_variations=snapshot.stopped_variations + (body.variation,)))
        _commit(db)
        db.refresh(row)
    return {"ok": True, "data": row.to_dict()}


def _winner_analysis(db: Session, row: models.PriceTest, date_range: str):
    now = _utcnow()
    snapshot = row.to_config()
    start, end = date_window(date_range, now)
    performance = aggregate(_load_events(db, row.id, start, end), snapshot, dedup_key=config.VISITOR_DEDUP_KEY)
    return analyze_winner(performance, snapshot, now)


@app.get("/api/tests/{test_id}/winner")
def winner_analysis(test_id: str, dateRange: str = "30d", db: Session = Depends(get_db)):
    row = _get_test_or_404(db, test_id)
    return {"ok": True, "analysis": _winner_analysis(db, row, dateRange).to_dict()}


@app.post("/api/tests/{test_id}/winner")
def confirm_test_winner(test_id: str, body: WinnerConfirmation, dateRange: str = "30d", db: Session = Depends(get_db)):
    row = _get_test_or_404(db, test_id)
    analysis = _winner_analysis(db, row, dateRange)
    try:
        confirmed = confirm_winner(analysis, body.variation)
    except ValueError as err:
        raise HTTPException(status_code=400, detail=str(err))
    return {"ok": True, "analysis": confirmed.to_dict()}


@app.get("/api/dashboard")
def dashboard(db: Session = Depends(get_db)):
    tests = db.query(models.PriceTest).order_by(models.PriceTest.created_at.desc()).limit(100).all()
    recent = db.query(models.Event).order_by(models.Event.ts.desc()).limit(10).all()
    counts = {status: 0 for status in STATUSES}
    for t in tests:
        counts[t.status] = counts.get(t.status, 0) + 1
    return {
        "totalTests": len(tests),
        "activeTests": counts[STATUS_RUNNING],
        "completedTests": counts[STATUS_COMPLETED],
        "draftTests": counts[STATUS_DRAFT],
        "byStatus": counts,
        "recentActivity": [e.to_tracked().to_dict() for e in recent],
    }
