# main.py (project root)

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from tracker import crud, models, schemas
from tracker.config import settings
from tracker.db import Base, engine, get_db
from tracker.earnings import apply_ride, build_daily_summary, compute_daily_ranking, day_bounds, local_naive
from tracker.errors import NotFoundError, TrackerError
from tracker.platforms import PlatformManager

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ---------------- App ----------------

Base.metadata.create_all(bind=engine)

app = FastAPI(title="Ride Earnings Tracker", version="1.0.0")
app.add_middleware(SessionMiddleware, secret_key=settings.session_key)


@app.exception_handler(TrackerError)
def tracker_error_handler(request: Request, exc: TrackerError):
    logger.warning("%s %s -> %s: %s", request.method, request.url.path, type(exc).__name__, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# ---------------- Helpers ----------------

def get_current_user(request: Request, db: Session = Depends(get_db)) -> models.User:
    uid = request.session.get("user_id")
    user = crud.get_user(db, uid) if uid else None
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def get_platform_manager(
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    manager = PlatformManager(db, user.id)
    try:
        yield manager
    finally:
        manager.close()


def daily_summary_for(db: Session, user_id: int, day: date) -> schemas.DailySummary:
    rides = crud.get_rides_for_day(db, user_id, day)
    expense = crud.get_expense(db, user_id, day)
    minutes = crud.time_online_minutes(db, user_id, day)
    return build_daily_summary(rides, expense, minutes, day)


def _day_or_today(day: Optional[date]) -> date:
    return day or date.today()


# ---------------- Health ----------------

@app.get("/health")
def health() -> Dict[str, bool]:
    return {"ok": True}


# ---------------- Auth ----------------

@app.post("/auth/register", response_model=schemas.User, status_code=201)
def register(payload: schemas.UserCreate, request: Request, db: Session = Depends(get_db)):
    user = crud.create_user(db, payload)
    request.session["user_id"] = user.id
    return user


@app.post("/auth/login", response_model=schemas.User)
def login(payload: schemas.Login, request: Request, db: Session = Depends(get_db)):
    user = crud.verify_user(db, payload.username, payload.password)
    if not user:
        raise HTTPException(status_code=400, detail="Invalid credentials.")
    request.session["user_id"] = user.id
    return user


@app.post("/auth/logout")
def logout(request: Request) -> Dict[str, bool]:
    request.session.pop("user_id", None)
    return {"ok": True}


@app.get("/me", response_model=schemas.User)
def me(user: models.User = Depends(get_current_user)):
    return user


@app.patch("/me", response_model=schemas.User)
def update_me(
    payload: schemas.UserUpdate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return crud.update_user(db, user.id, payload)


# ---------------- Summary ----------------

@app.get("/summary", response_model=schemas.DailySummary)
def get_daily_summary(
    day: Optional[date] = Query(None),
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return daily_summary_for(db, user.id, _day_or_today(day))


# ---------------- Rides ----------------

@app.post("/rides", response_model=schemas.RideAdded, status_code=201)
def add_ride(
    payload: schemas.RideCreate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Persist a ride and return it with its day's summary folded forward."""
    moment = local_naive(payload.date) if payload.date else datetime.now()
    payload = payload.model_copy(update={"date": moment})
    day = payload.date.date()
    before = daily_summary_for(db, user.id, day)
    ride = crud.create_ride(db, user.id, payload)
    return schemas.RideAdded(ride=schemas.Ride.model_validate(ride), summary=apply_ride(before, ride))


@app.get("/rides", response_model=List[schemas.Ride])
def list_rides(
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    start_dt = day_bounds(start)[0] if start else None
    end_dt = day_bounds(end)[1] if end else None
    return crud.get_rides(db, user.id, start_dt, end_dt)


# ---------------- Expenses ----------------

@app.put("/expenses/{day}", response_model=schemas.DailySummary)
def add_expense(
    day: date,
    payload: schemas.ExpenseFields,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    total = payload.fuel + payload.food + payload.toll + payload.other
    crud.upsert_expense(
        db, user.id, day,
        fuel=payload.fuel, food=payload.food, toll=payload.toll, other=payload.other,
        total=total,
    )
    return daily_summary_for(db, user.id, day)


@app.get("/expenses/{day}", response_model=schemas.Expense)
def get_expense(
    day: date,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return crud.get_expense_or_raise(db, user.id, day)


@app.get("/expenses", response_model=List[schemas.Expense])
def list_expenses(
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return crud.list_expenses(db, user.id, start, end)


# ---------------- Online sessions ----------------

@app.get("/online", response_model=schemas.SessionState)
def online_state(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    session = crud.get_open_session(db, user.id)
    return schemas.SessionState(
        online=session is not None,
        session=schemas.OnlineSession.model_validate(session) if session else None,
    )


@app.post("/online/toggle", response_model=schemas.SessionState)
def toggle_online(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    open_session = crud.get_open_session(db, user.id)
    if open_session:
        ended = crud.end_session(db, open_session.id)
        return schemas.SessionState(online=False, session=schemas.OnlineSession.model_validate(ended))
    started = crud.start_session(db, user.id)
    return schemas.SessionState(online=True, session=schemas.OnlineSession.model_validate(started))


@app.post("/online/{session_id}/end", response_model=schemas.OnlineSession)
def end_online_session(
    session_id: int,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    s = crud.get_session(db, session_id)
    if not s or s.user_id != user.id:
        raise NotFoundError(f"No open session with id {session_id}")
    return crud.end_session(db, session_id)


# ---------------- Ranking ----------------

@app.get("/ranking", response_model=List[schemas.RankingEntry])
def get_ranking(
    city: Optional[str] = Query(None),
    day: Optional[date] = Query(None),
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    rows = crud.get_rides_for_city_and_day(db, city or user.city, _day_or_today(day))
    return compute_daily_ranking(rows, limit=settings.ranking_limit)


# ---------------- Chat ----------------

def _chat_out(message: models.ChatMessage, author: models.User) -> schemas.ChatMessage:
    return schemas.ChatMessage(
        id=message.id, user_id=message.user_id, city=message.city, message=message.message,
        created_at=message.created_at, user_name=author.name, instagram=author.instagram,
    )


@app.post("/chat", response_model=schemas.ChatMessage, status_code=201)
def send_chat(
    payload: schemas.ChatMessageCreate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _chat_out(crud.send_chat_message(db, user, payload.message), user)


@app.get("/chat", response_model=List[schemas.ChatMessage])
def read_chat(
    limit: int = Query(50, ge=1, le=200),
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Latest messages from drivers in the caller's city, newest first."""
    return [_chat_out(m, author) for m, author in crud.get_chat_messages(db, user.city, limit)]


# ---------------- Platforms ----------------

@app.get("/platforms", response_model=List[schemas.PlatformStatus])
def platforms_status(manager: PlatformManager = Depends(get_platform_manager)):
    return manager.statuses()


@app.get("/platforms/{platform}/info", response_model=schemas.ConnectionInfo)
def platform_info(platform: str, manager: PlatformManager = Depends(get_platform_manager)):
    return manager.connection_info(platform)


@app.post("/platforms/{platform}/connect", response_model=schemas.AuthorizationUrl)
def platform_connect(platform: str, manager: PlatformManager = Depends(get_platform_manager)):
    return schemas.AuthorizationUrl(authorization_url=manager.connect(platform))


@app.get("/platforms/{platform}/callback", response_model=schemas.PlatformStatus)
def platform_callback(
    platform: str,
    code: str = Query(...),
    manager: PlatformManager = Depends(get_platform_manager),
):
    token = manager.complete_oauth(platform, code)
    return next(s for s in manager.statuses() if s.platform == token.platform)


@app.post("/platforms/sync", response_model=List[schemas.SyncResult])
def platforms_sync_all(
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    manager: PlatformManager = Depends(get_platform_manager),
):
    return manager.sync_all(
        day_bounds(start)[0] if start else None,
        day_bounds(end)[1] if end else None,
    )


@app.post("/platforms/{platform}/sync", response_model=schemas.SyncResult)
def platform_sync(
    platform: str,
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    manager: PlatformManager = Depends(get_platform_manager),
):
    return manager.sync(
        platform,
        day_bounds(start)[0] if start else None,
        day_bounds(end)[1] if end else None,
    )


@app.delete("/platforms/{platform}")
def platform_disconnect(platform: str, manager: PlatformManager = Depends(get_platform_manager)) -> Dict[str, bool]:
    return {"disconnected": manager.disconnect(platform)}
