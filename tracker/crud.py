# tracker/crud.py
import logging
from datetime import date, datetime
from typing import List, Optional

import bcrypt
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tracker import models, schemas
from tracker.config import settings
from tracker.earnings import (
    coerce_multiplier, coerce_number, compute_total_earnings, day_bounds, local_naive, parse_platform,
)
from tracker.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


# ---------- USER ----------
def hash_password(plain: str) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=settings.bcrypt_rounds)).decode("utf-8")

def get_user(db: Session, user_id: int):
    return db.get(models.User, user_id)

def get_user_by_username(db: Session, username: str):
    return db.query(models.User).filter(models.User.username == username).first()

def create_user(db: Session, user: schemas.UserCreate):
    if get_user_by_username(db, user.username.strip()):
        raise ConflictError(f"Username {user.username!r} is taken")
    obj = models.User(
        username=user.username.strip(),
        password_hash=hash_password(user.password),
        name=user.name.strip(),
        city=user.city.strip(),
        phone=user.phone,
        instagram=user.instagram,
        is_admin=False,
    )
    db.add(obj); db.commit(); db.refresh(obj)
    return obj

def verify_user(db: Session, username: str, password: str):
    u = get_user_by_username(db, username.strip())
    if not u: return None
    try:
        ok = bcrypt.checkpw(password.encode("utf-8"), u.password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        ok = False
    return u if ok else None

def update_user(db: Session, user_id: int, updates: schemas.UserUpdate):
    obj = get_user(db, user_id)
    if not obj:
        raise NotFoundError(f"No user with id {user_id}")
    fields = updates.model_dump(exclude_unset=True)
    for key in ("name", "city"):
        if key in fields:
            value = (fields[key] or "").strip()
            if not value:
                raise ValidationError(f"{key} cannot be blank")
            fields[key] = value
    for key, value in fields.items():
        setattr(obj, key, value)
    db.commit(); db.refresh(obj)
    logger.info("User %s updated %s", user_id, ", ".join(sorted(fields)) or "nothing")
    return obj


# ---------- RIDE ----------
def create_ride(db: Session, user_id: int, ride: schemas.RideCreate, external_id: Optional[str] = None):
    platform = parse_platform(ride.platform)
    obj = models.Ride(
        user_id=user_id,
        platform=platform.value,
        date=local_naive(ride.date) if ride.date else datetime.now(),
        value=coerce_number(ride.value),
        distance=coerce_number(ride.distance),
        duration=coerce_number(ride.duration),
        category=ride.category or "",
        bonus=coerce_number(ride.bonus),
        multiplier=coerce_multiplier(ride.multiplier),
        total_earnings=compute_total_earnings(platform, ride.value, ride.bonus, ride.multiplier),
        external_id=external_id,
    )
    db.add(obj)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"Ride {external_id!r} was already imported from {platform.value}") from None
    db.refresh(obj)
    logger.info("Ride %s added for user %s (%s, %.2f)", obj.id, user_id, obj.platform, obj.total_earnings)
    return obj

def get_rides(db: Session, user_id: int, start: Optional[datetime] = None, end: Optional[datetime] = None):
    q = db.query(models.Ride).filter(models.Ride.user_id == user_id)
    if start:
        q = q.filter(models.Ride.date >= start)
    if end:
        q = q.filter(models.Ride.date <= end)
    return q.order_by(models.Ride.date.desc(), models.Ride.id.desc()).all()

def get_rides_for_day(db: Session, user_id: int, day: date):
    start, end = day_bounds(day)
    return (db.query(models.Ride)
            .filter(models.Ride.user_id == user_id, models.Ride.date >= start, models.Ride.date <= end)
            .order_by(models.Ride.id.asc())
            .all())

def get_external_ride_ids(db: Session, user_id: int, platform: str) -> set:
    rows = (db.query(models.Ride.external_id)
            .filter(models.Ride.user_id == user_id,
                    models.Ride.platform == platform,
                    models.Ride.external_id.isnot(None))
            .all())
    return {r[0] for r in rows}

def get_rides_for_city_and_day(db: Session, city: str, day: date):
    start, end = day_bounds(day)
    return (db.query(models.Ride, models.User)
            .join(models.User, models.Ride.user_id == models.User.id)
            .filter(models.User.city == city, models.Ride.date >= start, models.Ride.date <= end)
            .order_by(models.Ride.id.asc())
            .all())


# ---------- EXPENSE ----------
def get_expense(db: Session, user_id: int, day: date):
    return db.query(models.Expense).filter_by(user_id=user_id, date=day).first()

def get_expense_or_raise(db: Session, user_id: int, day: date) -> models.Expense:
    obj = get_expense(db, user_id, day)
    if not obj:
        raise NotFoundError(f"No expenses recorded on {day.isoformat()}")
    return obj

def list_expenses(db: Session, user_id: int, start: Optional[date] = None, end: Optional[date] = None):
    q = db.query(models.Expense).filter(models.Expense.user_id == user_id)
    if start:
        q = q.filter(models.Expense.date >= start)
    if end:
        q = q.filter(models.Expense.date <= end)
    return q.order_by(models.Expense.date.desc()).all()

def upsert_expense(db: Session, user_id: int, day: date, *, fuel: float, food: float, toll: float,
                   other: float, total: float):
    """One row per user and day: an existing row is overwritten, never added to."""
    if isinstance(day, datetime):
        day = day.date()
    obj = get_expense(db, user_id, day)
    if not obj:
        obj = models.Expense(user_id=user_id, date=day)
        db.add(obj)
    obj.fuel = fuel
    obj.food = food
    obj.toll = toll
    obj.other = other
    obj.total = total
    db.commit()
    db.refresh(obj)
    logger.info("Expenses for user %s on %s set to %.2f", user_id, day, total)
    return obj


# ---------- ONLINE SESSIONS ----------
def get_open_session(db: Session, user_id: int):
    return (db.query(models.OnlineSession)
            .filter(models.OnlineSession.user_id == user_id, models.OnlineSession.end_time.is_(None))
            .order_by(models.OnlineSession.start_time.desc())
            .first())

def get_session(db: Session, session_id: int):
    return db.get(models.OnlineSession, session_id)

def start_session(db: Session, user_id: int, now: Optional[datetime] = None):
    if get_open_session(db, user_id):
        raise ConflictError("An online session is already open")
    obj = models.OnlineSession(user_id=user_id, start_time=now or datetime.now(), is_open=True)
    db.add(obj)
    try:
        db.commit()
    except IntegrityError:
        # Another device opened a session between the check and the insert
        db.rollback()
        raise ConflictError("An online session is already open") from None
    db.refresh(obj)
    logger.info("User %s went online (session %s)", user_id, obj.id)
    return obj

def end_session(db: Session, session_id: int, now: Optional[datetime] = None):
    obj = get_session(db, session_id)
    if not obj or obj.end_time is not None:
        raise NotFoundError(f"No open session with id {session_id}")
    end_time = now or datetime.now()
    minutes = max(0, int((end_time - obj.start_time).total_seconds() // 60))
    result = db.execute(
        update(models.OnlineSession)
        .where(models.OnlineSession.id == session_id, models.OnlineSession.end_time.is_(None))
        .values(end_time=end_time, duration_minutes=minutes, is_open=None)
    )
    if result.rowcount == 0:
        db.rollback()
        raise NotFoundError(f"No open session with id {session_id}")
    db.commit()
    db.refresh(obj)
    logger.info("User %s went offline after %s min (session %s)", obj.user_id, minutes, session_id)
    return obj

def time_online_minutes(db: Session, user_id: int, day: date, now: Optional[datetime] = None) -> int:
    start, end = day_bounds(day)
    sessions = (db.query(models.OnlineSession)
                .filter(models.OnlineSession.user_id == user_id,
                        models.OnlineSession.start_time >= start,
                        models.OnlineSession.start_time <= end)
                .all())
    now = now or datetime.now()
    total = 0
    for s in sessions:
        if s.end_time is not None:
            total += s.duration_minutes or 0
        else:
            total += max(0, int((now - s.start_time).total_seconds() // 60))
    return total


# ---------- PLATFORM TOKENS ----------
def get_platform_token(db: Session, user_id: int, platform: str):
    return db.query(models.PlatformToken).filter_by(user_id=user_id, platform=platform).first()

def save_platform_token(db: Session, user_id: int, platform: str, *, access_token: str,
                        refresh_token: Optional[str], expires_at: Optional[datetime]):
    obj = get_platform_token(db, user_id, platform)
    if not obj:
        obj = models.PlatformToken(user_id=user_id, platform=platform)
        db.add(obj)
    obj.access_token = access_token
    obj.refresh_token = refresh_token
    obj.expires_at = expires_at
    obj.updated_at = datetime.now()
    db.commit()
    db.refresh(obj)
    return obj

def delete_platform_token(db: Session, user_id: int, platform: str) -> bool:
    obj = get_platform_token(db, user_id, platform)
    if not obj: return False
    db.delete(obj); db.commit()
    return True


def list_platform_tokens(db: Session, user_id: int) -> List[models.PlatformToken]:
    return db.query(models.PlatformToken).filter_by(user_id=user_id).all()


# ---------- CHAT ----------
def send_chat_message(db: Session, user: models.User, message: str, now: Optional[datetime] = None):
    """Posts to the sender's current city room."""
    text = (message or "").strip()
    if not text:
        raise ValidationError("Message cannot be empty")
    obj = models.ChatMessage(user_id=user.id, city=user.city, message=text, created_at=now or datetime.now())
    db.add(obj); db.commit(); db.refresh(obj)
    return obj

def get_chat_messages(db: Session, city: str, limit: int = 50):
    """Newest first, each row paired with its author."""
    return (db.query(models.ChatMessage, models.User)
            .join(models.User, models.ChatMessage.user_id == models.User.id)
            .filter(models.ChatMessage.city == city)
            .order_by(models.ChatMessage.created_at.desc(), models.ChatMessage.id.desc())
            .limit(limit)
            .all())
