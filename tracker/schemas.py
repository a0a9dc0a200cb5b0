# tracker/schemas.py
from __future__ import annotations

from datetime import datetime, date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


# ---------- User ----------
class UserBase(BaseModel):
    username: str
    name: str
    city: str
    phone: Optional[str] = None
    instagram: Optional[str] = None

class UserCreate(UserBase):
    password: str

class Login(BaseModel):
    username: str
    password: str

class UserUpdate(BaseModel):
    # Only the fields sent are changed
    name: Optional[str] = None
    city: Optional[str] = None
    phone: Optional[str] = None
    instagram: Optional[str] = None

class User(UserBase):
    id: int
    is_admin: bool = False
    model_config = ConfigDict(from_attributes=True)


# ---------- Ride ----------
class RideCreate(BaseModel):
    # Numbers arrive from free-text inputs; coercion happens in the earnings rule
    platform: str
    date: Optional[datetime] = None
    value: Any = None
    distance: Any = None
    duration: Any = None
    category: str = ""
    bonus: Any = None
    multiplier: Any = None

class Ride(BaseModel):
    id: int
    user_id: int
    platform: str
    date: datetime
    value: float
    distance: float
    duration: float
    category: str
    bonus: float
    multiplier: Optional[float] = None
    total_earnings: float
    model_config = ConfigDict(from_attributes=True)


# ---------- Expense ----------
class ExpenseFields(BaseModel):
    fuel: float = 0.0
    food: float = 0.0
    toll: float = 0.0
    other: float = 0.0

class Expense(ExpenseFields):
    id: int
    user_id: int
    date: date
    total: float
    model_config = ConfigDict(from_attributes=True)


# ---------- Summary ----------
class DailySummary(BaseModel):
    date: date
    total_earnings: float = 0.0
    total_expenses: float = 0.0
    net_profit: float = 0.0
    time_online: int = 0  # minutes
    total_rides: int = 0
    earnings_by_platform: Dict[str, float] = Field(
        default_factory=lambda: {"uber": 0.0, "99": 0.0, "indriver": 0.0}
    )
    total_bonus: float = 0.0

class RideAdded(BaseModel):
    ride: Ride
    summary: DailySummary


# ---------- Online sessions ----------
class OnlineSession(BaseModel):
    id: int
    user_id: int
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    model_config = ConfigDict(from_attributes=True)

class SessionState(BaseModel):
    online: bool
    session: Optional[OnlineSession] = None


# ---------- Ranking ----------
class RankingEntry(BaseModel):
    user_id: int
    name: str
    total_earnings: float
    rides_count: int
    instagram: Optional[str] = None


# ---------- Chat ----------
class ChatMessageCreate(BaseModel):
    message: str

class ChatMessage(BaseModel):
    id: int
    user_id: int
    city: str
    message: str
    created_at: datetime
    user_name: str
    instagram: Optional[str] = None


# ---------- Platforms ----------
class PlatformStatus(BaseModel):
    platform: str
    name: str
    is_available: bool
    has_public_api: bool
    requires_partnership: bool
    is_connected: bool
    last_sync: Optional[datetime] = None

class ConnectionInfo(BaseModel):
    platform: str
    available: bool
    status: str
    steps: List[str] = []
    alternatives: List[str] = []

class AuthorizationUrl(BaseModel):
    authorization_url: str

class SyncResult(BaseModel):
    platform: str
    rides_count: int
