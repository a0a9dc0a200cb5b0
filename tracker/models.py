# tracker/models.py
from __future__ import annotations
from sqlalchemy import Column, Integer, String, Float, Date, DateTime, ForeignKey, Boolean, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from tracker.db import Base
from datetime import datetime


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(200), nullable=False)
    city = Column(String(120), nullable=False, index=True)
    phone = Column(String(32), nullable=True)
    instagram = Column(String(100), nullable=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    rides = relationship("Ride", back_populates="user", cascade="all, delete-orphan")
    expenses = relationship("Expense", back_populates="user", cascade="all, delete-orphan")
    online_sessions = relationship("OnlineSession", back_populates="user", cascade="all, delete-orphan")
    platform_tokens = relationship("PlatformToken", back_populates="user", cascade="all, delete-orphan")
    chat_messages = relationship("ChatMessage", back_populates="user", cascade="all, delete-orphan")


class Ride(Base):
    __tablename__ = "rides"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    platform = Column(String(16), nullable=False)  # uber / 99 / indriver
    date = Column(DateTime, nullable=False, default=datetime.now, index=True)
    value = Column(Float, nullable=False, default=0.0)
    distance = Column(Float, nullable=False, default=0.0)  # km
    duration = Column(Float, nullable=False, default=0.0)  # minutes
    category = Column(String(100), nullable=False, default="")
    bonus = Column(Float, nullable=False, default=0.0)
    multiplier = Column(Float, nullable=True)
    total_earnings = Column(Float, nullable=False)  # frozen at creation
    external_id = Column(String(64), nullable=True)  # platform request id for synced rides

    user = relationship("User", back_populates="rides")

    __table_args__ = (
        UniqueConstraint("user_id", "platform", "external_id", name="uq_ride_external"),
    )


class Expense(Base):
    __tablename__ = "expenses"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    date = Column(Date, nullable=False)
    fuel = Column(Float, nullable=False, default=0.0)
    food = Column(Float, nullable=False, default=0.0)
    toll = Column(Float, nullable=False, default=0.0)
    other = Column(Float, nullable=False, default=0.0)
    total = Column(Float, nullable=False, default=0.0)

    user = relationship("User", back_populates="expenses")

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_expense_user_day"),
    )


class OnlineSession(Base):
    __tablename__ = "online_sessions"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    # True while open, NULL once closed; NULLs never collide in the unique key
    is_open = Column(Boolean, nullable=True, default=True)

    user = relationship("User", back_populates="online_sessions")

    __table_args__ = (
        UniqueConstraint("user_id", "is_open", name="uq_one_open_session"),
    )


class PlatformToken(Base):
    __tablename__ = "platform_tokens"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    platform = Column(String(16), nullable=False)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    user = relationship("User", back_populates="platform_tokens")

    __table_args__ = (
        UniqueConstraint("user_id", "platform", name="uq_platform_token_user"),
    )


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    city = Column(String(120), nullable=False, index=True)  # sender's city when posted
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.now, index=True)

    user = relationship("User", back_populates="chat_messages")
