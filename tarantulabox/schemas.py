from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SignupRequest(BaseModel):
    email: str
    password: str


class LoginRequest(BaseModel):
    email: str
    password: str


class LoginResponse(BaseModel):
    token: str


class NotificationSettings(BaseModel):
    notify_email: bool


class TarantulaUpdate(BaseModel):
    species: Optional[str] = Field(default=None, min_length=1)
    name: Optional[str] = Field(default=None, min_length=1)
    feed_interval_days: Optional[int] = Field(default=None, gt=0)
    notify: Optional[bool] = None
    next_feed_date: Optional[datetime] = None
    timezone: Optional[str] = None


class TarantulaOut(BaseModel):
    id: int
    species: str
    name: str
    feed_interval_days: int
    notify: bool
    img_url: Optional[str] = None
    next_feed_date: datetime
    timezone: str
    owner_id: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UpcomingFeeding(BaseModel):
    id: int
    name: str
    species: str
    next_feed_at: datetime
    feed_interval_days: int
    due: bool


class PushSubscriptionKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscriptionIn(BaseModel):
    endpoint: str
    keys: PushSubscriptionKeys


class PushUnsubscribeIn(BaseModel):
    endpoint: str


class AuditLogOut(BaseModel):
    id: int
    created_at: datetime
    action: str
    details: Optional[str] = None
    tarantula_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)
