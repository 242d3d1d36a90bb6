# portal_backend/schemas.py
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class EntitlementView(BaseModel):
    """Read model of an `entitlements` row."""
    model_config = ConfigDict(from_attributes=True)

    email: str
    account_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    course_access: bool = False
    member_access: bool = False
    membership_status: str = "none"
    course_purchased_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AccessToken(BaseModel):
    """What /verify-session hands back and the browser keeps in local storage."""
    course_access: bool = False
    member_access: bool = False
    expires_at: Optional[int] = Field(None, description="epoch millis")
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    plan: Optional[str] = None


class CheckoutBody(BaseModel):
    plan: Optional[str] = None              # "course" | "membership"
    customer_email: Optional[str] = None


class PortalBody(BaseModel):
    customer_id: Optional[str] = None


class LocalLesson(BaseModel):
    completed: bool = True
    completedAt: Optional[int] = None       # epoch millis


class ProgressMergeBody(BaseModel):
    """Local progress as the browser stores it, in both formats."""
    progress: Dict[str, LocalLesson] = Field(default_factory=dict)
    completed_lessons: List[str] = Field(default_factory=list)
