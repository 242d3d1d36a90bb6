# portal_backend/models.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    Boolean,
    TIMESTAMP,
    BigInteger,
    Integer,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base

# sqlite only autoincrements plain INTEGER primary keys
_PK = BigInteger().with_variant(Integer(), "sqlite")


class Entitlement(Base):
    """
    One row per customer identity.

    - email: lowercased purchase email (always present, unique)
    - account_id: portal account, linked on first sign-in
    - stripe_customer_id: key for every subscription / invoice event
    - course_access: lifetime once granted
    - member_access: follows the live subscription
    """
    __tablename__ = "entitlements"

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)

    email: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    account_id: Mapped[Optional[str]] = mapped_column(String, unique=True, index=True, nullable=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String, index=True, nullable=True)

    course_access: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    member_access: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    membership_status: Mapped[str] = mapped_column(
        String,
        nullable=False,
        default="none",
        doc="none / active / past_due / canceled (or a passed-through Stripe status)",
    )

    course_purchased_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class LessonProgress(Base):
    """Completed lessons of a signed-in account; one row per (account, lesson)."""
    __tablename__ = "lesson_progress"
    __table_args__ = (
        UniqueConstraint("account_id", "lesson_id", name="uq_lesson_progress_account_lesson"),
    )

    id: Mapped[int] = mapped_column(_PK, primary_key=True, autoincrement=True)

    account_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    lesson_id: Mapped[str] = mapped_column(String, nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    completed_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
    )
