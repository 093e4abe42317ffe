"""Learner/course reference rows and the two sides of the enrollment link.

`learners` and `courses` are mirrored from the platform's identity and catalog
stores. The link is kept as two independent back-reference tables so either
side can be written (and repaired) on its own.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from learnpay.common.db import Base


class Learner(Base):
    """Platform user that may hold course enrollments."""

    __tablename__ = "learners"

    learner_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String, default="")
    email: Mapped[str] = mapped_column(String, default="", index=True)
    role: Mapped[str] = mapped_column(String, default="student", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Course(Base):
    """Purchasable course with its creator and list price."""

    __tablename__ = "courses"

    course_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    title: Mapped[str] = mapped_column(String, default="")
    creator_id: Mapped[str] = mapped_column(String, index=True)
    price_minor: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="INR")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LearnerCourse(Base):
    """Learner-side back-reference: the learner's enrolled course ids."""

    __tablename__ = "learner_courses"

    learner_id: Mapped[str] = mapped_column(String, primary_key=True)
    course_id: Mapped[str] = mapped_column(String, primary_key=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CourseLearner(Base):
    """Course-side back-reference: the course's enrolled learner ids."""

    __tablename__ = "course_learners"

    course_id: Mapped[str] = mapped_column(String, primary_key=True)
    learner_id: Mapped[str] = mapped_column(String, primary_key=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
