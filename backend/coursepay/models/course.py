"""
Course & Enrollment Models — Read-only view of the catalog owned by the course service.
This service only looks courses up and flips enrollment status after payment.
"""
from datetime import datetime

from sqlalchemy import Column, String, Integer, DateTime, Numeric, Boolean, UniqueConstraint

from coursepay.database import Base


class Course(Base):
    __tablename__ = "courses"

    id = Column(String(64), primary_key=True, index=True)
    title = Column(String(256), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    is_active = Column(Boolean, default=True)


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_enrollment_user_course"),)

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    course_id = Column(String(64), nullable=False, index=True)

    status = Column(String(16), default="active")  # active | suspended
    transaction_id = Column(String(34))

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
