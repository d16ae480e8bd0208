"""
Course Service — Catalog lookups and enrollment status changes after payment.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from coursepay.models.course import Course, Enrollment

logger = logging.getLogger(__name__)

ENROLLMENT_ACTIVE = "active"
ENROLLMENT_SUSPENDED = "suspended"


class CourseService:
    @staticmethod
    def get_active_course(db: Session, course_id: str) -> Optional[Course]:
        return (
            db.query(Course)
            .filter(Course.id == course_id, Course.is_active.is_(True))
            .first()
        )

    @staticmethod
    def activate_enrollment(db: Session, user_id: str, course_id: str, transaction_id: str) -> Enrollment:
        """Grant access after a successful payment. Caller commits."""
        enrollment = (
            db.query(Enrollment)
            .filter(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
            .first()
        )
        if enrollment is None:
            enrollment = Enrollment(user_id=user_id, course_id=course_id)
            db.add(enrollment)
        enrollment.status = ENROLLMENT_ACTIVE
        enrollment.transaction_id = transaction_id
        enrollment.updated_at = datetime.utcnow()
        logger.info("Enrollment activated: user=%s course=%s txn=%s", user_id, course_id, transaction_id)
        return enrollment

    @staticmethod
    def suspend_enrollment(db: Session, user_id: str, course_id: str) -> Optional[Enrollment]:
        """Revoke access after a full refund. Caller commits."""
        enrollment = (
            db.query(Enrollment)
            .filter(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
            .first()
        )
        if enrollment is not None:
            enrollment.status = ENROLLMENT_SUSPENDED
            enrollment.updated_at = datetime.utcnow()
            logger.info("Enrollment suspended: user=%s course=%s", user_id, course_id)
        return enrollment
