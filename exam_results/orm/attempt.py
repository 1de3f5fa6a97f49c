"""
exam_results/orm/attempt.py
Exam Attempt Model

One attempt per (candidate, exam session).

Lifecycle:
1. Candidate opens the test -> not_started
2. Candidate answers questions -> in_progress
3. Finalization -> completed (the only path to completed)
4. Time-keeper marks overdue attempts -> expired
"""

from enum import Enum

from sqlalchemy import Column, Integer, DateTime, ForeignKey, Index, UniqueConstraint, Enum as SQLEnum

from exam_results.orm.base import BaseModel, utcnow


class AttemptStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    EXPIRED = "expired"


class ExamAttempt(BaseModel):

    __tablename__ = "student_exam_attempts"

    student_id = Column(
        Integer,
        ForeignKey("candidates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Candidate sitting the exam"
    )

    exam_session_id = Column(
        Integer,
        ForeignKey("exam_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    status = Column(
        SQLEnum(AttemptStatus),
        nullable=False,
        default=AttemptStatus.NOT_STARTED,
        index=True
    )

    started_at = Column(
        DateTime,
        nullable=True,
        default=utcnow
    )

    submitted_at = Column(
        DateTime,
        nullable=True,
        comment="Set on finalization"
    )

    __table_args__ = (
        UniqueConstraint("student_id", "exam_session_id", name="uq_attempt_student_session"),
        Index("ix_attempt_session_status", "exam_session_id", "status"),
    )

    def __repr__(self):
        return f"<ExamAttempt(id={self.id}, student_id={self.student_id}, status={self.status})>"
