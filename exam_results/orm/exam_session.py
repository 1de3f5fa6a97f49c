"""
exam_results/orm/exam_session.py
Exam Session Catalog Models

An exam session is split into typed sub-sessions (multiple-choice, written,
cognitive). Questions belong to exactly one sub-session and carry their marks.

Key Design:
- Cognitive sub-sessions are not scored and never count toward total marks
- The qualification threshold is configured per session
"""

from enum import Enum

from sqlalchemy import Column, Integer, String, Text, Boolean, Numeric, ForeignKey, Index, Enum as SQLEnum

from exam_results.orm.base import BaseModel


class SubSessionType(str, Enum):
    MCQ = "mcq"
    WRITTEN = "written"
    COGNITIVE = "cognitive"


class ExamSession(BaseModel):
    """
    A scheduled admission test.

    qualification_threshold is the minimum percentage for a candidate to
    qualify. NULL means "not configured"; the engine then applies the
    service-wide default and records that it did so.
    """

    __tablename__ = "exam_sessions"

    name = Column(
        String(255),
        nullable=False,
        comment="Display name of the session"
    )

    description = Column(
        Text,
        nullable=True
    )

    duration_minutes = Column(
        Integer,
        nullable=False,
        default=60,
        comment="Allowed duration in minutes"
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True
    )

    qualification_threshold = Column(
        Numeric(5, 2),
        nullable=True,
        comment="Minimum percentage to qualify (NULL = service default)"
    )

    def __repr__(self):
        return f"<ExamSession(id={self.id}, name={self.name!r})>"


class ExamSubSession(BaseModel):
    """Typed partition of an exam session."""

    __tablename__ = "exam_sub_sessions"

    exam_session_id = Column(
        Integer,
        ForeignKey("exam_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    session_type = Column(
        SQLEnum(SubSessionType),
        nullable=False,
        comment="mcq, written or cognitive"
    )

    name = Column(
        String(255),
        nullable=False
    )

    sequence_order = Column(
        Integer,
        nullable=False,
        default=1
    )

    __table_args__ = (
        Index("ix_sub_session_exam_type", "exam_session_id", "session_type"),
    )

    def __repr__(self):
        return f"<ExamSubSession(id={self.id}, type={self.session_type})>"


class ExamQuestion(BaseModel):
    """
    A question placed in a sub-session.

    correct_answer is the canonical option key for multiple-choice questions
    and NULL for written ones. language is the hint passed to the evaluator.
    """

    __tablename__ = "exam_questions"

    sub_session_id = Column(
        Integer,
        ForeignKey("exam_sub_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    question_text = Column(
        Text,
        nullable=False,
        default=""
    )

    marks = Column(
        Numeric(10, 2),
        nullable=False,
        default=1,
        comment="Marks awarded for a fully correct answer"
    )

    correct_answer = Column(
        String(50),
        nullable=True,
        comment="Canonical option for MCQ (exact, case-sensitive)"
    )

    language = Column(
        String(30),
        nullable=True,
        comment="Language of the expected written answer"
    )

    sequence_order = Column(
        Integer,
        nullable=True
    )

    def __repr__(self):
        return f"<ExamQuestion(id={self.id}, marks={self.marks})>"
