"""
exam_results/orm/overall_score.py
Overall Score Model

One row per (candidate, exam session), recomputed in place.

Field ownership:
- Score fields: written by finalize and correction
- overall_rank / class_rank / ranked_at: written only by the ranking engine
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Numeric, ForeignKey, JSON, Index, UniqueConstraint
)

from exam_results.orm.base import BaseModel


class OverallScore(BaseModel):

    __tablename__ = "student_overall_scores"

    student_id = Column(
        Integer,
        ForeignKey("candidates.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    exam_session_id = Column(
        Integer,
        ForeignKey("exam_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    mcq_score = Column(Numeric(10, 2), nullable=False, default=0)

    written_score = Column(Numeric(10, 2), nullable=False, default=0)

    total_weighted_score = Column(
        Numeric(10, 2),
        nullable=False,
        default=0,
        comment="mcq_score + written_score"
    )

    total_possible_marks = Column(Numeric(10, 2), nullable=False, default=0)

    percentage_score = Column(Numeric(7, 2), nullable=False, default=0)

    qualification_threshold = Column(
        Numeric(5, 2),
        nullable=True,
        comment="Threshold applied at the last recomputation"
    )

    is_qualified = Column(Boolean, nullable=False, default=False)

    status = Column(
        String(30),
        nullable=False,
        default="rejected",
        comment="qualified, waiting_list or rejected"
    )

    grade_level = Column(
        String(20),
        nullable=True,
        comment="Class-rank grouping key"
    )

    score_breakdown = Column(JSON, nullable=True)

    calculated_at = Column(DateTime, nullable=True)

    overall_rank = Column(Integer, nullable=True)

    class_rank = Column(Integer, nullable=True)

    ranked_at = Column(DateTime, nullable=True)

    interview_status = Column(
        String(30),
        nullable=True,
        comment="Managed by the interview workflow"
    )

    fee_terms = Column(
        JSON,
        nullable=True,
        comment="Managed by the admissions workflow"
    )

    __table_args__ = (
        UniqueConstraint("student_id", "exam_session_id", name="uq_overall_score_student_session"),
        Index("ix_overall_score_session_total", "exam_session_id", "total_weighted_score"),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "student_id": self.student_id,
            "exam_session_id": self.exam_session_id,
            "mcq_score": float(self.mcq_score or 0),
            "written_score": float(self.written_score or 0),
            "total_weighted_score": float(self.total_weighted_score or 0),
            "total_possible_marks": float(self.total_possible_marks or 0),
            "percentage_score": float(self.percentage_score or 0),
            "qualification_threshold": (
                float(self.qualification_threshold) if self.qualification_threshold is not None else None
            ),
            "is_qualified": self.is_qualified,
            "status": self.status,
            "grade_level": self.grade_level,
            "overall_rank": self.overall_rank,
            "class_rank": self.class_rank,
            "score_breakdown": self.score_breakdown,
            "calculated_at": self.calculated_at.isoformat() if self.calculated_at else None,
            "ranked_at": self.ranked_at.isoformat() if self.ranked_at else None,
        }

    def __repr__(self):
        return f"<OverallScore(id={self.id}, student={self.student_id}, total={self.total_weighted_score})>"
