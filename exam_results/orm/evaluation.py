"""
exam_results/orm/evaluation.py
Written Evaluation Model

Exactly zero or one evaluation per written response (DB-enforced).
Created by the AI pass, overwritten in place by human correction.
"""

from enum import Enum

from sqlalchemy import Column, Integer, String, Text, DateTime, Numeric, ForeignKey, Enum as SQLEnum

from exam_results.orm.base import BaseModel, utcnow


class EvaluatorType(str, Enum):
    AI = "ai"
    HUMAN = "human"


class WrittenEvaluation(BaseModel):

    __tablename__ = "written_evaluations"

    written_response_id = Column(
        Integer,
        ForeignKey("student_written_responses.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True
    )

    total_score = Column(
        Numeric(10, 2),
        nullable=False,
        default=0,
        comment="0..question marks"
    )

    feedback = Column(Text, nullable=True)

    extracted_text = Column(Text, nullable=True)

    language = Column(
        String(30),
        nullable=True,
        comment="Language tag reported by the evaluator"
    )

    evaluator_type = Column(
        SQLEnum(EvaluatorType),
        nullable=False,
        default=EvaluatorType.AI
    )

    evaluated_by = Column(
        Integer,
        nullable=True,
        comment="User id of the human corrector"
    )

    evaluated_at = Column(
        DateTime,
        nullable=False,
        default=utcnow
    )

    def __repr__(self):
        return f"<WrittenEvaluation(id={self.id}, response={self.written_response_id}, score={self.total_score})>"
