"""
exam_results/orm/responses.py
Candidate Response Models

Key Design:
- At most one response of each kind per (attempt, question)
- Responses are frozen once the attempt is completed; grading only fills
  the audit columns on MCQ responses
- A written response with images and no evaluation is "pending"
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric, ForeignKey, JSON, UniqueConstraint

from exam_results.orm.base import BaseModel, utcnow


class MCQResponse(BaseModel):

    __tablename__ = "student_mcq_responses"

    attempt_id = Column(
        Integer,
        ForeignKey("student_exam_attempts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    question_id = Column(
        Integer,
        ForeignKey("exam_questions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    selected_answer = Column(
        String(50),
        nullable=True,
        comment="Option key chosen by the candidate (NULL if skipped)"
    )

    is_correct = Column(
        Boolean,
        nullable=True,
        comment="Set by grading; NULL until graded"
    )

    marks_obtained = Column(
        Numeric(10, 2),
        nullable=False,
        default=0
    )

    graded_at = Column(
        DateTime,
        nullable=True
    )

    __table_args__ = (
        UniqueConstraint("attempt_id", "question_id", name="uq_mcq_response_attempt_question"),
    )

    def __repr__(self):
        return f"<MCQResponse(id={self.id}, attempt={self.attempt_id}, q={self.question_id})>"


class WrittenResponse(BaseModel):

    __tablename__ = "student_written_responses"

    attempt_id = Column(
        Integer,
        ForeignKey("student_exam_attempts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    question_id = Column(
        Integer,
        ForeignKey("exam_questions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    image_urls = Column(
        JSON,
        nullable=False,
        default=list,
        comment="References to uploaded answer images"
    )

    uploaded_at = Column(
        DateTime,
        nullable=False,
        default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("attempt_id", "question_id", name="uq_written_response_attempt_question"),
    )

    def has_images(self) -> bool:
        return bool(self.image_urls)

    def __repr__(self):
        return f"<WrittenResponse(id={self.id}, attempt={self.attempt_id}, q={self.question_id})>"
