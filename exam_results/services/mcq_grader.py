"""
Multiple-Choice Grader

Compares every recorded selection of an attempt with the canonical option.

GRADING RULES:
- Correct iff selected option == correct option (exact, case-sensitive)
- Awarded marks = question marks if correct, else 0
- A response whose question cannot be resolved contributes 0 and is skipped
- Results are written back per (attempt, question), so regrading never double-counts
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from exam_results.orm.base import utcnow
from exam_results.orm.exam_session import ExamQuestion
from exam_results.orm.responses import MCQResponse
from exam_results.services.persistence import upsert

logger = logging.getLogger(__name__)


@dataclass
class GradedResponse:
    question_id: int
    selected_answer: Optional[str]
    is_correct: bool
    marks_obtained: Decimal


@dataclass
class MCQGradingResult:
    mcq_score: Decimal = Decimal("0")
    graded: List[GradedResponse] = field(default_factory=list)
    skipped_question_ids: List[int] = field(default_factory=list)

    @property
    def total_questions(self) -> int:
        return len(self.graded)

    @property
    def correct_answers(self) -> int:
        return sum(1 for g in self.graded if g.is_correct)


def grade_selection(selected_answer: Optional[str], correct_answer: str, marks: Decimal) -> tuple:
    """Return (is_correct, marks_obtained) for one selection."""
    is_correct = selected_answer is not None and selected_answer == correct_answer
    return is_correct, (Decimal(str(marks)) if is_correct else Decimal("0"))


async def grade_attempt(db: AsyncSession, attempt_id: int) -> MCQGradingResult:
    """
    Grade all MCQ responses of an attempt and persist correctness.

    Args:
        attempt_id: Attempt to grade
        db: Database session

    Returns:
        MCQGradingResult with mcq_score and per-response outcomes
    """
    result = await db.execute(
        select(MCQResponse)
        .where(MCQResponse.attempt_id == attempt_id)
        .order_by(MCQResponse.question_id)
    )
    responses = result.scalars().all()

    grading = MCQGradingResult()
    if not responses:
        return grading

    question_ids = {r.question_id for r in responses}
    q_result = await db.execute(
        select(ExamQuestion).where(ExamQuestion.id.in_(question_ids))
    )
    questions: Dict[int, ExamQuestion] = {q.id: q for q in q_result.scalars().all()}

    graded_at = utcnow()
    for response in responses:
        question = questions.get(response.question_id)
        if question is None or question.correct_answer is None:
            logger.warning(
                f"Skipping MCQ response {response.id}: question {response.question_id} unresolvable"
            )
            grading.skipped_question_ids.append(response.question_id)
            continue

        is_correct, marks = grade_selection(response.selected_answer, question.correct_answer, question.marks)

        await upsert(
            db,
            MCQResponse,
            key={"attempt_id": attempt_id, "question_id": response.question_id},
            values={"is_correct": is_correct, "marks_obtained": marks, "graded_at": graded_at},
        )

        grading.graded.append(GradedResponse(
            question_id=response.question_id,
            selected_answer=response.selected_answer,
            is_correct=is_correct,
            marks_obtained=marks,
        ))
        grading.mcq_score += marks

    logger.info(
        f"Graded {grading.total_questions} MCQ responses for attempt {attempt_id}: "
        f"score={grading.mcq_score}, correct={grading.correct_answers}, skipped={len(grading.skipped_question_ids)}"
    )
    return grading
