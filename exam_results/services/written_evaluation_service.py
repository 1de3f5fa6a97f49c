"""
Written-Response Evaluation Orchestrator

Finds written responses that have uploaded images but no evaluation yet
("pending") and sends each one to the external evaluator.

ARCHITECTURAL GUARANTEES:
1. Pending work is a query over current state, never a stored queue
2. Evaluator calls run OUTSIDE the database session, concurrently, bounded by
   a semaphore and a per-call deadline
3. Join-all: every call finishes (success or failure) before totals are computed
4. A failed call is logged and the response stays pending for the next pass
5. Existing evaluations are never replaced here, whatever their evaluator type,
   so a human correction is never overwritten by an automatic pass
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from exam_results.config.settings import settings
from exam_results.errors import ExternalServiceError, ErrorCode
from exam_results.orm.base import utcnow
from exam_results.orm.evaluation import WrittenEvaluation, EvaluatorType
from exam_results.orm.exam_session import ExamQuestion
from exam_results.orm.responses import WrittenResponse
from exam_results.services.evaluation_client import (
    EvaluationResult, WrittenAnswerEvaluator, get_evaluation_client
)
from exam_results.services.persistence import upsert, commit_or_raise

logger = logging.getLogger(__name__)


@dataclass
class WrittenScoreSummary:
    """Written totals recomputed from every evaluation of an attempt."""
    written_score: Decimal = Decimal("0")
    languages: Dict[str, Decimal] = field(default_factory=dict)
    details: List[dict] = field(default_factory=list)


@dataclass
class EvaluationPassResult:
    evaluated_response_ids: List[int] = field(default_factory=list)
    pending_response_ids: List[int] = field(default_factory=list)
    summary: WrittenScoreSummary = field(default_factory=WrittenScoreSummary)


def normalize_language(language: Optional[str]) -> str:
    return language.strip().lower() if language and language.strip() else "unknown"


async def list_pending_responses(db: AsyncSession, attempt_id: int) -> List[WrittenResponse]:
    """
    Written responses of the attempt with at least one image and no evaluation.
    """
    result = await db.execute(
        select(WrittenResponse)
        .where(WrittenResponse.attempt_id == attempt_id)
        .order_by(WrittenResponse.id)
    )
    with_images = [r for r in result.scalars().all() if r.has_images()]
    if not with_images:
        return []

    eval_result = await db.execute(
        select(WrittenEvaluation.written_response_id)
        .where(WrittenEvaluation.written_response_id.in_([r.id for r in with_images]))
    )
    evaluated_ids = set(eval_result.scalars().all())

    return [r for r in with_images if r.id not in evaluated_ids]


async def collect_written_scores(db: AsyncSession, attempt_id: int) -> WrittenScoreSummary:
    """
    Sum every evaluation of the attempt, overall and per language tag.
    Always a full re-read, never old + delta.
    """
    result = await db.execute(
        select(WrittenEvaluation, WrittenResponse.question_id)
        .join(WrittenResponse, WrittenResponse.id == WrittenEvaluation.written_response_id)
        .where(WrittenResponse.attempt_id == attempt_id)
        .order_by(WrittenResponse.question_id)
    )

    summary = WrittenScoreSummary()
    languages: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))

    for evaluation, question_id in result.all():
        score = Decimal(str(evaluation.total_score or 0))
        summary.written_score += score
        lang = normalize_language(evaluation.language)
        languages[lang] += score
        summary.details.append({
            "response_id": evaluation.written_response_id,
            "question_id": question_id,
            "score": float(score),
            "language": evaluation.language,
            "evaluator_type": evaluation.evaluator_type.value,
            "feedback": evaluation.feedback,
            "extracted_text": evaluation.extracted_text,
        })

    summary.languages = dict(languages)
    return summary


async def _evaluate_one(
    evaluator: WrittenAnswerEvaluator,
    semaphore: asyncio.Semaphore,
    attempt_id: int,
    response: WrittenResponse,
    question: Optional[ExamQuestion],
    timeout_seconds: float
) -> EvaluationResult:
    if question is None:
        raise ExternalServiceError(
            f"Question {response.question_id} not found; cannot determine max marks",
            details={"response_id": response.id, "question_id": response.question_id}
        )

    max_marks = Decimal(str(question.marks))
    language_hint = question.language or settings.DEFAULT_LANGUAGE_HINT
    async with semaphore:
        try:
            outcome = await asyncio.wait_for(
                evaluator.evaluate(
                    attempt_id,
                    response.question_id,
                    list(response.image_urls),
                    max_marks,
                    language_hint,
                ),
                timeout=timeout_seconds
            )
        except asyncio.TimeoutError:
            raise ExternalServiceError(
                f"Evaluator call exceeded {timeout_seconds} seconds",
                code=ErrorCode.EVALUATION_TIMEOUT,
                details={"response_id": response.id, "question_id": response.question_id}
            )

    # Same 0..marks rule for every evaluator, not only the HTTP client
    score = Decimal(str(outcome.score)) if outcome.score is not None else None
    if score is None or not score.is_finite() or score < 0 or score > max_marks:
        raise ExternalServiceError(
            "Evaluator score out of range",
            details={"response_id": response.id, "score": str(outcome.score), "max_marks": str(max_marks)}
        )
    return outcome


async def evaluate_pending(
    db: AsyncSession,
    attempt_id: int,
    evaluator: Optional[WrittenAnswerEvaluator] = None,
    commit: bool = True
) -> EvaluationPassResult:
    """
    Evaluate every pending written response of an attempt, best effort.

    Args:
        db: Database session
        attempt_id: Attempt whose written responses to evaluate
        evaluator: External evaluator (defaults to the HTTP client)
        commit: Commit new evaluations before returning

    Returns:
        EvaluationPassResult with newly evaluated ids, still-pending ids and
        the written totals re-read after the pass

    Raises:
        PersistenceError: If storing a successful evaluation fails
    """
    evaluator = evaluator or get_evaluation_client()
    pass_result = EvaluationPassResult()

    pending = await list_pending_responses(db, attempt_id)

    if pending:
        logger.info(f"Found {len(pending)} pending written evaluations for attempt {attempt_id}")

        q_result = await db.execute(
            select(ExamQuestion).where(ExamQuestion.id.in_({r.question_id for r in pending}))
        )
        questions = {q.id: q for q in q_result.scalars().all()}

        semaphore = asyncio.Semaphore(max(1, settings.EVALUATION_MAX_CONCURRENCY))
        timeout_seconds = settings.EVALUATION_TIMEOUT_SECONDS

        tasks = [
            _evaluate_one(
                evaluator, semaphore, attempt_id, response,
                questions.get(response.question_id), timeout_seconds
            )
            for response in pending
        ]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        for response, outcome in zip(pending, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error(
                    f"Failed to evaluate pending response {response.id}: {type(outcome).__name__}: {outcome}",
                    extra={"attempt_id": attempt_id, "response_id": response.id}
                )
                pass_result.pending_response_ids.append(response.id)
                continue

            _, created = await upsert(
                db,
                WrittenEvaluation,
                key={"written_response_id": response.id},
                values={
                    "total_score": outcome.score,
                    "feedback": outcome.feedback,
                    "extracted_text": outcome.extracted_text,
                    "language": outcome.language,
                    "evaluator_type": EvaluatorType.AI,
                    "evaluated_at": utcnow(),
                },
                overwrite=False,
            )
            if created:
                pass_result.evaluated_response_ids.append(response.id)
            else:
                logger.info(f"Response {response.id} was evaluated concurrently; keeping existing evaluation")

        if commit and pass_result.evaluated_response_ids:
            await commit_or_raise(db, "written evaluations", {"attempt_id": attempt_id})

    pass_result.summary = await collect_written_scores(db, attempt_id)

    logger.info(
        f"Evaluation pass for attempt {attempt_id}: "
        f"evaluated={len(pass_result.evaluated_response_ids)}, "
        f"still_pending={len(pass_result.pending_response_ids)}, "
        f"written_score={pass_result.summary.written_score}"
    )
    return pass_result
