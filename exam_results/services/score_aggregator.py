"""
Score Aggregator

Turns graded MCQ marks and evaluated written marks into the single
OverallScore row per (candidate, exam session).

Two entry points:
- finalize_attempt: full recomputation from source data, safely repeatable
- correct_written_score: human override of one written score, recomputing
  written totals from all evaluations and reusing the stored mcq_score and
  total_possible_marks

Field ownership: this module never writes overall_rank / class_rank.

CONCURRENCY: finalize and correction for the same attempt are serialized by a
per-attempt lock inside this process; every write is a keyed upsert so runs
in other processes converge to the same row.
"""
import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from exam_results.config.settings import settings
from exam_results.errors import NotFoundError, ValidationError, ErrorCode, require_field
from exam_results.orm.attempt import ExamAttempt, AttemptStatus
from exam_results.orm.base import utcnow
from exam_results.orm.candidate import Candidate
from exam_results.orm.evaluation import WrittenEvaluation, EvaluatorType
from exam_results.orm.exam_session import ExamSession, ExamSubSession, ExamQuestion, SubSessionType
from exam_results.orm.overall_score import OverallScore
from exam_results.orm.responses import WrittenResponse
from exam_results.security.rbac import (
    CallerIdentity, Role, require_role, require_attempt_owner_or_controller
)
from exam_results.services.evaluation_client import WrittenAnswerEvaluator
from exam_results.services.mcq_grader import grade_attempt
from exam_results.services.persistence import upsert, commit_or_raise
from exam_results.services.qualification import resolve_threshold, compute_totals
from exam_results.services.written_evaluation_service import (
    evaluate_pending, collect_written_scores, list_pending_responses, WrittenScoreSummary
)

logger = logging.getLogger(__name__)

# An entry lives only while a caller holds or waits on the lock
_attempt_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()


def _attempt_lock(attempt_id: int) -> asyncio.Lock:
    lock = _attempt_locks.get(attempt_id)
    if lock is None:
        lock = asyncio.Lock()
        _attempt_locks[attempt_id] = lock
    return lock


@dataclass
class FinalizeResult:
    attempt_id: int
    student_id: int
    exam_session_id: int
    mcq_score: Decimal
    written_score: Decimal
    total_weighted_score: Decimal
    total_possible_marks: Decimal
    percentage_score: Decimal
    qualification_threshold: Decimal
    threshold_source: str
    is_qualified: bool
    status: str
    languages: Dict[str, Decimal] = field(default_factory=dict)
    written_breakdown: List[dict] = field(default_factory=list)
    pending_response_ids: List[int] = field(default_factory=list)
    total_questions: int = 0
    correct_answers: int = 0


@dataclass
class CorrectionResult:
    response_id: int
    attempt_id: int
    previous_score: Optional[Decimal]
    new_score: Decimal
    mcq_score: Decimal
    written_score: Decimal
    total_weighted_score: Decimal
    percentage_score: Decimal
    is_qualified: bool
    status: str


# ================= LOOKUPS =================

async def _get_attempt(db: AsyncSession, attempt_id: int) -> ExamAttempt:
    result = await db.execute(select(ExamAttempt).where(ExamAttempt.id == attempt_id))
    attempt = result.scalar_one_or_none()
    if attempt is None:
        raise NotFoundError("Attempt", attempt_id, code=ErrorCode.ATTEMPT_NOT_FOUND)
    return attempt


async def _get_exam_session(db: AsyncSession, exam_session_id: int) -> ExamSession:
    result = await db.execute(select(ExamSession).where(ExamSession.id == exam_session_id))
    exam_session = result.scalar_one_or_none()
    if exam_session is None:
        raise NotFoundError("Exam session", exam_session_id, code=ErrorCode.SESSION_NOT_FOUND)
    return exam_session


async def _find_overall_score(db: AsyncSession, student_id: int, exam_session_id: int) -> Optional[OverallScore]:
    result = await db.execute(
        select(OverallScore).where(
            OverallScore.student_id == student_id,
            OverallScore.exam_session_id == exam_session_id
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_attempt_for_candidate(db: AsyncSession, student_id: int, exam_session_id: int) -> ExamAttempt:
    """Latest attempt for a (candidate, session) pair."""
    require_field(student_id, "student_id")
    require_field(exam_session_id, "exam_session_id")
    result = await db.execute(
        select(ExamAttempt)
        .where(ExamAttempt.student_id == student_id, ExamAttempt.exam_session_id == exam_session_id)
        .order_by(ExamAttempt.started_at.desc(), ExamAttempt.id.desc())
        .limit(1)
    )
    attempt = result.scalar_one_or_none()
    if attempt is None:
        raise NotFoundError(
            "Attempt", code=ErrorCode.ATTEMPT_NOT_FOUND,
            details={"student_id": student_id, "exam_session_id": exam_session_id}
        )
    return attempt


async def get_overall_score(db: AsyncSession, attempt_id: int) -> OverallScore:
    """Stored OverallScore of an attempt's (candidate, session)."""
    require_field(attempt_id, "attempt_id")
    attempt = await _get_attempt(db, attempt_id)
    score = await _find_overall_score(db, attempt.student_id, attempt.exam_session_id)
    if score is None:
        raise NotFoundError(
            "Overall score", code=ErrorCode.SCORE_NOT_FOUND,
            details={"attempt_id": attempt_id, "student_id": attempt.student_id,
                     "exam_session_id": attempt.exam_session_id}
        )
    return score


async def compute_total_possible_marks(db: AsyncSession, exam_session_id: int) -> Decimal:
    """Sum of marks over all questions in non-cognitive sub-sessions."""
    result = await db.execute(
        select(ExamQuestion.marks)
        .join(ExamSubSession, ExamSubSession.id == ExamQuestion.sub_session_id)
        .where(
            ExamSubSession.exam_session_id == exam_session_id,
            ExamSubSession.session_type != SubSessionType.COGNITIVE
        )
    )
    return sum((Decimal(str(m or 0)) for m in result.scalars().all()), Decimal("0"))


def _build_breakdown(
    mcq_score: Decimal,
    summary: WrittenScoreSummary,
    pending_response_ids: List[int],
    threshold_source: str
) -> dict:
    return {
        "mcq_score": float(mcq_score),
        "written_score": float(summary.written_score),
        "languages": {lang: float(score) for lang, score in summary.languages.items()},
        "details": [
            {
                "question_id": d["question_id"],
                "score": d["score"],
                "language": d["language"],
                "evaluator_type": d["evaluator_type"],
            }
            for d in summary.details
        ],
        "pending_written": list(pending_response_ids),
        "threshold_source": threshold_source,
    }


# ================= FINALIZE =================

async def finalize_attempt(
    db: AsyncSession,
    attempt_id: int,
    caller: Optional[CallerIdentity] = None,
    evaluator: Optional[WrittenAnswerEvaluator] = None
) -> FinalizeResult:
    """
    Finalize an attempt: grade MCQs, evaluate pending written answers,
    upsert the OverallScore and mark the attempt completed.

    Idempotent: re-finalizing recomputes from source data and yields the
    same score values. Written answers the evaluator could not score stay
    pending and count as 0 until a later pass.

    Args:
        db: Database session
        attempt_id: Attempt to finalize
        caller: Requesting identity; None for internal callers (time-keeper)
        evaluator: External evaluator override

    Returns:
        FinalizeResult with the full score breakdown

    Raises:
        NotFoundError: Attempt or exam session missing
        ValidationError: Attempt was never started
        AuthorizationError: Caller is neither controller nor the attempt's candidate
        PersistenceError: A required write failed
    """
    require_field(attempt_id, "attempt_id")
    attempt = await _get_attempt(db, attempt_id)

    if caller is not None:
        require_attempt_owner_or_controller(caller, attempt.student_id)

    if attempt.status == AttemptStatus.NOT_STARTED:
        raise ValidationError(
            "Attempt has not been started",
            code=ErrorCode.INVALID_STATE,
            details={"attempt_id": attempt_id, "status": attempt.status.value}
        )

    logger.info(f"Finalizing attempt {attempt_id}")

    async with _attempt_lock(attempt_id):
        exam_session = await _get_exam_session(db, attempt.exam_session_id)
        total_possible_marks = await compute_total_possible_marks(db, exam_session.id)
        logger.info(f"Total possible marks for session {exam_session.id}: {total_possible_marks}")

        grading = await grade_attempt(db, attempt_id)

        if settings.FEATURE_AUTO_EVALUATE_ON_FINALIZE:
            evaluation_pass = await evaluate_pending(db, attempt_id, evaluator=evaluator)
            summary = evaluation_pass.summary
            pending_ids = evaluation_pass.pending_response_ids
        else:
            summary = await collect_written_scores(db, attempt_id)
            pending_ids = [r.id for r in await list_pending_responses(db, attempt_id)]

        threshold = resolve_threshold(exam_session)
        totals = compute_totals(grading.mcq_score, summary.written_score, total_possible_marks, threshold.value)

        candidate_result = await db.execute(select(Candidate).where(Candidate.id == attempt.student_id))
        candidate = candidate_result.scalar_one_or_none()

        now = utcnow()
        await upsert(
            db,
            OverallScore,
            key={"student_id": attempt.student_id, "exam_session_id": attempt.exam_session_id},
            values={
                "mcq_score": grading.mcq_score,
                "written_score": summary.written_score,
                "total_weighted_score": totals.total_weighted_score,
                "total_possible_marks": total_possible_marks,
                "percentage_score": totals.percentage_score,
                "qualification_threshold": threshold.value,
                "is_qualified": totals.is_qualified,
                "status": totals.status,
                "grade_level": candidate.applying_grade if candidate else None,
                "score_breakdown": _build_breakdown(grading.mcq_score, summary, pending_ids, threshold.source),
                "calculated_at": now,
            },
        )

        attempt.status = AttemptStatus.COMPLETED
        if attempt.submitted_at is None:
            attempt.submitted_at = now

        await commit_or_raise(db, "overall score", {"attempt_id": attempt_id})

    logger.info(
        f"Attempt {attempt_id} finalized: mcq={grading.mcq_score}, written={summary.written_score}, "
        f"total={totals.total_weighted_score}/{total_possible_marks} ({totals.percentage_score}%), "
        f"qualified={totals.is_qualified}, pending={len(pending_ids)}"
    )

    return FinalizeResult(
        attempt_id=attempt_id,
        student_id=attempt.student_id,
        exam_session_id=attempt.exam_session_id,
        mcq_score=grading.mcq_score,
        written_score=summary.written_score,
        total_weighted_score=totals.total_weighted_score,
        total_possible_marks=total_possible_marks,
        percentage_score=totals.percentage_score,
        qualification_threshold=threshold.value,
        threshold_source=threshold.source,
        is_qualified=totals.is_qualified,
        status=totals.status,
        languages=summary.languages,
        written_breakdown=summary.details,
        pending_response_ids=pending_ids,
        total_questions=grading.total_questions,
        correct_answers=grading.correct_answers,
    )


# ================= CORRECTION =================

def _parse_score(new_score) -> Decimal:
    try:
        value = Decimal(str(new_score))
    except (InvalidOperation, ValueError):
        raise ValidationError(
            "new_score must be a number",
            code=ErrorCode.SCORE_OUT_OF_RANGE,
            details={"new_score": str(new_score)}
        )
    if not value.is_finite():
        raise ValidationError(
            "new_score must be a finite number",
            code=ErrorCode.SCORE_OUT_OF_RANGE,
            details={"new_score": str(new_score)}
        )
    return value


async def correct_written_score(
    db: AsyncSession,
    response_id: int,
    new_score,
    attempt_id: int,
    caller: CallerIdentity
) -> CorrectionResult:
    """
    Overwrite one written evaluation with a human score and recompute totals.

    All preconditions (role, range, ownership of the response, existing
    OverallScore) are checked before any write; the update is committed as
    one unit.

    Raises:
        AuthorizationError: Caller is not an exam controller
        ValidationError: Missing ids, score outside 0..question marks, response not in attempt
        NotFoundError: Response, question, attempt or OverallScore missing
        PersistenceError: The write failed
    """
    require_role(caller, Role.EXAM_CONTROLLER)
    require_field(response_id, "response_id")
    require_field(attempt_id, "attempt_id")
    require_field(new_score, "new_score")
    score_value = _parse_score(new_score)

    result = await db.execute(select(WrittenResponse).where(WrittenResponse.id == response_id))
    response = result.scalar_one_or_none()
    if response is None:
        raise NotFoundError("Written response", response_id, code=ErrorCode.RESPONSE_NOT_FOUND)

    if response.attempt_id != attempt_id:
        raise ValidationError(
            "Written response does not belong to this attempt",
            code=ErrorCode.CONTEXT_MISMATCH,
            details={"response_id": response_id, "attempt_id": attempt_id,
                     "response_attempt_id": response.attempt_id}
        )

    q_result = await db.execute(select(ExamQuestion).where(ExamQuestion.id == response.question_id))
    question = q_result.scalar_one_or_none()
    if question is None:
        raise NotFoundError("Question", response.question_id, code=ErrorCode.QUESTION_NOT_FOUND)

    max_marks = Decimal(str(question.marks))
    if score_value < 0 or score_value > max_marks:
        raise ValidationError(
            f"Score must be between 0 and {max_marks}",
            code=ErrorCode.SCORE_OUT_OF_RANGE,
            details={"new_score": str(score_value), "max_marks": str(max_marks), "response_id": response_id}
        )

    logger.info(f"Updating score for response {response_id} to {score_value} (by user {caller.user_id})")

    async with _attempt_lock(attempt_id):
        # Score state is read under the lock
        attempt = await _get_attempt(db, attempt_id)
        overall = await _find_overall_score(db, attempt.student_id, attempt.exam_session_id)
        if overall is None:
            raise NotFoundError(
                "Overall score", code=ErrorCode.SCORE_NOT_FOUND,
                details={"attempt_id": attempt_id, "reason": "attempt has not been finalized"}
            )
        exam_session = await _get_exam_session(db, attempt.exam_session_id)

        prev_result = await db.execute(
            select(WrittenEvaluation.total_score)
            .where(WrittenEvaluation.written_response_id == response_id)
        )
        previous = prev_result.scalar_one_or_none()

        await upsert(
            db,
            WrittenEvaluation,
            key={"written_response_id": response_id},
            values={
                "total_score": score_value,
                "evaluator_type": EvaluatorType.HUMAN,
                "evaluated_by": caller.user_id,
                "evaluated_at": utcnow(),
            },
        )

        summary = await collect_written_scores(db, attempt_id)

        mcq_score = Decimal(str(overall.mcq_score or 0))
        total_possible = Decimal(str(overall.total_possible_marks or 0))
        threshold = resolve_threshold(exam_session)
        totals = compute_totals(mcq_score, summary.written_score, total_possible, threshold.value)

        breakdown = dict(overall.score_breakdown or {})
        refreshed = _build_breakdown(
            mcq_score, summary,
            [rid for rid in breakdown.get("pending_written", []) if rid != response_id],
            threshold.source
        )
        breakdown.update(refreshed)

        overall.written_score = summary.written_score
        overall.total_weighted_score = totals.total_weighted_score
        overall.percentage_score = totals.percentage_score
        overall.qualification_threshold = threshold.value
        overall.is_qualified = totals.is_qualified
        overall.status = totals.status
        overall.score_breakdown = breakdown
        overall.calculated_at = utcnow()

        await commit_or_raise(db, "score correction", {"response_id": response_id, "attempt_id": attempt_id})

    logger.info(
        f"Corrected response {response_id}: {previous} -> {score_value}; "
        f"written={summary.written_score}, total={totals.total_weighted_score} ({totals.percentage_score}%)"
    )

    return CorrectionResult(
        response_id=response_id,
        attempt_id=attempt_id,
        previous_score=Decimal(str(previous)) if previous is not None else None,
        new_score=score_value,
        mcq_score=mcq_score,
        written_score=summary.written_score,
        total_weighted_score=totals.total_weighted_score,
        percentage_score=totals.percentage_score,
        is_qualified=totals.is_qualified,
        status=totals.status,
    )
