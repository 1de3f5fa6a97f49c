"""
exam_results/routes/results.py
Results API: finalize, evaluate, correct, rank and score lookups.

Services enforce roles themselves; routes only resolve the caller and map
service results onto response schemas. APIError subclasses raised below are
rendered by the handlers registered in main.py.
"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from exam_results.database import get_db
from exam_results.errors import NotFoundError, ErrorCode, ErrorResponse
from exam_results.orm.attempt import ExamAttempt
from exam_results.schemas.results import (
    FinalizeResponse, EvaluationPassResponse,
    WrittenScoreCorrectionRequest, WrittenScoreCorrectionResponse,
    RankingResponse, RankedCandidate,
    AttemptLookupResponse, OverallScoreResponse,
)
from exam_results.security.rbac import (
    CallerIdentity, get_current_caller, require_exam_controller, require_attempt_owner_or_controller
)
from exam_results.services.evaluation_client import WrittenAnswerEvaluator, get_evaluation_client
from exam_results.services.ranking_engine import calculate_rankings
from exam_results.services.score_aggregator import (
    finalize_attempt, correct_written_score, get_attempt_for_candidate, get_overall_score
)
from exam_results.services.written_evaluation_service import evaluate_pending

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/results",
    tags=["Results"],
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    }
)


@router.post("/attempts/{attempt_id}/finalize", response_model=FinalizeResponse)
async def finalize(
    attempt_id: int,
    caller: CallerIdentity = Depends(get_current_caller),
    evaluator: WrittenAnswerEvaluator = Depends(get_evaluation_client),
    db: AsyncSession = Depends(get_db)
):
    """
    Finalize an attempt and return its score breakdown.

    Written answers the evaluator could not score are listed in
    pending_response_ids and count as 0.
    Exam controller, or the candidate who owns the attempt.
    """
    result = await finalize_attempt(db, attempt_id, caller=caller, evaluator=evaluator)
    return FinalizeResponse(
        attempt_id=result.attempt_id,
        student_id=result.student_id,
        exam_session_id=result.exam_session_id,
        mcq_score=float(result.mcq_score),
        written_score=float(result.written_score),
        total_weighted_score=float(result.total_weighted_score),
        total_possible_marks=float(result.total_possible_marks),
        percentage_score=float(result.percentage_score),
        qualification_threshold=float(result.qualification_threshold),
        threshold_source=result.threshold_source,
        is_qualified=result.is_qualified,
        status=result.status,
        total_questions=result.total_questions,
        correct_answers=result.correct_answers,
        languages={k: float(v) for k, v in result.languages.items()},
        written_breakdown=result.written_breakdown,
        pending_response_ids=result.pending_response_ids,
    )


@router.post("/attempts/{attempt_id}/evaluate", response_model=EvaluationPassResponse)
async def evaluate(
    attempt_id: int,
    caller: CallerIdentity = Depends(require_exam_controller),
    evaluator: WrittenAnswerEvaluator = Depends(get_evaluation_client),
    db: AsyncSession = Depends(get_db)
):
    """
    Run one evaluation pass over the attempt's pending written answers.
    Does not recompute the overall score; finalize again for that.
    Exam controller only.
    """
    result = await db.execute(select(ExamAttempt.id).where(ExamAttempt.id == attempt_id))
    if result.scalar_one_or_none() is None:
        raise NotFoundError("Attempt", attempt_id, code=ErrorCode.ATTEMPT_NOT_FOUND)

    pass_result = await evaluate_pending(db, attempt_id, evaluator=evaluator)
    return EvaluationPassResponse(
        attempt_id=attempt_id,
        evaluated_response_ids=pass_result.evaluated_response_ids,
        pending_response_ids=pass_result.pending_response_ids,
        written_score=float(pass_result.summary.written_score),
        languages={k: float(v) for k, v in pass_result.summary.languages.items()},
    )


@router.post("/written-scores", response_model=WrittenScoreCorrectionResponse)
async def update_written_score(
    request: WrittenScoreCorrectionRequest,
    caller: CallerIdentity = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db)
):
    """
    Override one written score and recompute the candidate's totals.
    Exam controller only.
    """
    result = await correct_written_score(
        db,
        response_id=request.response_id,
        new_score=request.new_score,
        attempt_id=request.attempt_id,
        caller=caller
    )
    return WrittenScoreCorrectionResponse(
        response_id=result.response_id,
        attempt_id=result.attempt_id,
        previous_score=float(result.previous_score) if result.previous_score is not None else None,
        new_score=float(result.new_score),
        mcq_score=float(result.mcq_score),
        written_score=float(result.written_score),
        total_weighted_score=float(result.total_weighted_score),
        percentage_score=float(result.percentage_score),
        is_qualified=result.is_qualified,
        status=result.status,
    )


@router.post("/sessions/{exam_session_id}/rankings", response_model=RankingResponse)
async def rank_session(
    exam_session_id: int,
    caller: CallerIdentity = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db)
):
    """
    Recompute overall and class ranks for every finalized attempt in a session.
    Exam controller only.
    """
    ranked = await calculate_rankings(db, exam_session_id, caller)
    return RankingResponse(
        message=f"Rankings calculated for {len(ranked)} candidates",
        exam_session_id=exam_session_id,
        total_ranked=len(ranked),
        rankings=[
            RankedCandidate(
                student_id=r.student_id,
                total_weighted_score=float(r.total_weighted_score),
                group=r.group,
                overall_rank=r.overall_rank,
                class_rank=r.class_rank,
                is_qualified=r.is_qualified,
                status=r.status,
            )
            for r in ranked
        ],
    )


@router.get("/attempts/lookup", response_model=AttemptLookupResponse)
async def lookup_attempt(
    student_id: int = Query(...),
    exam_session_id: int = Query(...),
    caller: CallerIdentity = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db)
):
    """Attempt of a candidate in a session."""
    require_attempt_owner_or_controller(caller, student_id)
    attempt = await get_attempt_for_candidate(db, student_id, exam_session_id)
    return AttemptLookupResponse(
        attempt_id=attempt.id,
        student_id=attempt.student_id,
        exam_session_id=attempt.exam_session_id,
        status=attempt.status.value,
        submitted_at=attempt.submitted_at.isoformat() if attempt.submitted_at else None,
    )


@router.get("/attempts/{attempt_id}/score", response_model=OverallScoreResponse)
async def attempt_score(
    attempt_id: int,
    caller: CallerIdentity = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db)
):
    score = await get_overall_score(db, attempt_id)
    require_attempt_owner_or_controller(caller, score.student_id)
    return OverallScoreResponse(**score.to_dict())
