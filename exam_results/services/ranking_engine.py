"""
Ranking Engine

Batch recomputation of ranks for one exam session.

RANKING RULES:
- Overall rank: total_weighted_score descending, ranks 1..N by position
- Class rank: same rule inside each grade_level group ("unknown" when absent)
- Ties get distinct consecutive ranks; equal scores are ordered by
  OverallScore.id so repeated runs give the same result
- Only scores of completed attempts are ranked

Writes touch ONLY overall_rank / class_rank / ranked_at, so a correction that
commits between read and write keeps its score fields. Runs for the same
session are serialized by a per-session lock; a second caller waits and then
recomputes against the latest scores.
"""
import asyncio
import logging
import weakref
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from exam_results.errors import NotFoundError, PersistenceError, ErrorCode, require_field
from exam_results.orm.attempt import ExamAttempt, AttemptStatus
from exam_results.orm.base import utcnow
from exam_results.orm.candidate import Candidate
from exam_results.orm.exam_session import ExamSession
from exam_results.orm.overall_score import OverallScore
from exam_results.security.rbac import CallerIdentity, Role, require_role
from exam_results.services.persistence import commit_or_raise

logger = logging.getLogger(__name__)

UNKNOWN_GROUP = "unknown"

# An entry lives only while a caller holds or waits on the lock
_session_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()


def _session_lock(exam_session_id: int) -> asyncio.Lock:
    lock = _session_locks.get(exam_session_id)
    if lock is None:
        lock = asyncio.Lock()
        _session_locks[exam_session_id] = lock
    return lock


@dataclass
class RankInput:
    score_id: int
    student_id: int
    total_weighted_score: Decimal
    group: Optional[str] = None


@dataclass
class RankedEntry:
    score_id: int
    student_id: int
    total_weighted_score: Decimal
    group: str
    overall_rank: int
    class_rank: int
    is_qualified: bool = False
    status: Optional[str] = None


def group_key(grade_level: Optional[str]) -> str:
    if grade_level is None or not str(grade_level).strip():
        return UNKNOWN_GROUP
    return str(grade_level).strip()


def _order(rows: Sequence[RankInput]) -> List[RankInput]:
    return sorted(rows, key=lambda r: (-Decimal(str(r.total_weighted_score)), r.score_id))


def assign_ranks(rows: Sequence[RankInput]) -> List[RankedEntry]:
    """
    Compute overall and class ranks.

    Returns entries in overall-rank order. Overall ranks form {1..N}; class
    ranks form {1..M} within each group.
    """
    ordered = _order(rows)

    class_positions: Dict[str, int] = defaultdict(int)
    ranked = []
    for position, row in enumerate(ordered, start=1):
        group = group_key(row.group)
        class_positions[group] += 1
        ranked.append(RankedEntry(
            score_id=row.score_id,
            student_id=row.student_id,
            total_weighted_score=Decimal(str(row.total_weighted_score)),
            group=group,
            overall_rank=position,
            class_rank=class_positions[group],
        ))
    return ranked


async def _load_finalized_scores(db: AsyncSession, exam_session_id: int) -> List[OverallScore]:
    result = await db.execute(
        select(OverallScore)
        .join(
            ExamAttempt,
            (ExamAttempt.student_id == OverallScore.student_id)
            & (ExamAttempt.exam_session_id == OverallScore.exam_session_id)
        )
        .where(
            OverallScore.exam_session_id == exam_session_id,
            ExamAttempt.status == AttemptStatus.COMPLETED
        )
        .order_by(OverallScore.id)
    )
    return list(result.scalars().unique().all())


async def calculate_rankings(
    db: AsyncSession,
    exam_session_id: int,
    caller: CallerIdentity
) -> List[RankedEntry]:
    """
    Rank every finalized score of a session and mirror ranks to candidates.

    All-or-nothing: ranks for the whole session are committed together.

    Raises:
        AuthorizationError: Caller is not an exam controller
        NotFoundError: Exam session does not exist
        PersistenceError: Writing ranks failed
    """
    require_role(caller, Role.EXAM_CONTROLLER)
    require_field(exam_session_id, "exam_session_id")

    session_result = await db.execute(select(ExamSession.id).where(ExamSession.id == exam_session_id))
    if session_result.scalar_one_or_none() is None:
        raise NotFoundError("Exam session", exam_session_id, code=ErrorCode.SESSION_NOT_FOUND)

    lock = _session_lock(exam_session_id)
    if lock.locked():
        logger.info(f"Ranking already running for session {exam_session_id}; waiting")

    async with lock:
        scores = await _load_finalized_scores(db, exam_session_id)
        if not scores:
            logger.warning(f"No finalized scores to rank for session {exam_session_id}")
            return []

        by_id = {s.id: s for s in scores}
        ranked = assign_ranks([
            RankInput(
                score_id=s.id,
                student_id=s.student_id,
                total_weighted_score=s.total_weighted_score or Decimal("0"),
                group=s.grade_level,
            )
            for s in scores
        ])

        ranked_at = utcnow()
        for entry in ranked:
            score = by_id[entry.score_id]
            entry.is_qualified = bool(score.is_qualified)
            entry.status = score.status

        try:
            for entry in ranked:
                await db.execute(
                    update(OverallScore)
                    .where(OverallScore.id == entry.score_id)
                    .values(overall_rank=entry.overall_rank, class_rank=entry.class_rank, ranked_at=ranked_at)
                )
                await db.execute(
                    update(Candidate)
                    .where(Candidate.id == entry.student_id)
                    .values(
                        final_rank=entry.overall_rank,
                        class_rank=entry.class_rank,
                        overall_status="qualified" if entry.is_qualified else entry.status,
                    )
                )
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Rank write failed for session {exam_session_id}: {type(e).__name__}: {e}")
            raise PersistenceError(
                "Failed to write rankings",
                details={"exam_session_id": exam_session_id}
            ) from e

        await commit_or_raise(db, "rankings", {"exam_session_id": exam_session_id})

    logger.info(f"Rankings computed for session {exam_session_id}: {len(ranked)} candidates ranked")
    return ranked
