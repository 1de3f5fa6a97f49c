"""
Ranking Engine Tests

- Overall ranks follow total_weighted_score descending, 1..N with no gaps
- Class ranks restart at 1 inside each grade group
- Ties get distinct consecutive ranks, ordered by score id
- Ranks are mirrored onto the candidate read-model
- Only exam controllers may rank; only completed attempts are ranked
"""
import asyncio
import gc
import pytest
from decimal import Decimal
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from exam_results.errors import AuthorizationError, NotFoundError, ErrorCode
from exam_results.orm import Candidate, ExamAttempt, AttemptStatus, ExamSession, OverallScore
from exam_results.services import ranking_engine
from exam_results.services.ranking_engine import (
    RankInput, assign_ranks, calculate_rankings, group_key, UNKNOWN_GROUP
)
from exam_results.services.score_aggregator import finalize_attempt, get_overall_score
from exam_results.tests.factories import FakeEvaluator


async def _scored_candidate(
    db: AsyncSession,
    exam_session_id: int,
    total: str,
    grade: Optional[str] = "Grade 5",
    status: AttemptStatus = AttemptStatus.COMPLETED,
    is_qualified: bool = True
) -> int:
    candidate = Candidate(first_name="Cand", applying_grade=grade)
    db.add(candidate)
    await db.flush()
    db.add(ExamAttempt(student_id=candidate.id, exam_session_id=exam_session_id, status=status))
    db.add(OverallScore(
        student_id=candidate.id,
        exam_session_id=exam_session_id,
        mcq_score=Decimal(total),
        written_score=Decimal("0"),
        total_weighted_score=Decimal(total),
        total_possible_marks=Decimal("10"),
        percentage_score=Decimal(total) * 10,
        is_qualified=is_qualified,
        status="qualified" if is_qualified else "rejected",
        grade_level=grade,
    ))
    await db.flush()
    return candidate.id


async def _session(db: AsyncSession) -> int:
    exam_session = ExamSession(name="Ranking session", qualification_threshold=Decimal("40"))
    db.add(exam_session)
    await db.flush()
    return exam_session.id


async def _scores_by_student(db: AsyncSession, exam_session_id: int) -> dict:
    result = await db.execute(
        select(OverallScore)
        .where(OverallScore.exam_session_id == exam_session_id)
        .execution_options(populate_existing=True)
    )
    return {s.student_id: s for s in result.scalars().all()}


# =============================================================================
# Pure ranking
# =============================================================================

def test_assign_ranks_orders_by_total():
    ranked = assign_ranks([
        RankInput(score_id=1, student_id=10, total_weighted_score=Decimal("5.5"), group="A"),
        RankInput(score_id=2, student_id=20, total_weighted_score=Decimal("9"), group="A"),
        RankInput(score_id=3, student_id=30, total_weighted_score=Decimal("7"), group="A"),
    ])

    assert [(r.student_id, r.overall_rank) for r in ranked] == [(20, 1), (30, 2), (10, 3)]


def test_ties_get_distinct_consecutive_ranks():
    ranked = assign_ranks([
        RankInput(score_id=5, student_id=50, total_weighted_score=Decimal("7")),
        RankInput(score_id=4, student_id=40, total_weighted_score=Decimal("7")),
        RankInput(score_id=6, student_id=60, total_weighted_score=Decimal("3")),
    ])

    assert [(r.student_id, r.overall_rank) for r in ranked] == [(40, 1), (50, 2), (60, 3)]


def test_class_ranks_restart_per_group():
    ranked = assign_ranks([
        RankInput(score_id=1, student_id=1, total_weighted_score=Decimal("9"), group="Grade 5"),
        RankInput(score_id=2, student_id=2, total_weighted_score=Decimal("8"), group="Grade 6"),
        RankInput(score_id=3, student_id=3, total_weighted_score=Decimal("7"), group="Grade 5"),
        RankInput(score_id=4, student_id=4, total_weighted_score=Decimal("6"), group=None),
    ])
    by_student = {r.student_id: r for r in ranked}

    assert by_student[1].class_rank == 1
    assert by_student[3].class_rank == 2
    assert by_student[2].class_rank == 1
    assert by_student[4].group == UNKNOWN_GROUP
    assert by_student[4].class_rank == 1


def test_ranks_form_a_permutation():
    rows = [
        RankInput(score_id=i, student_id=i, total_weighted_score=Decimal(i % 4), group=f"G{i % 3}")
        for i in range(1, 13)
    ]
    ranked = assign_ranks(rows)

    assert sorted(r.overall_rank for r in ranked) == list(range(1, 13))
    for group in {r.group for r in ranked}:
        members = [r.class_rank for r in ranked if r.group == group]
        assert sorted(members) == list(range(1, len(members) + 1))


def test_group_key_defaults_to_unknown():
    assert group_key(None) == UNKNOWN_GROUP
    assert group_key("  ") == UNKNOWN_GROUP
    assert group_key("Grade 7") == "Grade 7"


# =============================================================================
# calculate_rankings
# =============================================================================

@pytest.mark.asyncio
async def test_three_candidates_ranked_by_total(db: AsyncSession, controller):
    session_id = await _session(db)
    first = await _scored_candidate(db, session_id, "9")
    second = await _scored_candidate(db, session_id, "7", grade="Grade 6")
    third = await _scored_candidate(db, session_id, "5.5", is_qualified=False)
    await db.commit()

    ranked = await calculate_rankings(db, session_id, controller)

    assert [r.student_id for r in ranked] == [first, second, third]
    assert [r.overall_rank for r in ranked] == [1, 2, 3]

    scores = await _scores_by_student(db, session_id)
    assert scores[first].overall_rank == 1
    assert scores[second].overall_rank == 2
    assert scores[third].overall_rank == 3
    assert scores[first].class_rank == 1
    assert scores[second].class_rank == 1
    assert scores[third].class_rank == 2
    assert scores[first].ranked_at is not None


@pytest.mark.asyncio
async def test_ranks_are_mirrored_to_candidates(db: AsyncSession, controller):
    session_id = await _session(db)
    winner = await _scored_candidate(db, session_id, "9")
    loser = await _scored_candidate(db, session_id, "2", is_qualified=False)
    await db.commit()

    await calculate_rankings(db, session_id, controller)

    result = await db.execute(
        select(Candidate).where(Candidate.id.in_([winner, loser])).execution_options(populate_existing=True)
    )
    candidates = {c.id: c for c in result.scalars().all()}
    assert candidates[winner].final_rank == 1
    assert candidates[winner].overall_status == "qualified"
    assert candidates[loser].final_rank == 2
    assert candidates[loser].class_rank == 2
    assert candidates[loser].overall_status == "rejected"


@pytest.mark.asyncio
async def test_only_completed_attempts_are_ranked(db: AsyncSession, controller):
    session_id = await _session(db)
    done = await _scored_candidate(db, session_id, "5")
    unfinished = await _scored_candidate(db, session_id, "9", status=AttemptStatus.IN_PROGRESS)
    await db.commit()

    ranked = await calculate_rankings(db, session_id, controller)

    assert [r.student_id for r in ranked] == [done]
    scores = await _scores_by_student(db, session_id)
    assert scores[unfinished].overall_rank is None


@pytest.mark.asyncio
async def test_rankings_do_not_touch_score_fields(db: AsyncSession, controller):
    session_id = await _session(db)
    student = await _scored_candidate(db, session_id, "7")
    await db.commit()

    await calculate_rankings(db, session_id, controller)

    score = (await _scores_by_student(db, session_id))[student]
    assert Decimal(str(score.total_weighted_score)) == Decimal("7")
    assert Decimal(str(score.mcq_score)) == Decimal("7")


@pytest.mark.asyncio
async def test_rerun_reflects_new_scores(db: AsyncSession, controller):
    session_id = await _session(db)
    a = await _scored_candidate(db, session_id, "9")
    b = await _scored_candidate(db, session_id, "7")
    await db.commit()
    await calculate_rankings(db, session_id, controller)

    scores = await _scores_by_student(db, session_id)
    scores[b].total_weighted_score = Decimal("9.5")
    await db.commit()

    ranked = await calculate_rankings(db, session_id, controller)

    assert [r.student_id for r in ranked] == [b, a]


@pytest.mark.asyncio
async def test_second_run_waits_for_running_one(db: AsyncSession, controller):
    session_id = await _session(db)
    await _scored_candidate(db, session_id, "9")
    await _scored_candidate(db, session_id, "7")
    await db.commit()

    lock = ranking_engine._session_lock(session_id)
    await lock.acquire()
    task = asyncio.create_task(calculate_rankings(db, session_id, controller))
    await asyncio.sleep(0.05)

    # a run already holds the session lock
    assert not task.done()

    lock.release()
    ranked = await task
    assert [r.overall_rank for r in ranked] == [1, 2]


@pytest.mark.asyncio
async def test_empty_session_ranks_nobody(db: AsyncSession, controller):
    session_id = await _session(db)
    await db.commit()

    assert await calculate_rankings(db, session_id, controller) == []


@pytest.mark.asyncio
async def test_ranking_requires_exam_controller(db: AsyncSession, super_admin):
    session_id = await _session(db)
    await db.commit()

    with pytest.raises(AuthorizationError):
        await calculate_rankings(db, session_id, super_admin)

    with pytest.raises(AuthorizationError):
        await calculate_rankings(db, session_id, None)


@pytest.mark.asyncio
async def test_ranking_unknown_session(db: AsyncSession, controller):
    with pytest.raises(NotFoundError) as exc_info:
        await calculate_rankings(db, 987654, controller)
    assert exc_info.value.code == ErrorCode.SESSION_NOT_FOUND


@pytest.mark.asyncio
async def test_finalize_then_rank(db: AsyncSession, exam, controller):
    await finalize_attempt(db, exam.attempt_id, evaluator=FakeEvaluator({exam.written_id: Decimal("4.5")}))

    ranked = await calculate_rankings(db, exam.exam_session_id, controller)

    assert len(ranked) == 1
    assert ranked[0].group == "Grade 5"
    score = await get_overall_score(db, exam.attempt_id)
    assert score.overall_rank == 1
    assert score.class_rank == 1


@pytest.mark.asyncio
async def test_session_lock_is_dropped_after_run(db: AsyncSession, controller):
    session_id = await _session(db)
    await _scored_candidate(db, session_id, "9")
    await db.commit()

    await calculate_rankings(db, session_id, controller)
    gc.collect()

    assert session_id not in ranking_engine._session_locks
