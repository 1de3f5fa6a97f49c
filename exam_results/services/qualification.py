"""
Qualification rules shared by finalize and correction.

The threshold comes from the exam session. When a session has none, the
service default applies and the fallback is logged and reported as
threshold_source="default" so it is visible in the stored breakdown.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from exam_results.config.settings import settings
from exam_results.orm.exam_session import ExamSession

logger = logging.getLogger(__name__)

QUANTIZER_2DP = Decimal("0.01")

STATUS_QUALIFIED = "qualified"
STATUS_WAITING_LIST = "waiting_list"
STATUS_REJECTED = "rejected"


@dataclass(frozen=True)
class QualificationThreshold:
    value: Decimal
    source: str  # "session" or "default"


@dataclass(frozen=True)
class ScoreTotals:
    total_weighted_score: Decimal
    percentage_score: Decimal
    is_qualified: bool
    status: str


def resolve_threshold(exam_session: ExamSession) -> QualificationThreshold:
    """Threshold configured on the session, else the explicit service default."""
    if exam_session.qualification_threshold is not None:
        return QualificationThreshold(Decimal(str(exam_session.qualification_threshold)), "session")

    default = Decimal(str(settings.DEFAULT_QUALIFICATION_THRESHOLD))
    logger.warning(
        f"Exam session {exam_session.id} has no qualification threshold; "
        f"applying service default {default}"
    )
    return QualificationThreshold(default, "default")


def exact_percentage(obtained: Decimal, total: Decimal) -> Decimal:
    """Unrounded percentage; 0 when nothing is scorable."""
    total = Decimal(str(total))
    if total <= 0:
        return Decimal("0")
    return Decimal(str(obtained)) / total * 100


def qualification_status(percentage: Decimal, threshold: Decimal) -> str:
    if percentage >= threshold:
        return STATUS_QUALIFIED
    if percentage >= threshold * Decimal(str(settings.WAITING_LIST_RATIO)):
        return STATUS_WAITING_LIST
    return STATUS_REJECTED


def compute_totals(
    mcq_score: Decimal,
    written_score: Decimal,
    total_possible_marks: Decimal,
    threshold: Decimal
) -> ScoreTotals:
    """
    total = mcq + written; percentage = total / possible * 100;
    qualified iff the exact percentage >= threshold. Only the stored
    percentage_score is rounded.
    """
    total = Decimal(str(mcq_score)) + Decimal(str(written_score))
    exact = exact_percentage(total, total_possible_marks)
    threshold = Decimal(str(threshold))
    status = qualification_status(exact, threshold)
    return ScoreTotals(
        total_weighted_score=total,
        percentage_score=exact.quantize(QUANTIZER_2DP, rounding=ROUND_HALF_UP),
        is_qualified=status == STATUS_QUALIFIED,
        status=status,
    )
