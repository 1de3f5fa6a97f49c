from .base import Base

# Exam catalog
from .exam_session import ExamSession, ExamSubSession, ExamQuestion, SubSessionType

# Candidates and attempts
from .candidate import Candidate
from .attempt import ExamAttempt, AttemptStatus
from .responses import MCQResponse, WrittenResponse

# Results
from .evaluation import WrittenEvaluation, EvaluatorType
from .overall_score import OverallScore

__all__ = [
    "Base",
    "ExamSession",
    "ExamSubSession",
    "ExamQuestion",
    "SubSessionType",
    "Candidate",
    "ExamAttempt",
    "AttemptStatus",
    "MCQResponse",
    "WrittenResponse",
    "WrittenEvaluation",
    "EvaluatorType",
    "OverallScore",
]
