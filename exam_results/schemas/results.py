"""
Pydantic Schemas for the results API

Request/response models for finalization, correction, ranking and lookups.
"""
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field


# ============================================================================
# Finalization
# ============================================================================

class WrittenScoreDetail(BaseModel):
    response_id: int
    question_id: int
    score: float
    language: Optional[str] = None
    evaluator_type: str
    feedback: Optional[str] = None
    extracted_text: Optional[str] = None


class FinalizeResponse(BaseModel):
    """Score breakdown returned by finalize; pending answers count as 0."""
    success: bool = True
    attempt_id: int
    student_id: int
    exam_session_id: int
    mcq_score: float
    written_score: float
    total_weighted_score: float
    total_possible_marks: float
    percentage_score: float
    qualification_threshold: float
    threshold_source: str
    is_qualified: bool
    status: str
    total_questions: int
    correct_answers: int
    languages: Dict[str, float] = {}
    written_breakdown: List[WrittenScoreDetail] = []
    pending_response_ids: List[int] = []


class EvaluationPassResponse(BaseModel):
    success: bool = True
    attempt_id: int
    evaluated_response_ids: List[int]
    pending_response_ids: List[int]
    written_score: float
    languages: Dict[str, float] = {}


# ============================================================================
# Correction
# ============================================================================

class WrittenScoreCorrectionRequest(BaseModel):
    """Human override of one written evaluation."""
    response_id: int = Field(..., description="Written response to correct")
    new_score: float = Field(..., description="0..question marks")
    attempt_id: int = Field(..., description="Attempt the response belongs to")


class WrittenScoreCorrectionResponse(BaseModel):
    success: bool = True
    message: str = "Score updated successfully"
    response_id: int
    attempt_id: int
    previous_score: Optional[float] = None
    new_score: float
    mcq_score: float
    written_score: float
    total_weighted_score: float
    percentage_score: float
    is_qualified: bool
    status: str


# ============================================================================
# Ranking
# ============================================================================

class RankedCandidate(BaseModel):
    student_id: int
    total_weighted_score: float
    group: str
    overall_rank: int
    class_rank: int
    is_qualified: bool
    status: Optional[str] = None


class RankingResponse(BaseModel):
    success: bool = True
    message: str
    exam_session_id: int
    total_ranked: int
    rankings: List[RankedCandidate] = []


# ============================================================================
# Lookups
# ============================================================================

class AttemptLookupResponse(BaseModel):
    attempt_id: int
    student_id: int
    exam_session_id: int
    status: str
    submitted_at: Optional[str] = None


class OverallScoreResponse(BaseModel):
    id: int
    student_id: int
    exam_session_id: int
    mcq_score: float
    written_score: float
    total_weighted_score: float
    total_possible_marks: float
    percentage_score: float
    qualification_threshold: Optional[float] = None
    is_qualified: bool
    status: str
    grade_level: Optional[str] = None
    overall_rank: Optional[int] = None
    class_rank: Optional[int] = None
    score_breakdown: Optional[Dict[str, Any]] = None
    calculated_at: Optional[str] = None
    ranked_at: Optional[str] = None
