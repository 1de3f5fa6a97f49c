"""
Adapter for the external written-answer evaluation service.

The service reads uploaded answer images and returns a score. Its internals
are not ours; this module only owns the call contract:

    evaluate(attempt_id, question_id, image_urls, max_marks, language_hint)
        -> EvaluationResult(score, feedback, extracted_text, language)

Every failure (transport error, non-2xx, malformed body, out-of-range score)
is raised as ExternalServiceError so callers can treat it as a per-item,
recoverable failure.
"""
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Protocol

import httpx

from exam_results.config.settings import settings
from exam_results.errors import ExternalServiceError, ErrorCode

logger = logging.getLogger(__name__)


@dataclass
class EvaluationResult:
    """Standardized evaluator response."""
    score: Decimal
    feedback: Optional[str]
    extracted_text: Optional[str]
    language: Optional[str]


class WrittenAnswerEvaluator(Protocol):
    async def evaluate(
        self,
        attempt_id: int,
        question_id: int,
        image_urls: List[str],
        max_marks: Decimal,
        language_hint: str
    ) -> EvaluationResult:
        ...


def parse_evaluation_payload(payload: dict, max_marks: Decimal) -> EvaluationResult:
    """
    Strictly validate an evaluator response body.

    Rules:
    - score must exist and be numeric
    - score range: 0..max_marks (no clamping)
    """
    if not isinstance(payload, dict) or "score" not in payload:
        raise ExternalServiceError(
            "Evaluator response is missing 'score'",
            details={"payload_keys": sorted(payload.keys()) if isinstance(payload, dict) else None}
        )

    try:
        score = Decimal(str(payload["score"]))
    except (InvalidOperation, ValueError):
        raise ExternalServiceError(
            "Evaluator returned a non-numeric score",
            details={"score": str(payload["score"])}
        )

    if not score.is_finite() or score < 0 or score > Decimal(str(max_marks)):
        raise ExternalServiceError(
            "Evaluator score out of range",
            details={"score": str(score), "max_marks": str(max_marks)}
        )

    return EvaluationResult(
        score=score,
        feedback=payload.get("feedback"),
        extracted_text=payload.get("extracted_text") or payload.get("extractedText"),
        language=payload.get("language"),
    )


class HttpEvaluationClient:
    """
    HTTP client for the evaluation service.

    The timeout here is a transport timeout; the orchestrator applies its own
    per-call deadline on top.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url or settings.EVALUATION_SERVICE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.EVALUATION_SERVICE_API_KEY
        self.timeout_seconds = timeout_seconds or settings.EVALUATION_TIMEOUT_SECONDS
        self.transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def evaluate(
        self,
        attempt_id: int,
        question_id: int,
        image_urls: List[str],
        max_marks: Decimal,
        language_hint: str
    ) -> EvaluationResult:
        start_time = time.time()
        request_body = {
            "attempt_id": attempt_id,
            "question_id": question_id,
            "image_urls": list(image_urls),
            "max_marks": float(max_marks),
            "language": language_hint,
        }

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=self.transport
            ) as client:
                response = await client.post("/evaluate", json=request_body, headers=self._headers())
        except httpx.TimeoutException as e:
            raise ExternalServiceError(
                f"Evaluator timed out after {self.timeout_seconds}s",
                code=ErrorCode.EVALUATION_TIMEOUT,
                details={"attempt_id": attempt_id, "question_id": question_id}
            ) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(
                f"Evaluator request failed: {type(e).__name__}",
                details={"attempt_id": attempt_id, "question_id": question_id}
            ) from e

        latency_ms = int((time.time() - start_time) * 1000)

        if response.status_code >= 400:
            raise ExternalServiceError(
                f"Evaluator returned HTTP {response.status_code}",
                details={
                    "attempt_id": attempt_id,
                    "question_id": question_id,
                    "status_code": response.status_code
                }
            )

        try:
            payload = response.json()
        except ValueError:
            raise ExternalServiceError(
                "Evaluator returned invalid JSON",
                details={"attempt_id": attempt_id, "question_id": question_id}
            )

        # Some deployments wrap the result: {"success": true, "evaluation": {...}}
        if isinstance(payload, dict) and isinstance(payload.get("evaluation"), dict):
            payload = payload["evaluation"]

        result = parse_evaluation_payload(payload, max_marks)
        logger.info(
            f"Evaluator scored attempt {attempt_id} question {question_id}",
            extra={"latency_ms": latency_ms, "score": str(result.score)}
        )
        return result


_default_client: Optional[WrittenAnswerEvaluator] = None


def get_evaluation_client() -> WrittenAnswerEvaluator:
    """Process-wide evaluator client."""
    global _default_client
    if _default_client is None:
        _default_client = HttpEvaluationClient()
    return _default_client
