"""Answer-store administration for portal anomaly questions."""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from extracts.deps.security import require_admin_token
from extracts.errors import RepositoryUnavailable
from extracts.repositories.anomaly_questions import (
    AnomalyQuestion,
    AnomalyQuestionRepository,
)
from extracts.schemas import (
    AnomalyAnswerRequest,
    AnomalyQuestionCreateRequest,
    AnomalyQuestionResponse,
)

router = APIRouter(prefix="/anomaly-questions", tags=["anomaly-questions"])
logger = structlog.get_logger(__name__)

_db_pool = None


def set_db_pool(pool):
    """Set the database pool for this router."""
    global _db_pool
    _db_pool = pool


def _get_repository() -> AnomalyQuestionRepository:
    if _db_pool is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database connection not available",
        )
    return AnomalyQuestionRepository(_db_pool)


def _to_response(question: AnomalyQuestion) -> AnomalyQuestionResponse:
    return AnomalyQuestionResponse(
        id=question.id,
        question=question.question,
        answer=question.answer,
        subject=question.subject,
        created_at=question.created_at,
        answered_at=question.answered_at,
    )


def _unavailable(e: RepositoryUnavailable) -> HTTPException:
    logger.error("anomaly_questions_db_unavailable", error=str(e))
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@router.get("/unanswered", response_model=list[AnomalyQuestionResponse])
async def list_unanswered(
    limit: int = Query(100, ge=1, le=500),
    repo: AnomalyQuestionRepository = Depends(_get_repository),
    _: bool = Depends(require_admin_token),
) -> list[AnomalyQuestionResponse]:
    """Questions the worker met and could not answer."""
    try:
        questions = await repo.list_unanswered(limit=limit)
    except RepositoryUnavailable as e:
        raise _unavailable(e)
    return [_to_response(q) for q in questions]


@router.put("/{question_id}/answer", response_model=AnomalyQuestionResponse)
async def answer_question(
    question_id: int,
    request: AnomalyAnswerRequest,
    repo: AnomalyQuestionRepository = Depends(_get_repository),
    _: bool = Depends(require_admin_token),
) -> AnomalyQuestionResponse:
    try:
        question: Optional[AnomalyQuestion] = await repo.set_answer(question_id, request.answer)
    except RepositoryUnavailable as e:
        raise _unavailable(e)
    if question is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Question {question_id} not found",
        )
    return _to_response(question)


@router.post("", response_model=AnomalyQuestionResponse, status_code=status.HTTP_201_CREATED)
async def create_question(
    request: AnomalyQuestionCreateRequest,
    repo: AnomalyQuestionRepository = Depends(_get_repository),
    _: bool = Depends(require_admin_token),
) -> AnomalyQuestionResponse:
    """Store an answer ahead of time."""
    try:
        question = await repo.create(request.question, request.answer, request.subject)
    except RepositoryUnavailable as e:
        raise _unavailable(e)
    logger.info("anomaly_question_created", question_id=question.id)
    return _to_response(question)
