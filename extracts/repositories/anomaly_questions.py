"""Answer store for portal anomaly (verification) questions."""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog

from extracts.core.resilience import with_db_retry

logger = structlog.get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")
_TRAILING_PUNCT = re.compile(r"[\s?.!:]+$")


def normalize_question(question: str) -> str:
    """Lookup key: lower-cased, whitespace collapsed, trailing punctuation dropped."""
    text = _WHITESPACE.sub(" ", question.strip().lower())
    return _TRAILING_PUNCT.sub("", text)


@dataclass
class AnomalyQuestion:
    id: int
    question: str
    normalized_question: str
    answer: Optional[str] = None
    subject: Optional[str] = None
    created_at: Optional[datetime] = None
    answered_at: Optional[datetime] = None


class AnomalyQuestionRepository:
    """Repository for anomaly_questions rows.

    An answer with subject NULL applies to every operator; a subject-specific
    answer wins over it.
    """

    def __init__(self, pool):
        self._pool = pool

    def _row_to_question(self, row) -> AnomalyQuestion:
        return AnomalyQuestion(
            id=row["id"],
            question=row["question"],
            normalized_question=row["normalized_question"],
            answer=row["answer"],
            subject=row["subject"],
            created_at=row["created_at"],
            answered_at=row["answered_at"],
        )

    async def find_answer(self, question: str, subject: str) -> Optional[str]:
        """Answer for ``question`` as asked of ``subject``, or None.

        A miss records the question unanswered so an operator can fill it in.
        """
        normalized = normalize_question(question)
        query = """
            SELECT answer FROM anomaly_questions
            WHERE normalized_question = $1
              AND (subject = $2 OR subject IS NULL)
              AND answer IS NOT NULL
            ORDER BY subject NULLS LAST
            LIMIT 1
        """
        row = await with_db_retry(
            self._pool, lambda conn: conn.fetchrow(query, normalized, subject)
        )
        if row:
            return row["answer"]

        await self._record_unanswered(question, normalized, subject)
        return None

    async def _record_unanswered(self, question: str, normalized: str, subject: str) -> None:
        query = """
            INSERT INTO anomaly_questions (question, normalized_question, subject)
            VALUES ($1, $2, $3)
            ON CONFLICT (normalized_question, subject) DO NOTHING
        """
        await with_db_retry(
            self._pool, lambda conn: conn.execute(query, question, normalized, subject)
        )
        logger.warning("anomaly_question_recorded", subject=subject, question=question)

    async def list_unanswered(self, limit: int = 100) -> list[AnomalyQuestion]:
        query = """
            SELECT * FROM anomaly_questions
            WHERE answer IS NULL
            ORDER BY created_at DESC
            LIMIT $1
        """
        rows = await with_db_retry(self._pool, lambda conn: conn.fetch(query, limit))
        return [self._row_to_question(row) for row in rows]

    async def set_answer(self, question_id: int, answer: str) -> Optional[AnomalyQuestion]:
        """Answer a recorded question. Returns None if the id does not exist."""
        query = """
            UPDATE anomaly_questions
            SET answer = $2, answered_at = now()
            WHERE id = $1
            RETURNING *
        """
        row = await with_db_retry(
            self._pool, lambda conn: conn.fetchrow(query, question_id, answer)
        )
        if not row:
            return None
        logger.info("anomaly_question_answered", question_id=question_id)
        return self._row_to_question(row)

    async def create(
        self, question: str, answer: str, subject: Optional[str] = None
    ) -> AnomalyQuestion:
        """Store a question with its answer, replacing an existing answer."""
        query = """
            INSERT INTO anomaly_questions
                (question, normalized_question, answer, subject, answered_at)
            VALUES ($1, $2, $3, $4, now())
            ON CONFLICT (normalized_question, subject) DO UPDATE SET
                answer = EXCLUDED.answer,
                answered_at = now()
            RETURNING *
        """
        normalized = normalize_question(question)
        row = await with_db_retry(
            self._pool,
            lambda conn: conn.fetchrow(query, question, normalized, answer, subject),
        )
        return self._row_to_question(row)


class InMemoryAnswerStore:
    """Answer store for single-process runs and tests."""

    def __init__(self, answers: Optional[dict[str, str]] = None):
        self._answers = {normalize_question(q): a for q, a in (answers or {}).items()}
        self.unanswered: list[tuple[str, str]] = []

    def add(self, question: str, answer: str) -> None:
        self._answers[normalize_question(question)] = answer

    async def find_answer(self, question: str, subject: str) -> Optional[str]:
        answer = self._answers.get(normalize_question(question))
        if answer is None:
            self.unanswered.append((question, subject))
        return answer
