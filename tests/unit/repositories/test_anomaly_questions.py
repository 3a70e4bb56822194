"""Tests for the anomaly question store."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from extracts.repositories.anomaly_questions import (
    AnomalyQuestionRepository,
    InMemoryAnswerStore,
    normalize_question,
)


def make_pool(mock_conn):
    mock_pool = MagicMock()
    mock_pool.acquire.return_value.__aenter__.return_value = mock_conn
    return mock_pool


def question_row(**overrides):
    row = {
        "id": 3,
        "question": "Кличка питомца?",
        "normalized_question": "кличка питомца",
        "answer": None,
        "subject": None,
        "created_at": datetime.now(timezone.utc),
        "answered_at": None,
    }
    row.update(overrides)
    return row


class TestNormalizeQuestion:
    @pytest.mark.parametrize(
        "raw",
        ["Кличка питомца?", "  кличка   питомца  ", "КЛИЧКА ПИТОМЦА ?!", "Кличка\nпитомца:"],
    )
    def test_variants_share_a_key(self, raw):
        assert normalize_question(raw) == "кличка питомца"


class TestAnomalyQuestionRepository:
    @pytest.mark.asyncio
    async def test_find_answer_hit(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow.return_value = {"answer": "Барсик"}
        repo = AnomalyQuestionRepository(make_pool(mock_conn))

        assert await repo.find_answer("Кличка питомца?", "user1") == "Барсик"
        query, normalized, subject = mock_conn.fetchrow.call_args.args
        assert "subject NULLS LAST" in query
        assert normalized == "кличка питомца"
        assert subject == "user1"
        mock_conn.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_find_answer_miss_records_question(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow.return_value = None
        repo = AnomalyQuestionRepository(make_pool(mock_conn))

        assert await repo.find_answer("Кличка питомца?", "user1") is None
        query, question, normalized, subject = mock_conn.execute.call_args.args
        assert "ON CONFLICT" in query
        assert question == "Кличка питомца?"
        assert normalized == "кличка питомца"
        assert subject == "user1"

    @pytest.mark.asyncio
    async def test_set_answer(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow.return_value = question_row(answer="Барсик")
        repo = AnomalyQuestionRepository(make_pool(mock_conn))

        answered = await repo.set_answer(3, "Барсик")

        assert answered.answer == "Барсик"

    @pytest.mark.asyncio
    async def test_set_answer_unknown_id(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow.return_value = None
        repo = AnomalyQuestionRepository(make_pool(mock_conn))

        assert await repo.set_answer(404, "x") is None

    @pytest.mark.asyncio
    async def test_list_unanswered(self):
        mock_conn = AsyncMock()
        mock_conn.fetch.return_value = [question_row(), question_row(id=4)]
        repo = AnomalyQuestionRepository(make_pool(mock_conn))

        questions = await repo.list_unanswered(limit=10)

        assert [q.id for q in questions] == [3, 4]


class TestInMemoryAnswerStore:
    @pytest.mark.asyncio
    async def test_lookup_uses_normalized_key(self):
        store = InMemoryAnswerStore({"Кличка питомца?": "Барсик"})
        assert await store.find_answer("кличка  питомца", "user1") == "Барсик"
        assert store.unanswered == []

    @pytest.mark.asyncio
    async def test_miss_is_recorded(self):
        store = InMemoryAnswerStore()
        assert await store.find_answer("Город рождения?", "user1") is None
        assert store.unanswered == [("Город рождения?", "user1")]
