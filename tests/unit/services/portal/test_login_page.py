"""Tests for login-page text helpers."""

from extracts.services.portal import selectors
from extracts.services.portal.login_page import marker_matches, parse_anomaly_question


class TestMarkerMatches:
    def test_exact_case_insensitive(self):
        assert marker_matches("  введите код с картинки ", selectors.CAPTCHA_MARKER)

    def test_partial_text_does_not_match(self):
        assert not marker_matches("Введите код", selectors.CAPTCHA_MARKER)

    def test_missing_text(self):
        assert not marker_matches(None, selectors.CAPTCHA_MARKER)


class TestParseAnomalyQuestion:
    def test_last_line_is_question(self):
        text = f"{selectors.ANOMALY_MARKER}\n\nОтветьте на контрольный вопрос\nКличка питомца?\n"
        assert parse_anomaly_question(text) == "Кличка питомца?"

    def test_other_prompt_is_ignored(self):
        assert parse_anomaly_question("Введите код из SMS") is None

    def test_empty(self):
        assert parse_anomaly_question("") is None
