from __future__ import annotations

from typing import List, Optional


class QuizError(Exception):
    """Base class for every failure reported to an admin or player caller."""

    code = "quiz_error"
    status_code = 400

    def __init__(self, detail: Optional[str] = None, warnings: Optional[List[str]] = None):
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.warnings = list(warnings or [])


class InvalidTransition(QuizError):
    code = "invalid_transition"
    status_code = 409


class NoMoreQuestions(QuizError):
    """End-of-session signal; the session itself is healthy."""

    code = "no_more_questions"
    status_code = 409


class PhaseNotActive(QuizError):
    code = "phase_not_active"
    status_code = 409


class DuplicateSubmission(QuizError):
    code = "duplicate_submission"
    status_code = 409


class UnknownPlayer(QuizError):
    code = "unknown_player"
    status_code = 404


class PlayerKicked(UnknownPlayer):
    code = "player_kicked"
    status_code = 403


class InvalidName(QuizError):
    code = "invalid_name"
    status_code = 422


class NameTaken(QuizError):
    code = "name_taken"
    status_code = 409


class InvalidQuestion(QuizError):
    code = "invalid_question"
    status_code = 422


class UnknownQuestion(QuizError):
    code = "unknown_question"
    status_code = 404


class PersistenceUnavailable(QuizError):
    code = "persistence_unavailable"
    status_code = 503
