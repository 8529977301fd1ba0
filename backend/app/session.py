"""In-memory state of one quiz session.

``SessionStore`` is plain data plus invariants: it does no I/O and never
awaits. Every change goes through :meth:`SessionStore.apply`, and each
command validates completely before touching state, so a failed command
leaves the session exactly as it was.
"""
from __future__ import annotations

import uuid
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from .errors import (
    DuplicateSubmission,
    InvalidName,
    InvalidQuestion,
    InvalidTransition,
    NameTaken,
    NoMoreQuestions,
    PhaseNotActive,
    PlayerKicked,
    UnknownPlayer,
    UnknownQuestion,
)
from .models import (
    AnswerRecord,
    Phase,
    Player,
    Question,
    QuestionView,
    ResultEntry,
    ScoreEntry,
    Session,
    SessionSnapshot,
    StateEvent,
    rank_scoreboard,
)
from .scoring import ScoringPolicy, score
from .utils import (
    clean_display_name,
    is_alias_name,
    is_valid_display_name,
    normalize_answer,
)


class Command(BaseModel):
    model_config = ConfigDict(frozen=True)


class StartNext(Command):
    now: float
    deadline_ts: Optional[float] = None


class Lock(Command):
    round: Optional[int] = None  # set by the lock timer


class Reveal(Command):
    pass


class Reset(Command):
    pass


class Join(Command):
    display_name: str


class SubmitAnswer(Command):
    player_id: str
    question_id: str
    text: str
    submitted_at: float
    display_name: Optional[str] = None


class AddQuestion(Command):
    question: Question


class ReplaceQuestion(Command):
    question: Question


class RemoveQuestion(Command):
    question_id: str


class ReorderQuestions(Command):
    question_ids: Tuple[str, ...]


class KickPlayer(Command):
    player_id: str


class AliasPlayer(Command):
    player_id: str


class Outcome(NamedTuple):
    snapshot: SessionSnapshot
    event: StateEvent
    value: Any = None


class SessionStore:
    def __init__(self, session_id: str, policy: ScoringPolicy, questions: List[Question] | None = None):
        self._session = Session(id=session_id, questions=list(questions or []))
        self._policy = policy
        self._snapshot: Optional[SessionSnapshot] = None
        self._handlers: Dict[type, Callable[[Any], Outcome]] = {
            StartNext: self._start_next,
            Lock: self._lock,
            Reveal: self._reveal,
            Reset: self._reset,
            Join: self._join,
            SubmitAnswer: self._submit_answer,
            AddQuestion: self._add_question,
            ReplaceQuestion: self._replace_question,
            RemoveQuestion: self._remove_question,
            ReorderQuestions: self._reorder_questions,
            KickPlayer: self._kick_player,
            AliasPlayer: self._alias_player,
        }

    @property
    def session_id(self) -> str:
        return self._session.id

    @property
    def phase(self) -> Phase:
        return self._session.phase

    @property
    def current_index(self) -> int:
        return self._session.current_index

    @property
    def round(self) -> int:
        return self._session.round

    @property
    def policy(self) -> ScoringPolicy:
        return self._policy

    @property
    def questions(self) -> Tuple[Question, ...]:
        return tuple(self._session.questions)

    def player(self, player_id: str) -> Optional[Player]:
        p = self._session.players.get(player_id)
        return p.model_copy(deep=True) if p else None

    def apply(self, command: Command) -> Outcome:
        handler = self._handlers.get(type(command))
        if handler is None:
            raise TypeError(f"Unsupported command: {type(command).__name__}")
        return handler(command)

    def snapshot(self) -> SessionSnapshot:
        if self._snapshot is None or self._snapshot.version != self._session.version:
            self._snapshot = self._build_snapshot()
        return self._snapshot

    def export_results(self) -> Dict[str, Any]:
        """Plain-dict summary of a play-through, for durable storage."""
        s = self._session
        snap = self.snapshot()
        return {
            "session_id": s.id,
            "version": s.version,
            "created_at": s.created_at.isoformat(),
            "scoreboard": [entry.model_dump() for entry in snap.scoreboard],
            "questions": [
                {
                    "id": q.id,
                    "text": q.text,
                    "answers": {
                        p.id: p.answers[q.id].model_dump()
                        for p in s.players.values()
                        if q.id in p.answers
                    },
                }
                for q in s.questions
            ],
        }

    # lifecycle

    def _start_next(self, cmd: StartNext) -> Outcome:
        s = self._session
        if s.phase not in (Phase.IDLE, Phase.REVEALED):
            raise InvalidTransition(f"Cannot start the next question while {s.phase.value}")

        if s.next_index >= len(s.questions):
            if s.phase == Phase.IDLE:
                raise NoMoreQuestions("No questions left to play")
            s.phase = Phase.IDLE
            s.current_index = -1
            s.completed = True
            s.activated_at = None
            s.deadline_ts = None
            return self._commit("session_complete")

        s.current_index = s.next_index
        s.next_index += 1
        s.phase = Phase.ACTIVE
        s.round += 1
        s.completed = False
        s.activated_at = cmd.now
        s.deadline_ts = cmd.deadline_ts
        return self._commit("question_started")

    def _lock(self, cmd: Lock) -> Outcome:
        s = self._session
        if s.phase != Phase.ACTIVE:
            raise InvalidTransition(f"Cannot lock while {s.phase.value}")
        if cmd.round is not None and cmd.round != s.round:
            raise InvalidTransition("Lock timer belongs to an earlier question")
        s.phase = Phase.LOCKED
        s.deadline_ts = None
        return self._commit("question_locked")

    def _reveal(self, cmd: Reveal) -> Outcome:
        s = self._session
        if s.phase != Phase.LOCKED:
            raise InvalidTransition(f"Cannot reveal while {s.phase.value}")
        s.phase = Phase.REVEALED
        return self._commit("answers_revealed")

    def _reset(self, cmd: Reset) -> Outcome:
        s = self._session
        s.phase = Phase.IDLE
        s.current_index = -1
        s.next_index = 0
        s.players = {}
        s.completed = False
        s.round += 1
        s.activated_at = None
        s.deadline_ts = None
        s.alias_counter = 1
        return self._commit("session_reset")

    # players

    def _join(self, cmd: Join) -> Outcome:
        player = self._new_player(uuid.uuid4().hex[:12], cmd.display_name)
        self._session.players[player.id] = player
        return self._commit("player_joined", player.model_copy(deep=True))

    def _submit_answer(self, cmd: SubmitAnswer) -> Outcome:
        s = self._session
        question = self._current_question()
        if s.phase != Phase.ACTIVE or question is None or question.id != cmd.question_id:
            raise PhaseNotActive("This question is not accepting answers")

        player = s.players.get(cmd.player_id)
        is_new = player is None
        if player is None:
            if not cmd.display_name:
                raise UnknownPlayer(f"Unknown player {cmd.player_id!r}")
            player = self._new_player(cmd.player_id, cmd.display_name)
        if player.kicked:
            raise PlayerKicked("Player was removed from the session")
        if question.id in player.answers:
            raise DuplicateSubmission("An answer for this question was already accepted")

        normalized = normalize_answer(cmd.text)
        correct_rank = 1 + sum(
            1
            for p in s.players.values()
            if question.id in p.answers and p.answers[question.id].correct
        )
        correct, points = score(
            question,
            normalized,
            cmd.submitted_at,
            s.activated_at if s.activated_at is not None else cmd.submitted_at,
            self._policy,
            correct_rank=correct_rank,
        )
        record = AnswerRecord(
            question_id=question.id,
            submitted_text=cmd.text,
            normalized_text=normalized,
            submitted_at=cmd.submitted_at,
            correct=correct,
            points_awarded=points,
            correct_rank=correct_rank if correct else None,
        )

        if is_new:
            s.players[player.id] = player
        player.answers[question.id] = record
        player.score += points
        return self._commit("answer_received", record)

    def _kick_player(self, cmd: KickPlayer) -> Outcome:
        player = self._require_player(cmd.player_id)
        player.kicked = True
        return self._commit("player_kicked", player.model_copy(deep=True))

    def _alias_player(self, cmd: AliasPlayer) -> Outcome:
        s = self._session
        player = self._require_player(cmd.player_id)
        n = s.alias_counter
        taken = {normalize_answer(p.display_name) for p in s.players.values() if p.id != player.id}
        while normalize_answer(f"Player {n}") in taken:
            n += 1
        player.display_name = f"Player {n}"
        player.is_alias = True
        s.alias_counter = n + 1
        return self._commit("player_renamed", player.model_copy(deep=True))

    # question set

    def _add_question(self, cmd: AddQuestion) -> Outcome:
        s = self._session
        if self._index_of(cmd.question.id) is not None:
            raise InvalidQuestion(f"Question {cmd.question.id!r} already exists")
        s.questions.append(cmd.question)
        return self._commit("questions_changed", cmd.question)

    def _replace_question(self, cmd: ReplaceQuestion) -> Outcome:
        idx = self._require_editable(cmd.question.id)
        self._session.questions[idx] = cmd.question
        return self._commit("questions_changed", cmd.question)

    def _remove_question(self, cmd: RemoveQuestion) -> Outcome:
        s = self._session
        idx = self._require_editable(cmd.question_id)
        removed = s.questions.pop(idx)
        if idx < s.next_index:
            s.next_index -= 1
        return self._commit("questions_changed", removed)

    def _reorder_questions(self, cmd: ReorderQuestions) -> Outcome:
        s = self._session
        if s.phase != Phase.IDLE:
            raise InvalidTransition("Questions can only be reordered while idle")
        by_id = {q.id: q for q in s.questions}
        if sorted(cmd.question_ids) != sorted(by_id):
            raise InvalidQuestion("Order must list every question exactly once")
        s.questions = [by_id[qid] for qid in cmd.question_ids]
        return self._commit("questions_changed")

    # helpers

    def _commit(self, event_type: str, value: Any = None) -> Outcome:
        self._session.version += 1
        snap = self.snapshot()
        event = StateEvent(
            seq=snap.version,
            type=event_type,
            phase=snap.phase,
            snapshot=snap,
            submissions=snap.submissions,
        )
        return Outcome(snap, event, value)

    def _current_question(self) -> Optional[Question]:
        s = self._session
        if 0 <= s.current_index < len(s.questions):
            return s.questions[s.current_index]
        return None

    def _index_of(self, question_id: str) -> Optional[int]:
        for idx, q in enumerate(self._session.questions):
            if q.id == question_id:
                return idx
        return None

    def _require_editable(self, question_id: str) -> int:
        s = self._session
        idx = self._index_of(question_id)
        if idx is None:
            raise UnknownQuestion(f"Unknown question {question_id!r}")
        if s.phase != Phase.IDLE and idx < s.next_index:
            raise InvalidTransition("Question was already played in this session")
        return idx

    def _require_player(self, player_id: str) -> Player:
        player = self._session.players.get(player_id)
        if player is None:
            raise UnknownPlayer(f"Unknown player {player_id!r}")
        return player

    def _new_player(self, player_id: str, raw_name: str) -> Player:
        s = self._session
        name = clean_display_name(raw_name)
        if not is_valid_display_name(name):
            raise InvalidName("Names are 1-30 letters, digits, spaces, apostrophes or dashes")
        if is_alias_name(name):
            raise InvalidName("'Player N' names are reserved")
        key = normalize_answer(name)
        if any(normalize_answer(p.display_name) == key for p in s.players.values()):
            raise NameTaken(f"The name {name!r} is already taken")
        if player_id in s.players:
            raise NameTaken(f"Player id {player_id!r} is already registered")
        return Player(id=player_id, display_name=name, join_order=len(s.players))

    def _build_snapshot(self) -> SessionSnapshot:
        s = self._session
        question = self._current_question()
        active = [p for p in s.players.values() if not p.kicked]

        scoreboard = rank_scoreboard(
            [
                ScoreEntry(
                    player_id=p.id,
                    display_name=p.display_name,
                    score=p.score,
                    rank=0,
                    join_order=p.join_order,
                )
                for p in active
            ]
        )

        results = None
        view = None
        if question is not None:
            answered = sorted(
                (p for p in active if question.id in p.answers),
                key=lambda p: p.answers[question.id].submitted_at,
            )
            results = tuple(
                ResultEntry(
                    player_id=p.id,
                    display_name=p.display_name,
                    submitted_text=p.answers[question.id].submitted_text,
                    correct=p.answers[question.id].correct,
                    points_awarded=p.answers[question.id].points_awarded,
                    correct_rank=p.answers[question.id].correct_rank,
                )
                for p in answered
            )
            view = QuestionView(
                id=question.id,
                text=question.text,
                image_ref=question.image_ref,
                points=question.points,
                accepted_answers=tuple(sorted(question.accepted_answers)),
            )

        return SessionSnapshot(
            session_id=s.id,
            version=s.version,
            phase=s.phase,
            current_index=s.current_index,
            total_questions=len(s.questions),
            question=view,
            deadline_ts=s.deadline_ts,
            submissions=len(results) if results else 0,
            scoreboard=scoreboard,
            results=results,
            completed=s.completed,
            created_at=s.created_at,
        )
