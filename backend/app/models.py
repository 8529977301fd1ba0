from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class Phase(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    LOCKED = "locked"
    REVEALED = "revealed"


class Role(str, Enum):
    ADMIN = "admin"
    SCREEN = "screen"
    PLAYER = "player"


class Question(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    accepted_answers: Tuple[str, ...]  # already normalized
    image_ref: Optional[str] = None
    points: int = 10


class AnswerRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_id: str
    submitted_text: str
    normalized_text: str
    submitted_at: float  # monotonic seconds
    correct: bool
    points_awarded: int
    correct_rank: Optional[int] = None


class Player(BaseModel):
    id: str
    display_name: str
    join_order: int
    score: int = 0
    answers: Dict[str, AnswerRecord] = Field(default_factory=dict)
    kicked: bool = False
    is_alias: bool = False


# States: idle -> active -> locked -> revealed -> active ... -> idle (complete)
class Session(BaseModel):
    id: str
    questions: List[Question] = Field(default_factory=list)
    current_index: int = -1
    next_index: int = 0
    phase: Phase = Phase.IDLE
    players: Dict[str, Player] = Field(default_factory=dict)
    completed: bool = False
    round: int = 0
    activated_at: Optional[float] = None
    deadline_ts: Optional[float] = None
    version: int = 0
    alias_counter: int = 1
    created_at: datetime = Field(default_factory=datetime.utcnow)


class QuestionView(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    image_ref: Optional[str] = None
    points: int
    accepted_answers: Optional[Tuple[str, ...]] = None


class ScoreEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    player_id: str
    display_name: str
    score: int
    rank: int
    join_order: int


class ResultEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    player_id: str
    display_name: str
    submitted_text: str
    correct: bool
    points_awarded: int
    correct_rank: Optional[int] = None


class PlayerView(BaseModel):
    model_config = ConfigDict(frozen=True)

    player_id: str
    display_name: str
    score: int
    rank: int
    answered: bool
    correct: Optional[bool] = None
    points_awarded: Optional[int] = None


class SessionSnapshot(BaseModel):
    """Point-in-time copy of the session; never references live state."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    version: int
    phase: Phase
    current_index: int
    total_questions: int
    question: Optional[QuestionView] = None
    deadline_ts: Optional[float] = None
    submissions: int = 0
    scoreboard: Tuple[ScoreEntry, ...] = ()
    results: Optional[Tuple[ResultEntry, ...]] = None
    completed: bool = False
    created_at: datetime
    me: Optional[PlayerView] = None

    def for_role(self, role: Role, player_id: Optional[str] = None) -> "SessionSnapshot":
        """Return the view a given role is allowed to see.

        Before the reveal, screens and players get no answer key, no
        per-player results, and a scoreboard without the current question's
        points (a jump in score would give the answer away).
        """
        if role == Role.ADMIN:
            return self

        revealed = self.phase == Phase.REVEALED
        results = self.results or ()
        scoreboard = self.scoreboard
        if not revealed and results:
            pending = {r.player_id: r.points_awarded for r in results}
            scoreboard = rank_scoreboard(
                [
                    entry.model_copy(update={"score": entry.score - pending.get(entry.player_id, 0)})
                    for entry in scoreboard
                ]
            )

        question = self.question
        if question is not None and not revealed:
            question = question.model_copy(update={"accepted_answers": None})

        me = None
        if role == Role.PLAYER and player_id is not None:
            me = _player_view(player_id, scoreboard, results, revealed)

        return self.model_copy(
            update={
                "question": question,
                "scoreboard": scoreboard,
                "results": self.results if revealed else None,
                "me": me,
            }
        )


class StateEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    seq: int
    type: str
    phase: Phase
    snapshot: Optional[SessionSnapshot] = None
    submissions: Optional[int] = None

    def for_role(self, role: Role, player_id: Optional[str] = None) -> "StateEvent":
        if role == Role.ADMIN or self.snapshot is None:
            return self
        if self.type == "answer_received":
            # Only the count leaves the admin channel while answers are open.
            return self.model_copy(update={"snapshot": None})
        return self.model_copy(update={"snapshot": self.snapshot.for_role(role, player_id)})


def rank_scoreboard(entries: List[ScoreEntry]) -> Tuple[ScoreEntry, ...]:
    ordered = sorted(entries, key=lambda e: (-e.score, e.join_order))
    ranked: List[ScoreEntry] = []
    for idx, entry in enumerate(ordered):
        if ranked and ranked[-1].score == entry.score:
            rank = ranked[-1].rank
        else:
            rank = idx + 1
        ranked.append(entry.model_copy(update={"rank": rank}))
    return tuple(ranked)


def _player_view(
    player_id: str,
    scoreboard: Tuple[ScoreEntry, ...],
    results: Tuple[ResultEntry, ...],
    revealed: bool,
) -> Optional[PlayerView]:
    entry = next((e for e in scoreboard if e.player_id == player_id), None)
    if entry is None:
        return None
    result = next((r for r in results if r.player_id == player_id), None)
    return PlayerView(
        player_id=entry.player_id,
        display_name=entry.display_name,
        score=entry.score,
        rank=entry.rank,
        answered=result is not None,
        correct=result.correct if (result is not None and revealed) else None,
        points_awarded=result.points_awarded if (result is not None and revealed) else None,
    )
