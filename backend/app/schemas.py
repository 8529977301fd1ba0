from typing import List, Optional

from pydantic import BaseModel, Field

from .models import Player, Question, Role, ScoreEntry, SessionSnapshot


class QuestionIn(BaseModel):
    text: str = Field(min_length=1, max_length=500)
    accepted_answers: List[str] = Field(min_length=1)
    image_ref: Optional[str] = None
    points: Optional[int] = Field(default=None, gt=0)


class CreateQuestionIn(QuestionIn):
    id: Optional[str] = None


class ReorderQuestionsIn(BaseModel):
    question_ids: List[str]


class JoinIn(BaseModel):
    display_name: str = Field(max_length=60)


class AnswerIn(BaseModel):
    player_id: str
    question_id: str
    text: str = Field(max_length=200)
    display_name: Optional[str] = None


class ConnectIn(BaseModel):
    role: Role
    player_id: Optional[str] = None


class CommandOut(BaseModel):
    ok: bool = True
    warnings: List[str] = Field(default_factory=list)
    session: SessionSnapshot


class QuestionOut(CommandOut):
    question: Question


class PlayerOut(BaseModel):
    player: Player


class AnswerOut(BaseModel):
    # correctness stays hidden until the reveal
    accepted: bool = True
    question_id: str
    submitted_text: str


class LeaderboardOut(BaseModel):
    leaderboard: List[ScoreEntry]


class ConnectOut(BaseModel):
    handle: str


class ErrorOut(BaseModel):
    ok: bool = False
    error: str
    detail: str
    warnings: List[str] = Field(default_factory=list)
