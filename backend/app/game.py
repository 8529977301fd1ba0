from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Callable, Iterable, List, NamedTuple, Optional

from .db import DocumentStore, InMemoryDocumentStore, Settings
from .errors import NoMoreQuestions, PersistenceUnavailable
from .events import Broadcaster, Subscription
from .models import AnswerRecord, Phase, Player, Role, ScoreEntry, SessionSnapshot
from .questions import (
    RESULTS,
    build_question,
    delete_question,
    load_questions,
    save_questions,
)
from .scoring import ScoringPolicy
from .session import (
    AddQuestion,
    AliasPlayer,
    Command,
    Join,
    KickPlayer,
    Lock,
    Outcome,
    RemoveQuestion,
    ReorderQuestions,
    ReplaceQuestion,
    Reset,
    Reveal,
    SessionStore,
    StartNext,
    SubmitAnswer,
)
from .utils import monotonic_ts, now_ts

logger = logging.getLogger(__name__)


class CommandResult(NamedTuple):
    snapshot: SessionSnapshot
    warnings: List[str]
    value: Any = None


class GameController:
    """Single writer for one quiz session.

    Every mutation runs under one ``asyncio.Lock``; asyncio wakes waiters in
    FIFO order, so commands and submissions apply in arrival order. Events are
    published while the lock is held, which keeps them in ``seq`` order.
    Persistence happens after the lock is released.
    """

    def __init__(
        self,
        session_id: str = "main",
        *,
        documents: Optional[DocumentStore] = None,
        policy: Optional[ScoringPolicy] = None,
        lock_timeout: float = 20.0,
        default_points: int = 10,
        buffer_size: int = 100,
        clock: Callable[[], float] = monotonic_ts,
        wall_clock: Callable[[], float] = now_ts,
    ):
        self.lock_timeout = lock_timeout
        self.default_points = default_points
        self.documents: DocumentStore = documents if documents is not None else InMemoryDocumentStore()
        self.store = SessionStore(session_id, policy or ScoringPolicy(window=lock_timeout or None))
        self.broadcaster = Broadcaster(buffer_size)
        self._clock = clock
        self._wall_clock = wall_clock
        self._lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, config: Settings, documents: Optional[DocumentStore] = None) -> "GameController":
        policy = ScoringPolicy(
            speed_decay=config.SPEED_DECAY,
            min_ratio=config.MIN_POINTS_RATIO,
            window=config.LOCK_TIMEOUT_SEC or None,
            rank_bonus=config.rank_bonus,
        )
        return cls(
            config.SESSION_ID,
            documents=documents,
            policy=policy,
            lock_timeout=config.LOCK_TIMEOUT_SEC,
            default_points=config.DEFAULT_POINTS,
            buffer_size=config.SUBSCRIBER_BUFFER,
        )

    async def load(self) -> int:
        """Seed the session with the persisted question bank."""
        try:
            questions = await load_questions(self.documents)
        except PersistenceUnavailable as exc:
            logger.warning("Starting with an empty question bank: %s", exc)
            return 0
        async with self._lock:
            for question in questions:
                self.store.apply(AddQuestion(question=question))
        logger.info("Loaded %d questions", len(questions))
        return len(questions)

    async def close(self) -> None:
        timer = self._timer
        self._cancel_timer()
        if timer is not None and timer is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await timer

    # reading

    def snapshot(self, role: Role = Role.ADMIN, player_id: Optional[str] = None) -> SessionSnapshot:
        return self.store.snapshot().for_role(role, player_id)

    def leaderboard(self, limit: Optional[int] = None) -> List[ScoreEntry]:
        board = list(self.snapshot(Role.SCREEN).scoreboard)
        return board[:limit] if limit is not None else board

    def subscribe(self, role: Role, player_id: Optional[str] = None) -> Subscription:
        return self.broadcaster.subscribe(role, self.store.snapshot(), player_id)

    def unsubscribe(self, sub: Subscription) -> None:
        self.broadcaster.unsubscribe(sub)

    # lifecycle

    async def start_next(self) -> CommandResult:
        async with self._lock:
            deadline = self._wall_clock() + self.lock_timeout if self.lock_timeout > 0 else None
            outcome = self.store.apply(StartNext(now=self._clock(), deadline_ts=deadline))
            self._cancel_timer()
            self.broadcaster.publish(outcome.event)
            if outcome.event.type == "question_started":
                self._arm_timer(self.store.round)
            else:
                results = self.store.export_results()

        if outcome.event.type == "session_complete":
            logger.info("Session %s complete", self.store.session_id)
            warnings = await self._persist(self._write_results, results)
            raise NoMoreQuestions("Session complete", warnings=warnings)

        question = outcome.snapshot.question
        logger.info(
            "Question %s started (%d/%d)",
            question.id,
            outcome.snapshot.current_index + 1,
            outcome.snapshot.total_questions,
        )
        return CommandResult(outcome.snapshot, [])

    async def lock(self) -> CommandResult:
        async with self._lock:
            outcome = self.store.apply(Lock())
            self._cancel_timer()
            self.broadcaster.publish(outcome.event)
        return CommandResult(outcome.snapshot, [])

    async def reveal(self) -> CommandResult:
        outcome = await self._run(Reveal())
        return CommandResult(outcome.snapshot, [])

    async def reset(self) -> CommandResult:
        async with self._lock:
            outcome = self.store.apply(Reset())
            self._cancel_timer()
            self.broadcaster.publish(outcome.event)
        logger.info("Session %s reset", self.store.session_id)
        return CommandResult(outcome.snapshot, [])

    # players

    async def join(self, display_name: str) -> Player:
        outcome = await self._run(Join(display_name=display_name))
        logger.info("Player %s joined as %r", outcome.value.id, outcome.value.display_name)
        return outcome.value

    async def submit_answer(
        self,
        player_id: str,
        question_id: str,
        text: str,
        display_name: Optional[str] = None,
    ) -> AnswerRecord:
        arrived_at = self._clock()
        outcome = await self._run(
            SubmitAnswer(
                player_id=player_id,
                question_id=question_id,
                text=text,
                submitted_at=arrived_at,
                display_name=display_name,
            )
        )
        return outcome.value

    async def kick_player(self, player_id: str) -> CommandResult:
        outcome = await self._run(KickPlayer(player_id=player_id))
        logger.info("Player %s kicked", player_id)
        return CommandResult(outcome.snapshot, [], outcome.value)

    async def alias_player(self, player_id: str) -> CommandResult:
        outcome = await self._run(AliasPlayer(player_id=player_id))
        return CommandResult(outcome.snapshot, [], outcome.value)

    # question bank

    async def create_question(
        self,
        text: str,
        accepted_answers: Iterable[str],
        image_ref: Optional[str] = None,
        points: Optional[int] = None,
        question_id: Optional[str] = None,
    ) -> CommandResult:
        question = build_question(
            text,
            accepted_answers,
            image_ref,
            points,
            question_id=question_id,
            default_points=self.default_points,
        )
        outcome = await self._run(AddQuestion(question=question))
        warnings = await self._persist(self._write_questions)
        return CommandResult(outcome.snapshot, warnings, question)

    async def replace_question(
        self,
        question_id: str,
        text: str,
        accepted_answers: Iterable[str],
        image_ref: Optional[str] = None,
        points: Optional[int] = None,
    ) -> CommandResult:
        question = build_question(
            text,
            accepted_answers,
            image_ref,
            points,
            question_id=question_id,
            default_points=self.default_points,
        )
        outcome = await self._run(ReplaceQuestion(question=question))
        warnings = await self._persist(self._write_questions)
        return CommandResult(outcome.snapshot, warnings, question)

    async def delete_question(self, question_id: str) -> CommandResult:
        outcome = await self._run(RemoveQuestion(question_id=question_id))
        warnings = await self._persist(delete_question, self.documents, question_id)
        warnings += await self._persist(self._write_questions)
        return CommandResult(outcome.snapshot, warnings, outcome.value)

    async def reorder_questions(self, question_ids: Iterable[str]) -> CommandResult:
        outcome = await self._run(ReorderQuestions(question_ids=tuple(question_ids)))
        warnings = await self._persist(self._write_questions)
        return CommandResult(outcome.snapshot, warnings)

    # internals

    async def _run(self, command: Command) -> Outcome:
        async with self._lock:
            outcome = self.store.apply(command)
            self.broadcaster.publish(outcome.event)
        return outcome

    def _arm_timer(self, round_no: int) -> None:
        if self.lock_timeout <= 0:
            return
        self._timer = asyncio.create_task(self._lock_when_due(round_no, self.lock_timeout))

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    async def _lock_when_due(self, round_no: int, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._lock:
            if self.store.phase != Phase.ACTIVE or self.store.round != round_no:
                logger.debug("Ignoring stale lock timer for round %d", round_no)
                return
            outcome = self.store.apply(Lock(round=round_no))
            self._timer = None
            self.broadcaster.publish(outcome.event)
        logger.info("Question %d locked by timer", outcome.snapshot.current_index + 1)

    async def _write_questions(self) -> None:
        await save_questions(self.documents, self.store.questions)

    async def _write_results(self, results: dict) -> None:
        doc_id = f"{results['session_id']}-{results['version']}"
        await self.documents.put(RESULTS, doc_id, results)

    async def _persist(self, write, *args) -> List[str]:
        """Run a durable write; a failure becomes a warning, never an error."""
        async with self._persist_lock:
            try:
                await write(*args)
            except PersistenceUnavailable as exc:
                logger.warning("Durability warning: %s", exc.detail)
                return [exc.detail]
        return []
