import asyncio
from unittest import IsolatedAsyncioTestCase

from .db import InMemoryDocumentStore
from .errors import DuplicateSubmission, InvalidTransition, NoMoreQuestions, PersistenceUnavailable
from .game import GameController
from .models import Phase, Role
from .questions import QUESTIONS, RESULTS
from .scoring import ScoringPolicy


class _Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class _BrokenStore(InMemoryDocumentStore):
    async def put(self, collection, document_id, fields):
        raise PersistenceUnavailable("database is down")


class GameControllerTestCase(IsolatedAsyncioTestCase):
    lock_timeout = 0.0

    async def asyncSetUp(self):
        self.clock = _Clock()
        self.documents = InMemoryDocumentStore()
        self.controller = GameController(
            "test",
            documents=self.documents,
            policy=ScoringPolicy(window=20),
            lock_timeout=self.lock_timeout,
            clock=self.clock,
        )
        await self.controller.create_question("Capital of France?", ["Paris"], points=10, question_id="q1")
        await self.controller.create_question("Capital of Italy?", ["Rome"], points=10, question_id="q2")

    async def asyncTearDown(self):
        await self.controller.close()


class LifecycleTests(GameControllerTestCase):
    async def test_questions_are_persisted_in_order(self):
        docs = await self.documents.list(QUESTIONS)
        self.assertEqual([(d["_id"], d["position"]) for d in docs], [("q1", 0), ("q2", 1)])

    async def test_illegal_transition_leaves_state_unchanged(self):
        await self.controller.start_next()
        await self.controller.lock()
        before = self.controller.snapshot()
        with self.assertRaises(InvalidTransition):
            await self.controller.lock()
        self.assertEqual(self.controller.snapshot(), before)

    async def test_completion_persists_results_and_signals_end(self):
        alice = await self.controller.join("Alice")
        for qid in ("q1", "q2"):
            await self.controller.start_next()
            await self.controller.submit_answer(alice.id, qid, "rome")
            await self.controller.lock()
            await self.controller.reveal()

        with self.assertRaises(NoMoreQuestions) as ctx:
            await self.controller.start_next()
        self.assertEqual(ctx.exception.warnings, [])
        self.assertEqual(self.controller.snapshot().phase, Phase.IDLE)

        results = await self.documents.list(RESULTS)
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0]["scoreboard"][0]["score"], 10)
        self.assertIn(alice.id, results[0]["questions"][1]["answers"])

    async def test_load_restores_question_bank(self):
        fresh = GameController("other", documents=self.documents, lock_timeout=0)
        self.assertEqual(await fresh.load(), 2)
        self.assertEqual([q.id for q in fresh.store.questions], ["q1", "q2"])

    async def test_deleted_questions_are_not_reloaded(self):
        await self.controller.delete_question("q1")
        fresh = GameController("other", documents=self.documents, lock_timeout=0)
        await fresh.load()
        self.assertEqual([q.id for q in fresh.store.questions], ["q2"])

    async def test_reordered_questions_reload_in_new_order(self):
        await self.controller.reorder_questions(["q2", "q1"])
        fresh = GameController("other", documents=self.documents, lock_timeout=0)
        await fresh.load()
        self.assertEqual([q.id for q in fresh.store.questions], ["q2", "q1"])

    async def test_subscriber_receives_lifecycle_events_in_order(self):
        sub = self.controller.subscribe(Role.SCREEN)
        await self.controller.start_next()
        await self.controller.lock()
        await self.controller.reveal()
        types = [e.type for e in sub.drain()]
        self.assertEqual(types, ["snapshot", "question_started", "question_locked", "answers_revealed"])


class ConcurrentSubmissionTests(GameControllerTestCase):
    async def test_concurrent_duplicates_keep_first_arrival(self):
        alice = await self.controller.join("Alice")
        await self.controller.start_next()

        results = await asyncio.gather(
            *(self.controller.submit_answer(alice.id, "q1", text) for text in ["paris", "lyon", "nice", "paris"]),
            return_exceptions=True,
        )

        self.assertEqual(results[0].submitted_text, "paris")
        self.assertTrue(all(isinstance(r, DuplicateSubmission) for r in results[1:]))
        player = self.controller.store.player(alice.id)
        self.assertEqual(len(player.answers), 1)
        self.assertEqual(player.score, 10)

    async def test_many_players_scored_once_each(self):
        players = [await self.controller.join(f"Player{chr(65 + i)}") for i in range(20)]
        await self.controller.start_next()
        await asyncio.gather(
            *(self.controller.submit_answer(p.id, "q1", "Paris") for p in players),
            *(self.controller.submit_answer(p.id, "q1", "Paris") for p in players),
            return_exceptions=True,
        )
        snap = self.controller.snapshot()
        self.assertEqual(snap.submissions, 20)
        self.assertTrue(all(entry.score == 10 for entry in snap.scoreboard))

    async def test_submission_time_drives_decay(self):
        alice = await self.controller.join("Alice")
        await self.controller.start_next()
        self.clock.now += 10
        record = await self.controller.submit_answer(alice.id, "q1", "paris")
        self.assertEqual(record.points_awarded, 8)


class DurabilityTests(IsolatedAsyncioTestCase):
    async def test_write_failure_is_a_warning(self):
        controller = GameController("test", documents=_BrokenStore(), lock_timeout=0)
        result = await controller.create_question("Capital of France?", ["Paris"])
        self.assertEqual(result.warnings, ["database is down"])
        self.assertEqual(len(controller.store.questions), 1)

        await controller.start_next()
        await controller.lock()
        await controller.reveal()
        with self.assertRaises(NoMoreQuestions) as ctx:
            await controller.start_next()
        self.assertEqual(ctx.exception.warnings, ["database is down"])


class LockTimerTests(GameControllerTestCase):
    lock_timeout = 0.05

    async def test_timer_locks_active_question(self):
        await self.controller.start_next()
        self.assertIsNotNone(self.controller.snapshot().deadline_ts)
        await asyncio.sleep(0.15)
        self.assertEqual(self.controller.snapshot().phase, Phase.LOCKED)

    async def test_manual_lock_cancels_timer(self):
        await self.controller.start_next()
        await self.controller.lock()
        version = self.controller.snapshot().version
        await asyncio.sleep(0.15)
        self.assertEqual(self.controller.snapshot().version, version)

    async def test_stale_timer_does_not_lock_next_question(self):
        await self.controller.start_next()
        stale_round = self.controller.store.round
        await self.controller.lock()
        await self.controller.reveal()
        self.controller.lock_timeout = 0
        await self.controller.start_next()

        await self.controller._lock_when_due(stale_round, 0)
        self.assertEqual(self.controller.snapshot().phase, Phase.ACTIVE)

    async def test_reset_cancels_timer(self):
        await self.controller.start_next()
        await self.controller.reset()
        await asyncio.sleep(0.15)
        self.assertEqual(self.controller.snapshot().phase, Phase.IDLE)

    async def test_close_waits_for_cancelled_timer(self):
        await self.controller.start_next()
        timer = self.controller._timer
        self.assertFalse(timer.done())
        await self.controller.close()
        self.assertTrue(timer.cancelled())
        self.assertIsNone(self.controller._timer)
