from unittest import IsolatedAsyncioTestCase

from backend.trivia.models import Category, Difficulty, GameState, Question
from backend.trivia.state import GameStateStore


def _state(session_id: str = "1", **changes) -> GameState:
    question = Question(
        id=1,
        content="What is H2O?",
        correct_answer="Water",
        incorrect_answers=["Salt", "Air", "Fire"],
        difficulty=Difficulty.EASY,
        category=Category.SCIENCE,
    )
    return GameState(session_id=session_id, questions=[question], identity="ada", **changes)


class GameStateStoreTests(IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = GameStateStore()

    async def test_update_swaps_whole_snapshot(self):
        original = self.store.publish(_state())

        updated = self.store.update("1", score=12, streak=1)

        self.assertEqual(original.score, 0)
        self.assertEqual(updated.score, 12)
        self.assertIs(self.store.snapshot("1"), updated)
        self.assertIs(self.store.current, updated)

    async def test_update_without_state_raises(self):
        with self.assertRaises(KeyError):
            self.store.update("missing", score=1)

    async def test_subscriber_is_primed_and_receives_updates(self):
        self.store.publish(_state())
        with self.store.subscribe("1") as subscription:
            self.store.update("1", score=5)

            first = await subscription.get()
            second = await subscription.get()

        self.assertEqual(first.score, 0)
        self.assertEqual(second.score, 5)

    async def test_subscription_filters_other_sessions(self):
        subscription = self.store.subscribe("1")
        self.store.publish(_state("2"))
        self.store.publish(_state("1"))

        self.assertEqual(subscription.pending(), 1)
        self.assertEqual((await subscription.get()).session_id, "1")
        subscription.close()

    async def test_clear_broadcasts_none(self):
        self.store.publish(_state())
        subscription = self.store.subscribe()
        await subscription.get()

        self.store.clear("1")

        self.assertIsNone(await subscription.get())
        self.assertIsNone(self.store.snapshot("1"))
        self.assertIsNone(self.store.current)

    async def test_clear_unknown_session_is_silent(self):
        subscription = self.store.subscribe()
        self.store.clear("404")
        self.assertEqual(subscription.pending(), 0)
