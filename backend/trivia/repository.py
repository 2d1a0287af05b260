from __future__ import annotations

from typing import Any, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .db import next_sequence
from .errors import DuplicateSubmission, NotFoundError
from .models import GameSession, PlayerResponse, Question, SessionStatus, StreakRecord, User
from .utils import now_utc


class TriviaRepository:
    """Persistence operations the game service issues against the database."""

    def __init__(self, database: Any):
        self.db = database

    # sessions

    async def create_session(
        self, question_ids: List[int], category: Optional[str] = None, difficulty: Optional[str] = None
    ) -> GameSession:
        session = GameSession(
            id=await next_sequence(self.db, "sessions"),
            question_sequence=question_ids,
            category=category,
            difficulty=difficulty,
        )
        await self.db.sessions.insert_one(session.model_dump(mode="python"))
        return session

    async def get_session(self, session_id: int) -> GameSession:
        doc = await self.db.sessions.find_one({"id": session_id})
        if not doc:
            raise NotFoundError(f"Game session {session_id} not found")
        return GameSession(**doc)

    async def transition_session(self, session_id: int, target: SessionStatus) -> Optional[GameSession]:
        """Move a session forward; returns None when the transition is not allowed."""

        session = await self.get_session(session_id)
        if not session.can_transition(target):
            return None

        changes: dict = {"status": target.value}
        if target in (SessionStatus.COMPLETED, SessionStatus.CANCELLED):
            changes["ended_at"] = now_utc()

        # Conditional on the status we read, so concurrent transitions cannot both win.
        doc = await self.db.sessions.find_one_and_update(
            {"id": session_id, "status": session.status.value},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        return GameSession(**doc) if doc else None

    async def advance_session(self, session_id: int, answered_index: int) -> None:
        await self.db.sessions.update_one(
            {"id": session_id},
            {"$max": {"current_index": answered_index + 1}},
        )

    # questions

    async def get_question(self, question_id: int) -> Question:
        doc = await self.db.questions.find_one({"id": question_id})
        if not doc:
            raise NotFoundError(f"Question {question_id} not found")
        return Question(**doc)

    async def get_questions(self, question_ids: List[int]) -> List[Question]:
        docs = [doc async for doc in self.db.questions.find({"id": {"$in": list(question_ids)}})]
        by_id = {doc["id"]: Question(**doc) for doc in docs}
        return [by_id[qid] for qid in question_ids if qid in by_id]

    # users

    async def upsert_user(self, identity: str) -> User:
        identity = identity.lower()
        doc = await self.db.users.find_one({"identity": identity})
        if doc:
            return User(**doc)

        new_id = await next_sequence(self.db, "users")
        doc = await self.db.users.find_one_and_update(
            {"identity": identity},
            {
                "$setOnInsert": {
                    "id": new_id,
                    "total_points": 0,
                    "games_played": 0,
                    "best_streak": 0,
                    "last_played_at": None,
                }
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return User(**doc)

    async def get_user(self, identity: str) -> User:
        doc = await self.db.users.find_one({"identity": identity.lower()})
        if not doc:
            raise NotFoundError(f"User {identity} not found")
        return User(**doc)

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        doc = await self.db.users.find_one({"id": user_id})
        return User(**doc) if doc else None

    async def apply_score(self, user_id: int, points: int, streak: int) -> User:
        # $inc/$max keep concurrent submissions from overwriting each other's totals.
        doc = await self.db.users.find_one_and_update(
            {"id": user_id},
            {
                "$inc": {"total_points": points},
                "$max": {"best_streak": streak},
                "$set": {"last_played_at": now_utc()},
            },
            return_document=ReturnDocument.AFTER,
        )
        return User(**doc)

    async def record_game_played(self, user_id: int) -> None:
        await self.db.users.update_one({"id": user_id}, {"$inc": {"games_played": 1}})

    # responses

    async def create_response(self, response: PlayerResponse) -> PlayerResponse:
        try:
            await self.db.responses.insert_one(response.model_dump(mode="python"))
        except DuplicateKeyError as exc:
            raise DuplicateSubmission(
                f"Question {response.question_id} already answered in session {response.session_id}"
            ) from exc
        return response

    async def find_response(self, session_id: int, question_id: int, user_id: int) -> Optional[PlayerResponse]:
        doc = await self.db.responses.find_one(
            {"session_id": session_id, "question_id": question_id, "user_id": user_id}
        )
        return PlayerResponse(**doc) if doc else None

    async def latest_response(self, session_id: int, user_id: int) -> Optional[PlayerResponse]:
        cursor = self.db.responses.find({"session_id": session_id, "user_id": user_id}).sort("question_index", -1).limit(1)
        docs = [doc async for doc in cursor]
        return PlayerResponse(**docs[0]) if docs else None

    async def list_responses(self, session_id: int, user_id: Optional[int] = None) -> List[PlayerResponse]:
        query: dict = {"session_id": session_id}
        if user_id is not None:
            query["user_id"] = user_id
        cursor = self.db.responses.find(query).sort("question_index", 1)
        return [PlayerResponse(**doc) async for doc in cursor]

    async def recent_question_ids(self, user_id: int, limit: int) -> List[int]:
        cursor = self.db.responses.find({"user_id": user_id}).sort("answered_at", -1).limit(limit)
        return [doc["question_id"] async for doc in cursor]

    async def record_streak(self, record: StreakRecord) -> None:
        await self.db.streak_history.insert_one(record.model_dump(mode="python"))
