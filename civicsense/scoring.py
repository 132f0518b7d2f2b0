# Engagement scoring: upvote toggling, point awards and the leaderboard.
#
# Points only ever go up. Every award is a single $inc on the user document,
# so concurrent awards are serialized by the store.

import asyncio
import logging
from concurrent.futures import Executor
from typing import List, Optional

from pymongo.errors import DuplicateKeyError

from .config import now_utc
from .models import LeaderboardEntry, UpvoteState

logger = logging.getLogger(__name__)

REPORT_POINTS = 10
UPVOTE_RECEIVED_POINTS = 1
COMMENT_POINTS = 2
RESOLUTION_BONUS_POINTS = 5


def voter_key(user: Optional[dict], session_id: Optional[str]) -> Optional[str]:
    """Account id for signed-in voters, otherwise the client's anonymous session id."""
    if user is not None:
        return f"user:{user['_id']}"
    if session_id and isinstance(session_id, str) and session_id.strip():
        return f"session:{session_id.strip()}"
    return None


async def award_points(db, executor: Optional[Executor], user_id: Optional[str], points: int,
                       reason: str) -> bool:
    if not user_id or points <= 0:
        return False
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(
        executor, lambda: db.users.update_one({"_id": user_id}, {"$inc": {"points": points}}))
    if result.matched_count == 0:
        logger.warning("Cannot award %d points (%s): user %s not found", points, reason, user_id)
        return False
    logger.info("Awarded %d points to %s for %s", points, user_id, reason)
    return True


async def upvote_count(db, executor: Optional[Executor], issue_id: str) -> int:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, db.upvotes.count_documents, {"issue_id": issue_id})


async def upvote_status(db, executor: Optional[Executor], issue_id: str, key: Optional[str]) -> UpvoteState:
    loop = asyncio.get_running_loop()
    upvoted = False
    if key:
        row = await loop.run_in_executor(executor, db.upvotes.find_one,
                                         {"issue_id": issue_id, "voter_key": key})
        upvoted = row is not None
    return UpvoteState(upvoted=upvoted, upvote_count=await upvote_count(db, executor, issue_id))


async def toggle_upvote(db, executor: Optional[Executor], issue: dict, key: str) -> UpvoteState:
    """Remove the (issue, voter) row if present, otherwise create it."""
    issue_id = issue["_id"]
    loop = asyncio.get_running_loop()

    def flip():
        removed = db.upvotes.delete_one({"issue_id": issue_id, "voter_key": key})
        if removed.deleted_count:
            return False
        try:
            db.upvotes.insert_one({"issue_id": issue_id, "voter_key": key, "created_at": now_utc()})
        except DuplicateKeyError:
            # A concurrent toggle inserted the same row first
            return None
        return True

    def first_award():
        result = db.upvote_awards.update_one(
            {"issue_id": issue_id, "voter_key": key},
            {"$setOnInsert": {"created_at": now_utc()}}, upsert=True)
        return result.upserted_id is not None

    created = await loop.run_in_executor(executor, flip)
    reporter_id = issue.get("reporter_id")
    if created and reporter_id and key != f"user:{reporter_id}":
        # One award per voter per issue
        try:
            owed = await loop.run_in_executor(executor, first_award)
        except DuplicateKeyError:
            owed = False
        if owed:
            await award_points(db, executor, reporter_id, UPVOTE_RECEIVED_POINTS, "upvote received")
    return UpvoteState(upvoted=created is not False,
                       upvote_count=await upvote_count(db, executor, issue_id))


async def leaderboard(db, executor: Optional[Executor], limit: int = 50) -> List[LeaderboardEntry]:
    def fetch():
        return list(db.users.find({}, {"full_name": 1, "email": 1, "points": 1})
                    .sort([("points", -1), ("full_name", 1)]).limit(limit))
    loop = asyncio.get_running_loop()
    users = await loop.run_in_executor(executor, fetch)
    return [LeaderboardEntry(full_name=u.get("full_name", ""), email=u.get("email", ""),
                             points=u.get("points", 0)) for u in users]
