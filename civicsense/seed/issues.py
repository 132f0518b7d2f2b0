# Seed data: Issues around Kathmandu, with upvotes, comments and point totals

from datetime import timedelta

from ..budget import heuristic_allocation
from ..config import new_id, now_utc
from ..scoring import (COMMENT_POINTS, REPORT_POINTS, RESOLUTION_BONUS_POINTS,
                       UPVOTE_RECEIVED_POINTS)
from .users import USERS

# ---------------------------------------------------------------------------
# Raw issue definitions
# ---------------------------------------------------------------------------
# (reporter, category, description, location, ward, lat, lng, status, priority, anonymous, days_ago)
ISSUES = [
    ("citizen1", "Road Management",
     "Large pothole in the middle of the road near the bus stop. Two motorbikes slipped this week, urgent repair needed.",
     "Kalanki Chowk", "Ward 14", 27.69318, 85.28125, "pending", "high", False, 3),
    ("citizen2", "Road Management",
     "Pothole getting wider after the rain, water collects and hides its depth.",
     "Kalanki Chowk", "Ward 14", 27.69322, 85.28131, "in_progress", "medium", False, 9),
    ("citizen3", "Waste",
     "Garbage has not been collected for ten days and is spilling onto the footpath.",
     "Baneshwor Height", "Ward 10", 27.69051, 85.34212, "pending", "medium", True, 2),
    ("citizen4", "Electricity",
     "Street light pole leaning dangerously with exposed wires at the base.",
     "New Road Gate", "Ward 22", 27.70402, 85.31093, "resolved", "high", False, 21),
    ("citizen1", "Water",
     "Emergency water leak from the main supply pipe, the road is flooded every morning.",
     "Maharajgunj", "Ward 3", 27.73564, 85.33025, "pending", "high", False, 1),
    ("citizen2", "Water",
     "Minor drip from a public tap near the temple.",
     "Patan Durbar Square", "Ward 16", 27.67311, 85.32503, "resolved", "low", False, 30),
    ("citizen3", "Other",
     "Broken bench and cosmetic damage to the park fence.",
     "Ratna Park", "Ward 28", 27.70586, 85.31518, "pending", "low", True, 5),
    ("citizen4", "Waste",
     "Overflowing drain blocked by plastic waste next to the school gate.",
     "Baneshwor Height", "Ward 10", 27.69058, 85.34219, "in_progress", "medium", False, 6),
]

UPVOTES = [
    (0, "citizen2"), (0, "citizen3"), (0, "citizen4"),
    (2, "citizen1"), (4, "citizen3"), (4, "citizen4"), (7, "citizen1"),
]

COMMENTS = [
    (0, "citizen2", "Same problem near my house, glad someone reported it."),
    (4, "citizen4", "Still leaking today, please send a team."),
]

# ---------------------------------------------------------------------------
# Import function
# ---------------------------------------------------------------------------
def import_issues(db, user_ids: dict[str, str]) -> list[str]:
    """Insert seed issues, upvotes and comments, then credit reporters the points they earned."""
    print("\n  Importing seed issues...")
    now = now_utc()
    points: dict[str, int] = {uid: 0 for uid in user_ids.values()}
    issue_ids: list[str] = []
    names = {u["username"]: u["full_name"] for u in USERS}
    for (reporter, category, description, location, ward, lat, lng,
         status, priority, anonymous, days_ago) in ISSUES:
        created = now - timedelta(days=days_ago)
        resolved_at = created + timedelta(days=max(days_ago // 3, 1)) if status == "resolved" else None
        issue_id = new_id()
        db.issues.insert_one({
            "_id": issue_id, "reporter_id": user_ids[reporter],
            "description": description, "category": category,
            "ward": ward, "municipality": "Kathmandu Metropolitan City",
            "location_name": location, "lat": lat, "lng": lng, "image": None,
            "status": status, "is_anonymous": anonymous, "priority": priority,
            "budget_allocation": heuristic_allocation(description, category).model_dump(),
            "client_submission_id": None, "resolution_bonus_awarded": status == "resolved",
            "created_at": created, "updated_at": resolved_at or created,
            "resolved_at": resolved_at,
        })
        issue_ids.append(issue_id)
        points[user_ids[reporter]] += REPORT_POINTS
        if status == "resolved":
            points[user_ids[reporter]] += RESOLUTION_BONUS_POINTS
        print(f"    {category:16s} {status:12s} {location}")

    for index, voter in UPVOTES:
        db.upvotes.insert_one({"issue_id": issue_ids[index], "voter_key": f"user:{user_ids[voter]}",
                               "created_at": now})
        db.upvote_awards.insert_one({"issue_id": issue_ids[index], "voter_key": f"user:{user_ids[voter]}",
                                     "created_at": now})
        points[user_ids[ISSUES[index][0]]] += UPVOTE_RECEIVED_POINTS

    for index, author, text in COMMENTS:
        db.comments.insert_one({"_id": new_id(), "issue_id": issue_ids[index],
                                "user_id": user_ids[author], "full_name": names[author],
                                "comment": text, "created_at": now})
        points[user_ids[author]] += COMMENT_POINTS

    for uid, total in points.items():
        if total:
            db.users.update_one({"_id": uid}, {"$inc": {"points": total}})

    print(f"  => {len(ISSUES)} issues, {len(UPVOTES)} upvotes, {len(COMMENTS)} comments")
    return issue_ids
