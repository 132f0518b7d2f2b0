# CivicSense Issue Portal: Seed Data Importer
# Populates MongoDB with demo users, issues, upvotes and comments
#
# Usage:  civicsense-import
#     or: python -m civicsense.importer

from pymongo import ASCENDING, MongoClient

from .config import MONGODB_DB, MONGODB_URL
from .seed.issues import ISSUES, import_issues
from .seed.users import USERS, import_users

COLLECTIONS = ["issues", "users", "upvotes", "upvote_awards", "comments", "before_after"]


def main():
    print("=" * 64)
    print("  CivicSense Issue Portal: Data Importer")
    print("=" * 64)

    # ------------------------------------------------------------------
    # 1. Connect MongoDB
    # ------------------------------------------------------------------
    print("\n[1/4] Connecting to MongoDB...")
    mongo_client = MongoClient(MONGODB_URL, tz_aware=True)
    db = mongo_client[MONGODB_DB]
    print(f"  Connected: {MONGODB_URL} (db: {MONGODB_DB})")

    # ------------------------------------------------------------------
    # 2. Reset collections
    # ------------------------------------------------------------------
    print("\n[2/4] Resetting collections...")
    for name in COLLECTIONS:
        db.drop_collection(name)
        print(f"  MongoDB: {name}")
    db.upvotes.create_index([("issue_id", ASCENDING), ("voter_key", ASCENDING)], unique=True)
    db.upvote_awards.create_index([("issue_id", ASCENDING), ("voter_key", ASCENDING)], unique=True)

    # ------------------------------------------------------------------
    # 3. Users
    # ------------------------------------------------------------------
    print("\n[3/4] Users")
    user_ids = import_users(db)

    # ------------------------------------------------------------------
    # 4. Issues
    # ------------------------------------------------------------------
    print("\n[4/4] Issues")
    import_issues(db, user_ids)

    print("\n" + "=" * 64)
    print(f"  Done: {len(USERS)} users, {len(ISSUES)} issues")
    print("  Logins: citizen1 / citizen123, admin / admin123")
    print("=" * 64)
    mongo_client.close()


def run():
    main()


if __name__ == "__main__":
    run()
