# Seed data: Users (citizens and one municipal admin)

from passlib.context import CryptContext

from ..config import new_id, now_utc

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# ---------------------------------------------------------------------------
# Raw user definitions
# ---------------------------------------------------------------------------
USERS = [
    # ---- Citizens (4) ----
    {"username": "citizen1", "password": "citizen123",
     "full_name": "Sita Shrestha", "email": "sita.shrestha@email.com", "role": "citizen"},

    {"username": "citizen2", "password": "citizen123",
     "full_name": "Ramesh Thapa", "email": "ramesh.thapa@email.com", "role": "citizen"},

    {"username": "citizen3", "password": "citizen123",
     "full_name": "Anjali Gurung", "email": "anjali.gurung@email.com", "role": "citizen"},

    {"username": "citizen4", "password": "citizen123",
     "full_name": "Bikash Maharjan", "email": "bikash.maharjan@email.com", "role": "citizen"},

    # ---- Admin (1) ----
    {"username": "admin", "password": "admin123",
     "full_name": "Ward Office Administrator", "email": "admin@ward.gov.np", "role": "admin"},
]

# ---------------------------------------------------------------------------
# Import function
# ---------------------------------------------------------------------------
def import_users(db) -> dict[str, str]:
    """Insert seed users into MongoDB. Returns {username: _id} mapping."""
    print("\n  Importing seed users...")
    user_ids: dict[str, str] = {}
    for u in USERS:
        uid = new_id()
        db.users.insert_one({
            "_id": uid,
            "username": u["username"],
            "hashed_password": pwd_context.hash(u["password"]),
            "full_name": u["full_name"],
            "email": u["email"],
            "role": u["role"],
            "points": 0,
            "created_at": now_utc(),
        })
        user_ids[u["username"]] = uid
        print(f"    {u['username']:20s}  ({u['role']})")
    db.users.create_index([("username", 1)], unique=True)
    print(f"  => {len(USERS)} users created")
    return user_ids
