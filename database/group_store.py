import random
import sqlite3
import string
import uuid

from ranking.errors import GroupNotFound
from ranking.models import Group
from utilities.helpers import parse_timestamp, utc_now

CODE_CHARS = string.ascii_uppercase + string.digits
CODE_LENGTH = 6


def generate_group_code(rng=random):
    """Six random characters from A-Z and 0-9."""
    return ''.join(rng.choice(CODE_CHARS) for _ in range(CODE_LENGTH))


class GroupStore:
    def __init__(self, database, max_code_attempts=10):
        self.database = database
        self.max_code_attempts = max_code_attempts

    def create_group(self, name, owner_id):
        name = (name or '').strip()
        if not name:
            raise ValueError("Group name cannot be empty")

        group_id = uuid.uuid4().hex
        now = utc_now().isoformat()
        for _ in range(self.max_code_attempts):
            code = generate_group_code()
            try:
                with self.database.transaction() as cur:
                    cur.execute(
                        "INSERT INTO groups (id, name, code, owner_id, created_at) VALUES (?, ?, ?, ?, ?)",
                        (group_id, name, code, owner_id, now)
                    )
                    cur.execute(
                        "INSERT INTO group_members (group_id, user_id, joined_at) VALUES (?, ?, ?)",
                        (group_id, owner_id, now)
                    )
            except sqlite3.IntegrityError:
                # code collision, draw another one
                continue
            return self.get(group_id)
        raise RuntimeError(f"Could not allocate a unique group code after {self.max_code_attempts} attempts")

    def join_by_code(self, code, user_id):
        rows = self.database.query(
            "SELECT id FROM groups WHERE code = ?", ((code or '').strip().upper(),)
        )
        if not rows:
            raise GroupNotFound("Group not found with this code.")
        group_id = rows[0][0]
        with self.database.transaction() as cur:
            cur.execute(
                "INSERT OR IGNORE INTO group_members (group_id, user_id, joined_at) VALUES (?, ?, ?)",
                (group_id, user_id, utc_now().isoformat())
            )
        return group_id

    def leave_group(self, group_id, user_id):
        with self.database.transaction() as cur:
            cur.execute(
                "DELETE FROM group_members WHERE group_id = ? AND user_id = ?",
                (group_id, user_id)
            )

    def is_member(self, group_id, user_id):
        rows = self.database.query(
            "SELECT 1 FROM group_members WHERE group_id = ? AND user_id = ?",
            (group_id, user_id)
        )
        return bool(rows)

    def members(self, group_id):
        rows = self.database.query(
            "SELECT user_id FROM group_members WHERE group_id = ? ORDER BY joined_at, user_id",
            (group_id,)
        )
        return [row[0] for row in rows]

    def get(self, group_id):
        rows = self.database.query(
            "SELECT id, name, code, owner_id, created_at FROM groups WHERE id = ?", (group_id,)
        )
        if not rows:
            raise GroupNotFound(f"Group {group_id} does not exist")
        gid, name, code, owner_id, created_at = rows[0]
        return Group(gid, name, code, owner_id, tuple(self.members(gid)), parse_timestamp(created_at))

    def user_groups(self, user_id):
        rows = self.database.query(
            "SELECT g.id FROM groups g JOIN group_members m ON m.group_id = g.id "
            "WHERE m.user_id = ? ORDER BY g.created_at, g.rowid",
            (user_id,)
        )
        return [self.get(row[0]) for row in rows]
