import sqlite3

from ranking.errors import DuplicateItem, NotInPool
from ranking.models import Item, PoolEntry, validate_category
from utilities.helpers import parse_timestamp, utc_now

POOL_COLUMNS = "item_id, title, artist, release_year, cover_ref, added_by, added_at"


class PoolStore:
    """
    Unranked candidate albums per pool scope and category. A pool is a set:
    the (scope, category, item id) primary key rejects a second add of the
    same album, which is also what settles two members adding it at once.
    """
    def __init__(self, database):
        self.database = database

    def add(self, pool_scope, category, item: Item, actor, added_at=None) -> str:
        validate_category(category)
        entry = PoolEntry(item=item, added_by=actor, added_at=added_at or utc_now())
        try:
            with self.database.transaction() as cur:
                self._insert(cur, pool_scope, category, entry)
        except sqlite3.IntegrityError as e:
            raise DuplicateItem(
                f"'{item.artist} - {item.title}' is already in the {category} pool"
            ) from e
        return item.id

    def remove(self, pool_scope, category, item_id):
        with self.database.transaction() as cur:
            cur.execute(
                "DELETE FROM pool_entries WHERE pool_scope = ? AND category = ? AND item_id = ?",
                (pool_scope, category, item_id)
            )
            if cur.rowcount == 0:
                raise NotInPool(f"Album {item_id} is not in the {category} pool")

    def list(self, pool_scope, category):
        """Entries of the pool, newest first (the pool itself has no order)."""
        rows = self.database.query(
            f"SELECT {POOL_COLUMNS} FROM pool_entries "
            "WHERE pool_scope = ? AND category = ? ORDER BY added_at DESC, rowid DESC",
            (pool_scope, category)
        )
        return [self._row_to_entry(row, category) for row in rows]

    def get(self, pool_scope, category, item_id):
        rows = self.database.query(
            f"SELECT {POOL_COLUMNS} FROM pool_entries "
            "WHERE pool_scope = ? AND category = ? AND item_id = ?",
            (pool_scope, category, item_id)
        )
        return self._row_to_entry(rows[0], category) if rows else None

    def contains(self, pool_scope, category, item_id):
        return self.get(pool_scope, category, item_id) is not None

    def overwrite(self, pool_scope, category, entries):
        """Replace a whole pool; only used when a remote snapshot supersedes local state."""
        with self.database.transaction() as cur:
            cur.execute(
                "DELETE FROM pool_entries WHERE pool_scope = ? AND category = ?",
                (pool_scope, category)
            )
            seen = set()
            for entry in entries:
                if entry.item_id in seen:
                    continue
                seen.add(entry.item_id)
                self._insert(cur, pool_scope, category, entry)

    def _insert(self, cur, pool_scope, category, entry):
        item = entry.item
        cur.execute(
            "INSERT INTO pool_entries (pool_scope, category, item_id, title, artist, "
            "release_year, cover_ref, added_by, added_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (pool_scope, category, item.id, item.title, item.artist,
             item.release_year, item.cover_ref, entry.added_by, entry.added_at.isoformat())
        )

    def _row_to_entry(self, row, category):
        item_id, title, artist, year, cover, added_by, added_at = row
        item = Item(item_id, title, artist, year, cover or '', category)
        return PoolEntry(item=item, added_by=added_by, added_at=parse_timestamp(added_at))
