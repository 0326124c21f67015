from ranking.errors import DuplicateRank
from ranking.models import RankedEntry, validate_category
from utilities.helpers import parse_timestamp, utc_now


class RankingStore:
    """
    Ordered ranked sequences keyed by (ranking scope, category, year).
    A scope holds an independent sequence per year, so every call names
    the year explicitly.
    """
    def __init__(self, database):
        self.database = database

    def get(self, ranking_scope, category, year):
        rows = self.database.query(
            "SELECT album_id, rank, title, artist, release_year, cover_ref FROM ranked_entries "
            "WHERE ranking_scope = ? AND category = ? AND year = ? ORDER BY rank",
            (ranking_scope, category, int(year))
        )
        return [RankedEntry(a, r, t, ar, y, c or '') for a, r, t, ar, y, c in rows]

    def replace(self, ranking_scope, category, year, sequence):
        validate_category(category)
        seen = set()
        for entry in sequence:
            if entry.album_id in seen:
                raise DuplicateRank(
                    f"Album {entry.album_id} appears twice in the {category} {year} ranking"
                )
            seen.add(entry.album_id)

        with self.database.transaction() as cur:
            cur.execute(
                "DELETE FROM ranked_entries WHERE ranking_scope = ? AND category = ? AND year = ?",
                (ranking_scope, category, int(year))
            )
            # rank numbers always come from the sequence order
            for rank, entry in enumerate(sequence, start=1):
                cur.execute(
                    "INSERT INTO ranked_entries (ranking_scope, category, year, rank, album_id, "
                    "title, artist, release_year, cover_ref) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (ranking_scope, category, int(year), rank, entry.album_id,
                     entry.title, entry.artist, entry.release_year, entry.cover_ref)
                )

    def touch(self, ranking_scope, year, identity, group_id=None, updated_at=None):
        """Record who owns a ranking scope and when it last changed."""
        stamp = (updated_at or utc_now()).isoformat()
        with self.database.transaction() as cur:
            cur.execute(
                "INSERT INTO ranking_scopes (ranking_scope, year, user_id, group_id, username, "
                "avatar_ref, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(ranking_scope, year) DO UPDATE SET "
                "username = excluded.username, avatar_ref = excluded.avatar_ref, "
                "updated_at = excluded.updated_at",
                (ranking_scope, int(year), identity.user_id, group_id,
                 identity.display_name, identity.avatar, stamp)
            )

    def scopes(self, year, group_id=None):
        """RankingScope metadata for a year; solo scopes only unless a group is named."""
        sql = ("SELECT ranking_scope, user_id, group_id, username, avatar_ref, updated_at "
               "FROM ranking_scopes WHERE year = ?")
        params = [int(year)]
        if group_id is None:
            sql += " AND group_id IS NULL"
        else:
            sql += " AND group_id = ?"
            params.append(group_id)
        sql += " ORDER BY updated_at DESC"
        return [
            {
                'ranking_scope': scope,
                'user_id':       user_id,
                'group_id':      gid,
                'username':      username or 'Anonymous',
                'avatar_ref':    avatar or '',
                'updated_at':    parse_timestamp(updated),
            }
            for scope, user_id, gid, username, avatar, updated in self.database.query(sql, params)
        ]

    def years(self, ranking_scope):
        rows = self.database.query(
            "SELECT DISTINCT year FROM ranked_entries WHERE ranking_scope = ? ORDER BY year DESC",
            (ranking_scope,)
        )
        return [row[0] for row in rows]
