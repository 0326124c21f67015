import pandas as pd

from ranking.models import CATEGORIES, CommunityUserRanking

FRAME_COLUMNS = ['user_id', 'username', 'category', 'rank', 'album_id', 'title', 'artist', 'release_year']


class CommunityAggregator:
    """
    Read-only fan-in of every member's ranking for a year, either the solo
    rankings of all users or the rankings inside one group.
    """
    def __init__(self, ranking_store, group_store=None, title='Community Rankings'):
        self.ranking_store = ranking_store
        self.group_store = group_store
        self.title = title

    def community_rankings(self, year, group_id=None):
        """One CommunityUserRanking per scope that has saved something for the year."""
        members = None
        if group_id is not None and self.group_store is not None:
            members = set(self.group_store.members(group_id))

        out = []
        for scope in self.ranking_store.scopes(year, group_id):
            # former members keep their rows but drop out of the group view
            if members is not None and scope['user_id'] not in members:
                continue
            rankings = {
                category: self.ranking_store.get(scope['ranking_scope'], category, year)
                for category in CATEGORIES
            }
            out.append(CommunityUserRanking(
                user_id=scope['user_id'],
                username=scope['username'],
                avatar_ref=scope['avatar_ref'],
                rankings=rankings,
                group_id=scope['group_id'],
                updated_at=scope['updated_at'],
            ))
        return out

    def to_frame(self, rankings, category=None) -> pd.DataFrame:
        """Flatten rankings into one row per ranked album (optionally one category)."""
        rows = []
        for user in rankings:
            for cat, entries in user.rankings.items():
                if category and cat != category:
                    continue
                for entry in entries:
                    rows.append({
                        'user_id':      user.user_id,
                        'username':     user.username,
                        'category':     cat,
                        'rank':         entry.rank,
                        'album_id':     entry.album_id,
                        'title':        entry.title,
                        'artist':       entry.artist,
                        'release_year': entry.release_year,
                    })
        if not rows:
            return pd.DataFrame(columns=FRAME_COLUMNS)
        return pd.DataFrame(rows, columns=FRAME_COLUMNS).sort_values(
            ['category', 'username', 'rank'], ignore_index=True
        )

    def summary(self, df: pd.DataFrame) -> dict:
        """Counts for the export header; no scoring."""
        if df.empty:
            return {'Status': 'No rankings saved yet'}
        per_user = df.groupby('username', observed=True).size()
        return {
            'Members Ranking': str(df['user_id'].nunique()),
            'Ranked Entries': str(len(df)),
            'Distinct Albums': str(df['album_id'].nunique()),
            'Longest List': f"{per_user.idxmax()} ({per_user.max()})",
        }
