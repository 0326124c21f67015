# ranking/models.py

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from utilities.helpers import parse_timestamp, utc_now

FRENCH = 'French'
INTERNATIONAL = 'International'
CATEGORIES = (FRENCH, INTERNATIONAL)


def validate_category(category: str) -> str:
    if category not in CATEGORIES:
        raise ValueError(f"Unknown category {category!r} (expected one of {', '.join(CATEGORIES)})")
    return category


def category_key(category: str) -> str:
    """Field name used for a category inside remote documents."""
    return validate_category(category).lower()


@dataclass(frozen=True, eq=False)
class Item:
    """
    Immutable display record for an album. Two items are the same item when
    their ids match, whatever the other fields say.
    """
    id: str
    title: str
    artist: str
    release_year: Optional[int] = None
    cover_ref: str = ''
    category: str = FRENCH

    def __eq__(self, other):
        if not isinstance(other, Item):
            return NotImplemented
        return self.id == other.id

    def __hash__(self):
        return hash(self.id)

    def to_dict(self) -> dict:
        return {
            'id':       self.id,
            'title':    self.title,
            'artist':   self.artist,
            'year':     self.release_year,
            'language': self.category,
            'coverUrl': self.cover_ref,
        }

    @classmethod
    def from_dict(cls, data: dict, category: str = None) -> 'Item':
        year = data.get('year')
        return cls(
            id=str(data['id']),
            title=data.get('title', ''),
            artist=data.get('artist', ''),
            release_year=int(year) if year not in (None, '') else None,
            cover_ref=data.get('coverUrl') or '',
            category=category or data.get('language') or FRENCH,
        )


@dataclass(frozen=True)
class PoolEntry:
    item: Item
    added_by: str
    added_at: datetime = field(default_factory=utc_now)

    @property
    def item_id(self) -> str:
        return self.item.id

    def to_dict(self) -> dict:
        data = self.item.to_dict()
        data['addedBy'] = self.added_by
        data['addedAt'] = self.added_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict, category: str = None) -> 'PoolEntry':
        return cls(
            item=Item.from_dict(data, category),
            added_by=data.get('addedBy') or '',
            added_at=parse_timestamp(data.get('addedAt')),
        )


@dataclass(frozen=True)
class RankedEntry:
    """Display fields are copied from the pool item when it gets ranked."""
    album_id: str
    rank: int
    title: str
    artist: str
    release_year: Optional[int] = None
    cover_ref: str = ''

    @classmethod
    def from_item(cls, item: Item, rank: int) -> 'RankedEntry':
        return cls(
            album_id=item.id,
            rank=rank,
            title=item.title,
            artist=item.artist,
            release_year=item.release_year,
            cover_ref=item.cover_ref,
        )

    def with_rank(self, rank: int) -> 'RankedEntry':
        if rank == self.rank:
            return self
        return replace(self, rank=rank)

    def to_item(self, category: str) -> Item:
        return Item(self.album_id, self.title, self.artist, self.release_year, self.cover_ref, category)

    def to_dict(self) -> dict:
        return {
            'albumId':  self.album_id,
            'rank':     self.rank,
            'title':    self.title,
            'artist':   self.artist,
            'year':     self.release_year,
            'coverUrl': self.cover_ref,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'RankedEntry':
        year = data.get('year')
        return cls(
            album_id=str(data.get('albumId') or data['id']),
            rank=int(data.get('rank') or 0),
            title=data.get('title', ''),
            artist=data.get('artist', ''),
            release_year=int(year) if year not in (None, '') else None,
            cover_ref=data.get('coverUrl') or '',
        )


@dataclass(frozen=True)
class Identity:
    user_id: str
    display_name: str = 'Anonymous'
    avatar_ref: str = ''

    @property
    def avatar(self) -> str:
        return self.avatar_ref or f"https://api.dicebear.com/7.x/initials/svg?seed={self.user_id}"


@dataclass(frozen=True)
class Scope:
    """Who owns a ranking: a user on their own, or a user inside a group."""
    user_id: str
    group_id: Optional[str] = None

    @property
    def is_group(self) -> bool:
        return self.group_id is not None

    @property
    def ranking_scope(self) -> str:
        if self.is_group:
            return f"{self.group_id}/{self.user_id}"
        return self.user_id

    def pool_scope(self, year: int) -> str:
        # Group pools are shared across years, solo pools are per year.
        if self.is_group:
            return self.group_id
        return f"{self.user_id}_{year}"


@dataclass(frozen=True)
class RankingContext:
    scope: Scope
    year: int
    category: str = FRENCH
    identity: Optional[Identity] = None

    def __post_init__(self):
        validate_category(self.category)

    @property
    def pool_scope(self) -> str:
        return self.scope.pool_scope(self.year)

    @property
    def ranking_scope(self) -> str:
        return self.scope.ranking_scope

    @property
    def actor(self) -> Optional[str]:
        return self.identity.user_id if self.identity else None

    def with_category(self, category: str) -> 'RankingContext':
        return replace(self, category=category)

    def with_year(self, year: int) -> 'RankingContext':
        return replace(self, year=year)

    @classmethod
    def for_identity(cls, identity: Identity, year: int, category: str = FRENCH,
                     group_id: str = None) -> 'RankingContext':
        return cls(Scope(identity.user_id, group_id), year, category, identity)


@dataclass(frozen=True)
class Group:
    id: str
    name: str
    code: str
    owner_id: str
    members: Tuple[str, ...] = ()
    created_at: Optional[datetime] = None


@dataclass
class CommunityUserRanking:
    user_id: str
    username: str
    avatar_ref: str
    rankings: Dict[str, List[RankedEntry]] = field(default_factory=dict)
    group_id: Optional[str] = None
    updated_at: Optional[datetime] = None
