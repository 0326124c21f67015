# ranking/reconciliation.py

"""
Pure operations over one (scope, category, year) board.

Each function takes the current BoardState and returns a new one; nothing
here touches storage. A function that has nothing to change returns the
state it was given, so callers can skip the write with an identity check.
"""

from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Tuple

from ranking.errors import DuplicateItem, DuplicateRank, NotInPool, NotRanked
from ranking.models import Item, PoolEntry, RankedEntry
from utilities.helpers import clamp, utc_now

UP = 'up'
DOWN = 'down'


@dataclass(frozen=True)
class BoardState:
    pool: Tuple[PoolEntry, ...] = ()
    ranked: Tuple[RankedEntry, ...] = ()

    def pool_entry(self, item_id: str) -> Optional[PoolEntry]:
        for entry in self.pool:
            if entry.item_id == item_id:
                return entry
        return None

    def index_of(self, album_id: str) -> int:
        for idx, entry in enumerate(self.ranked):
            if entry.album_id == album_id:
                return idx
        return -1

    def ranked_ids(self) -> List[str]:
        return [e.album_id for e in self.ranked]

    def is_ranked(self, album_id: str) -> bool:
        return self.index_of(album_id) != -1


def renumber(entries: Iterable[RankedEntry]) -> Tuple[RankedEntry, ...]:
    """Re-derive ranks 1..N from sequence order, rejecting repeated albums."""
    seen = set()
    out = []
    for rank, entry in enumerate(entries, start=1):
        if entry.album_id in seen:
            raise DuplicateRank(f"Album {entry.album_id} appears twice in the ranking")
        seen.add(entry.album_id)
        out.append(entry.with_rank(rank))
    return tuple(out)


def visible_pool(board: BoardState) -> List[PoolEntry]:
    ranked = set(board.ranked_ids())
    return [entry for entry in board.pool if entry.item_id not in ranked]


def add_to_pool(board: BoardState, entry: PoolEntry) -> BoardState:
    if board.pool_entry(entry.item_id) is not None:
        raise DuplicateItem(f"'{entry.item.artist} - {entry.item.title}' is already in the pool")
    # newest contributions show first
    return replace(board, pool=(entry,) + board.pool)


def insert_from_pool(board: BoardState, item_id: str, target_index: int) -> BoardState:
    entry = board.pool_entry(item_id)
    if entry is None:
        raise NotInPool(f"Album {item_id} is not in the pool")
    if board.is_ranked(item_id):
        raise NotInPool(f"Album {item_id} is already ranked")

    ranked = list(board.ranked)
    index = clamp(target_index, 0, len(ranked))
    ranked.insert(index, RankedEntry.from_item(entry.item, index + 1))
    return replace(board, ranked=renumber(ranked))


def promote(board: BoardState, item_id: str) -> BoardState:
    return insert_from_pool(board, item_id, len(board.ranked))


def demote(board: BoardState, album_id: str, category: str, actor: str = '') -> BoardState:
    idx = board.index_of(album_id)
    if idx == -1:
        raise NotRanked(f"Album {album_id} is not ranked")

    removed = board.ranked[idx]
    ranked = board.ranked[:idx] + board.ranked[idx + 1:]
    pool = board.pool
    if board.pool_entry(album_id) is None:
        # the pool row was deleted while ranked; bring it back from the snapshot
        pool = (PoolEntry(removed.to_item(category), actor, utc_now()),) + pool
    return BoardState(pool=pool, ranked=renumber(ranked))


def reorder(board: BoardState, album_id: str, target_index: int) -> BoardState:
    idx = board.index_of(album_id)
    if idx == -1:
        raise NotRanked(f"Album {album_id} is not ranked")

    target = clamp(target_index, 0, len(board.ranked) - 1)
    if target == idx:
        return board

    ranked = list(board.ranked)
    moved = ranked.pop(idx)
    ranked.insert(target, moved)
    return replace(board, ranked=renumber(ranked))


def move_ranked(board: BoardState, album_id: str, direction: str) -> BoardState:
    if direction not in (UP, DOWN):
        raise ValueError(f"Direction must be '{UP}' or '{DOWN}', got {direction!r}")
    idx = board.index_of(album_id)
    if idx == -1:
        raise NotRanked(f"Album {album_id} is not ranked")

    if direction == UP and idx == 0:
        return board
    if direction == DOWN and idx == len(board.ranked) - 1:
        return board

    swap = idx - 1 if direction == UP else idx + 1
    ranked = list(board.ranked)
    ranked[idx], ranked[swap] = ranked[swap], ranked[idx]
    return replace(board, ranked=renumber(ranked))


def remove_ranked(board: BoardState, album_id: str, purge_pool: bool = False) -> BoardState:
    idx = board.index_of(album_id)
    if idx == -1:
        raise NotRanked(f"Album {album_id} is not ranked")

    ranked = renumber(board.ranked[:idx] + board.ranked[idx + 1:])
    pool = board.pool
    if purge_pool:
        pool = tuple(e for e in pool if e.item_id != album_id)
    return BoardState(pool=pool, ranked=ranked)


def remove_pooled(board: BoardState, item_id: str) -> BoardState:
    if board.pool_entry(item_id) is None:
        raise NotInPool(f"Album {item_id} is not in the pool")
    return replace(board, pool=tuple(e for e in board.pool if e.item_id != item_id))


def new_entry(item: Item, actor: str) -> PoolEntry:
    return PoolEntry(item=item, added_by=actor, added_at=utc_now())
