# sync/documents.py

"""
Layout of the remote documents and the partial updates written to them.

  rankings/<userId>_<year>                    solo ranking, pools inside
  groups/<groupId>/rankings/<userId>_<year>   a member's ranking in a group
  groups/<groupId>/pools/<Category>           shared group pool

Pools are maps keyed by album id so that a partial update can add or
delete (None) a single entry without rewriting the others. Ranked lists
are written whole.
"""

from ranking.models import CATEGORIES, PoolEntry, RankedEntry, category_key
from utilities.helpers import utc_now


def ranking_document_key(scope, year):
    if scope.is_group:
        return f"groups/{scope.group_id}/rankings/{scope.user_id}_{year}"
    return f"rankings/{scope.user_id}_{year}"


def group_pool_key(group_id, category):
    return f"groups/{group_id}/pools/{category}"


def pool_changes(before, after):
    """{album id: entry dict, or None for a removal} between two pool tuples."""
    old = {e.item_id: e for e in before}
    new = {e.item_id: e for e in after}
    changes = {item_id: None for item_id in old if item_id not in new}
    for item_id, entry in new.items():
        if item_id not in old:
            changes[item_id] = entry.to_dict()
    return changes


def _stamp(update, origin, write_id):
    update['updatedAt'] = utc_now().isoformat()
    update['origin'] = origin
    update['writeId'] = write_id
    return update


def ranking_update(context, origin, write_id, ranked=None, pool=None):
    identity = context.identity
    section = {}
    if ranked is not None:
        section['ranked'] = [entry.to_dict() for entry in ranked]
    if pool:
        section['pool'] = pool
    update = {
        'userId':    context.scope.user_id,
        'year':      context.year,
        'username':  identity.display_name if identity else 'Anonymous',
        'avatarUrl': identity.avatar if identity else '',
        category_key(context.category): section,
    }
    if context.scope.is_group:
        update['groupId'] = context.scope.group_id
    return _stamp(update, origin, write_id)


def pool_update(changes, origin, write_id):
    return _stamp({'albums': changes}, origin, write_id)


def _as_list(value):
    # list-shaped fields may come back as {"0": ..., "1": ...}
    if isinstance(value, dict):
        return [value[k] for k in sorted(value, key=lambda k: int(k) if str(k).isdigit() else k)]
    return [v for v in (value or []) if v is not None]


def _parse_pool(value, category):
    if isinstance(value, dict):
        entries = [dict(data, id=data.get('id', item_id)) for item_id, data in value.items() if data]
    else:
        entries = _as_list(value)
    return [PoolEntry.from_dict(data, category) for data in entries]


def parse_ranking_document(document):
    """{category: {'ranked': [RankedEntry], 'pool': [PoolEntry]}} for both categories."""
    document = document or {}
    parsed = {}
    for category in CATEGORIES:
        section = document.get(category_key(category)) or {}
        ranked = [RankedEntry.from_dict(d) for d in _as_list(section.get('ranked'))]
        parsed[category] = {
            'ranked': ranked,
            'pool':   _parse_pool(section.get('pool'), category),
        }
    return parsed


def parse_pool_document(document, category):
    return _parse_pool((document or {}).get('albums'), category)
