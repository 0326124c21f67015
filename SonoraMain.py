import argparse
import os
from datetime import datetime

import pandas as pd
from dotenv import load_dotenv

from analytics.community_rankings import CommunityAggregator
from api.catalog import safe_search
from api.itunes_client import ITunesClient
from api.spotify_client import SpotifyClient
from database.db_manager import DatabaseManager
from database.group_store import GroupStore
from database.pool_store import PoolStore
from database.ranking_store import RankingStore
from export.exporters import board_rows, export_rankings_and_summary
from processing.data_cleaner import DataProcessor
from ranking.engine import ReconciliationEngine
from ranking.errors import DuplicateItem, NotSignedIn, RankingError
from ranking.models import CATEGORIES, FRENCH, Identity, RankingContext
from sync.firebase_rest import FirebaseRestBridge
from utilities.helpers import log_message


def load_configuration():
    load_dotenv()
    return {
        'db_dir':         os.getenv('SONORA_DB_DIR', 'database'),
        'db_name':        os.getenv('SONORA_DB_NAME', 'sonora.db'),
        'catalog':        os.getenv('SONORA_CATALOG', 'itunes').lower(),
        'itunes_country': os.getenv('ITUNES_COUNTRY') or None,
        'firebase_url':   os.getenv('FIREBASE_DB_URL') or None,
        'firebase_token': os.getenv('FIREBASE_AUTH_TOKEN') or None,
        'user_id':        os.getenv('SONORA_USER_ID') or None,
        'username':       os.getenv('SONORA_USERNAME') or None,
        'flush_timeout':  float(os.getenv('SONORA_FLUSH_TIMEOUT', '10')),
    }


def build_bridge(config, logger=None):
    # Without a remote database the local SQLite stores are the whole state
    if not config.get('firebase_url'):
        return None
    return FirebaseRestBridge(config['firebase_url'], config.get('firebase_token'), logger=logger)


def build_catalog(config, logger=None):
    if config.get('catalog') == 'spotify':
        return SpotifyClient(logger=logger)
    return ITunesClient(logger=logger, country=config.get('itunes_country'))


class Sonora:
    def __init__(self, config=None, identity=None, bridge=None, catalog=None):
        self.config = config or load_configuration()

        # Core services
        self.database = DatabaseManager(self.config['db_name'], self.config['db_dir'])
        self.pools = PoolStore(self.database)
        self.rankings = RankingStore(self.database)
        self.groups = GroupStore(self.database)
        self.processor = DataProcessor()

        # Remote mirror and catalog are optional collaborators
        self.bridge = bridge if bridge is not None else build_bridge(self.config, self.log)
        self._catalog = catalog
        self.engine = ReconciliationEngine(
            self.pools, self.rankings, self.bridge,
            logger=self.log, on_write_error=self.handle_write_error
        )
        self.community = CommunityAggregator(self.rankings, self.groups)
        self.identity = identity

    @property
    def catalog(self):
        if self._catalog is None:
            self._catalog = build_catalog(self.config, self.log)
        return self._catalog

    def log(self, message):
        log_message(message)

    def context(self, year, category=FRENCH, group_id=None):
        if self.identity is None:
            raise NotSignedIn("No signed-in user: pass --user or set SONORA_USER_ID")
        if group_id and not self.groups.is_member(group_id, self.identity.user_id):
            raise NotSignedIn(f"{self.identity.user_id} is not a member of group {group_id}")
        context = RankingContext.for_identity(self.identity, year, category, group_id)
        self.engine.open(context)
        return context

    def search(self, query, year, category):
        outcome = safe_search(self.catalog, query, year, category)
        if outcome.error is not None:
            self.handle_error("Search failed", outcome.error)
        return outcome

    def import_file(self, context, filepath):
        """Add every album of a CSV/Excel file to the pool; returns (added, skipped)."""
        added, skipped = 0, 0
        for item in self.processor.load_items(filepath, context.year, context.category):
            try:
                self.engine.add_to_pool(context, item)
                added += 1
            except DuplicateItem:
                skipped += 1
        return added, skipped

    def handle_write_error(self, error):
        self.handle_error("Save failed (changes kept locally, retry when back online)", error)

    def handle_error(self, context, error):
        self.log(f"{context}: {error}")

    def shutdown(self):
        if not self.engine.flush(self.config.get('flush_timeout', 10)):
            self.log("Some changes are still being saved")
        self.engine.close()
        if self.bridge is not None:
            self.bridge.close()
        self.database.disconnect()


# ---- command line -------------------------------------------------------

def _print_board(engine, context):
    board = engine.board(context)
    print(f"{context.category} {context.year}: ranked")
    if not board.ranked:
        print("  (nothing ranked yet)")
    for entry in board.ranked:
        print(f"  {entry.rank:>2}. {entry.artist} - {entry.title} [{entry.album_id}]")
    pool = engine.visible_pool(context)
    print(f"{context.category} {context.year}: pool")
    if not pool:
        print("  (search and add albums to your pool)")
    for entry in pool:
        print(f"   - {entry.item.artist} - {entry.item.title} [{entry.item_id}]")


def cmd_search(app, args):
    context = app.context(args.year, args.category, args.group)
    outcome = app.search(args.query, args.year, args.category)
    if outcome.error is not None:
        print(f"Error: {outcome.error}")
        return 1
    if not outcome.items:
        print(f"No {args.category} albums from {args.year} match '{args.query}'")
        return 0
    for idx, item in enumerate(outcome.items, start=1):
        print(f"{idx:>3}. {item.artist} - {item.title} [{item.id}]")
    for pick in args.add or []:
        if not 1 <= pick <= len(outcome.items):
            print(f"Error: no result number {pick}")
            return 1
        item = outcome.items[pick - 1]
        app.engine.add_to_pool(context, item)
        print(f"Added to pool: {item.artist} - {item.title}")
    return 0


def cmd_import(app, args):
    context = app.context(args.year, args.category, args.group)
    added, skipped = app.import_file(context, args.file)
    print(f"Imported {added} albums into the {args.category} pool ({skipped} already there)")
    return 0


def cmd_show(app, args):
    _print_board(app.engine, app.context(args.year, args.category, args.group))
    return 0


def cmd_promote(app, args):
    context = app.context(args.year, args.category, args.group)
    if args.at is None:
        app.engine.promote(context, args.album_id)
    else:
        app.engine.insert_from_pool(context, args.album_id, args.at - 1)
    _print_board(app.engine, context)
    return 0


def cmd_demote(app, args):
    context = app.context(args.year, args.category, args.group)
    app.engine.demote(context, args.album_id)
    _print_board(app.engine, context)
    return 0


def cmd_reorder(app, args):
    context = app.context(args.year, args.category, args.group)
    app.engine.reorder(context, args.album_id, args.position - 1)
    _print_board(app.engine, context)
    return 0


def cmd_move(app, args):
    context = app.context(args.year, args.category, args.group)
    app.engine.move_ranked(context, args.album_id, args.direction)
    _print_board(app.engine, context)
    return 0


def cmd_remove(app, args):
    context = app.context(args.year, args.category, args.group)
    if args.pool:
        app.engine.remove_pooled(context, args.album_id)
    else:
        app.engine.remove_ranked(context, args.album_id)
    _print_board(app.engine, context)
    return 0


def cmd_group(app, args):
    if app.identity is None:
        raise NotSignedIn("No signed-in user: pass --user or set SONORA_USER_ID")
    user_id = app.identity.user_id
    if args.group_command == 'create':
        group = app.groups.create_group(args.name, user_id)
        print(f"Created group '{group.name}' ({group.id}), invite code {group.code}")
    elif args.group_command == 'join':
        group_id = app.groups.join_by_code(args.code, user_id)
        print(f"Joined group {group_id}")
    elif args.group_command == 'leave':
        app.groups.leave_group(args.group_id, user_id)
        print(f"Left group {args.group_id}")
    else:
        groups = app.groups.user_groups(user_id)
        if not groups:
            print("You are not in any group yet")
        for group in groups:
            print(f"{group.name} [{group.id}] code {group.code}, {len(group.members)} members")
    return 0


def cmd_community(app, args):
    rankings = app.community.community_rankings(args.year, args.group)
    df = app.community.to_frame(rankings, args.category)
    if df.empty:
        print(f"No {args.category} rankings saved for {args.year}")
        return 0
    for username, rows in df.groupby('username', sort=True):
        print(f"{username}:")
        for row in rows.itertuples():
            print(f"  {row.rank:>2}. {row.artist} - {row.title}")
    if args.out:
        export_rankings_and_summary(df, app.community.summary(df), args.out)
        print(f"Wrote {args.out}.csv and {args.out}.txt")
    return 0


def cmd_export(app, args):
    rows = []
    for category in CATEGORIES:
        context = app.context(args.year, category, args.group)
        rows += board_rows(app.engine.board(context), category, args.year)
    df = pd.DataFrame(rows, columns=['list', 'rank', 'album_id', 'title', 'artist', 'category', 'year'])
    stats = {
        'Ranked': str(int((df['list'] == 'ranked').sum())),
        'In Pool': str(int((df['list'] == 'pool').sum())),
    }
    export_rankings_and_summary(df, stats, args.out)
    print(f"Wrote {args.out}.csv and {args.out}.txt")
    return 0


def build_parser():
    ap = argparse.ArgumentParser(
        description="Sonora: rank the albums of the year, alone or with a group."
    )
    ap.add_argument("--db-dir", default=None, help="Directory of the local database (overrides SONORA_DB_DIR)")
    ap.add_argument("--user", default=None, help="Signed-in user id (overrides SONORA_USER_ID)")
    ap.add_argument("--name", default=None, help="Display name shown to other members")
    ap.add_argument("--year", type=int, default=datetime.now().year, help="Ranking year (default: current year)")
    ap.add_argument("--category", default=FRENCH, choices=CATEGORIES, help="Album category")
    ap.add_argument("--group", default=None, help="Work inside this group instead of solo")

    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("search", help="Search the catalog")
    p.add_argument("query")
    p.add_argument("--add", type=int, nargs="*", help="Result numbers to add to the pool")
    p.set_defaults(func=cmd_search)

    p = sub.add_parser("import", help="Add albums from a CSV/Excel file to the pool")
    p.add_argument("file")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("show", help="Show the ranking and the visible pool")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("promote", help="Move a pool album into the ranking")
    p.add_argument("album_id")
    p.add_argument("--at", type=int, default=None, help="Rank position to insert at (default: last)")
    p.set_defaults(func=cmd_promote)

    p = sub.add_parser("demote", help="Move a ranked album back to the pool")
    p.add_argument("album_id")
    p.set_defaults(func=cmd_demote)

    p = sub.add_parser("reorder", help="Move a ranked album to a rank position")
    p.add_argument("album_id")
    p.add_argument("position", type=int)
    p.set_defaults(func=cmd_reorder)

    p = sub.add_parser("move", help="Swap a ranked album with its neighbour")
    p.add_argument("album_id")
    p.add_argument("direction", choices=["up", "down"])
    p.set_defaults(func=cmd_move)

    p = sub.add_parser("remove", help="Delete an album from the ranking (or the pool)")
    p.add_argument("album_id")
    p.add_argument("--pool", action="store_true", help="Delete the pool entry instead")
    p.set_defaults(func=cmd_remove)

    p = sub.add_parser("group", help="Manage groups")
    gsub = p.add_subparsers(dest="group_command", required=True)
    g = gsub.add_parser("create")
    g.add_argument("name")
    g = gsub.add_parser("join")
    g.add_argument("code")
    g = gsub.add_parser("leave")
    g.add_argument("group_id")
    gsub.add_parser("list")
    p.set_defaults(func=cmd_group)

    p = sub.add_parser("community", help="Everyone's rankings for the year")
    p.add_argument("--out", default=None, help="Export base path (writes .csv and .txt)")
    p.set_defaults(func=cmd_community)

    p = sub.add_parser("export", help="Export your rankings and pools")
    p.add_argument("out", help="Export base path (writes .csv and .txt)")
    p.set_defaults(func=cmd_export)
    return ap


def main(argv=None, app=None) -> int:
    args = build_parser().parse_args(argv)

    if app is None:
        config = load_configuration()
        if args.db_dir:
            config['db_dir'] = args.db_dir
        user_id = args.user or config.get('user_id')
        identity = None
        if user_id:
            identity = Identity(user_id, args.name or config.get('username') or user_id)
        app = Sonora(config, identity)

    try:
        return args.func(app, args)
    except RankingError as e:
        print(f"Error: {e}")
        return 1
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    finally:
        app.shutdown()


if __name__ == '__main__':
    raise SystemExit(main())
