import hashlib
import os
import re
from html import unescape

import pandas as pd

from ranking.models import Item


class DataProcessor:
    def clean_text(self, value):
        """Clean individual values, preserving quotes and decoding entities."""
        # Handle missing or NaN values
        try:
            if value is None or pd.isna(value):
                return ''
        except (TypeError, ValueError):
            pass

        # Convert to string and decode HTML entities
        text = str(value)
        prev = None
        while text != prev:
            prev = text
            text = unescape(text)
        # Strip control chars
        text = re.sub(r'[\x00-\x1f\x7f-\x9f]', '', text)
        return text.strip()

    def release_year(self, value):
        """Year from '2024-05-17T07:00:00Z', '2024', 2024.0 and friends; None if absent."""
        text = self.clean_text(value)
        match = re.match(r'^(\d{4})', text)
        return int(match.group(1)) if match else None

    def simplified_title(self, title):
        # "Album (Deluxe Edition)" and "Album" are the same record
        return self.clean_text(title).lower().split('(')[0].strip()

    def dedupe_key(self, item):
        return f"{self.simplified_title(item.title)}-{self.clean_text(item.artist).lower()}"

    def dedupe_albums(self, items):
        """Keep the first of each near-identical album (explicit/clean/deluxe variants)."""
        seen = set()
        unique = []
        for item in items:
            key = self.dedupe_key(item)
            if key in seen:
                continue
            seen.add(key)
            unique.append(item)
        return unique

    def make_item_id(self, artist, title):
        """Stable content key for albums that come without a provider id."""
        basis = f"{self.clean_text(artist).lower()}|{self.simplified_title(title)}"
        return 'local-' + hashlib.sha1(basis.encode('utf-8')).hexdigest()[:16]

    def upgrade_artwork(self, url):
        # providers return 100x100 thumbnails; the same path serves 600x600
        if not url:
            return ''
        return url.replace('100x100bb', '600x600bb')

    def load_items(self, filepath, year, category):
        """
        Load albums from CSV or Excel into Items for the given year/category:
         • needs 'artist' and 'album' (or 'title') columns, any case
         • optional 'id', 'year', 'cover' columns
        Rows released in another year are skipped; near-duplicates are dropped.
        """
        ext = os.path.splitext(filepath)[1].lower()
        if ext == '.csv':
            df = pd.read_csv(filepath, quotechar='"', dtype=str)
        elif ext in ('.xls', '.xlsx'):
            df = pd.read_excel(filepath, dtype=str)
        else:
            raise ValueError(f"Unsupported file type: {ext}")

        # Normalize header names
        df.columns = df.columns.str.strip()
        cols_lc = {col.lower(): col for col in df.columns}
        title_col = cols_lc.get('album') or cols_lc.get('title')
        artist_col = cols_lc.get('artist')
        if not title_col or not artist_col:
            raise ValueError("File must have 'artist' and 'album' (or 'title') columns")

        items = []
        for rec in df.to_dict(orient='records'):
            artist = self.clean_text(rec.get(artist_col))
            title = self.clean_text(rec.get(title_col))
            if not artist or not title:
                continue
            rec_year = self.release_year(rec.get(cols_lc['year'])) if 'year' in cols_lc else None
            if rec_year is not None and rec_year != year:
                continue
            item_id = self.clean_text(rec.get(cols_lc['id'])) if 'id' in cols_lc else ''
            cover = self.clean_text(rec.get(cols_lc['cover'])) if 'cover' in cols_lc else ''
            items.append(Item(
                id=item_id or self.make_item_id(artist, title),
                title=title,
                artist=artist,
                release_year=rec_year or year,
                cover_ref=cover,
                category=category,
            ))
        return self.dedupe_albums(items)
