import os
import time

import requests
from dotenv import load_dotenv

from api.catalog import CatalogAdapter
from processing.data_cleaner import DataProcessor
from ranking.errors import ProviderUnavailable, RateLimited
from ranking.models import Item
from utilities.helpers import log_message

TOKEN_URL = 'https://accounts.spotify.com/api/token'
SEARCH_URL = 'https://api.spotify.com/v1/search'
TOKEN_MARGIN = 300


class SpotifyClient(CatalogAdapter):
    name = 'spotify'

    def __init__(self, client_id=None, client_secret=None, session=None, logger=None,
                 limit=20, timeout=10, clock=time.time):
        """
        logger: function taking a single string argument for logging (e.g. log_message)
        """
        load_dotenv()
        self.client_id = client_id or os.getenv('SPOTIFY_CLIENT_ID')
        self.client_secret = client_secret or os.getenv('SPOTIFY_CLIENT_SECRET')
        if not self.client_id or not self.client_secret:
            raise RuntimeError("Missing Spotify credentials in .env")
        self.session = session or requests.Session()
        self.logger = logger or log_message
        self.limit = limit
        self.timeout = timeout
        self.clock = clock
        self.processor = DataProcessor()
        self._token = None
        self._expires_at = 0.0

    def access_token(self):
        """Client-credentials token, reused until five minutes before it expires."""
        if self._token and self._expires_at > self.clock():
            return self._token
        try:
            r = self.session.post(
                TOKEN_URL,
                data={'grant_type': 'client_credentials'},
                auth=(self.client_id, self.client_secret),
                timeout=self.timeout,
            )
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as e:
            self._token = None
            raise ProviderUnavailable(f"Could not authenticate with Spotify: {e}") from e

        self._token = data['access_token']
        self._expires_at = self.clock() + int(data.get('expires_in', 3600)) - TOKEN_MARGIN
        return self._token

    def invalidate_token(self):
        self._token = None
        self._expires_at = 0.0

    def search(self, query, year, category):
        if not query or not query.strip():
            return []

        r = self._get_search(query, year)
        if r.status_code == 401:
            # expired or revoked token: authenticate again, once
            self.logger("Spotify token rejected, re-authenticating")
            self.invalidate_token()
            r = self._get_search(query, year)

        if r.status_code == 429:
            raise RateLimited("Spotify rate limit reached", retry_after=r.headers.get('Retry-After'))
        if r.status_code >= 400:
            raise ProviderUnavailable(f"Spotify search failed with HTTP {r.status_code}")

        try:
            albums = r.json().get('albums', {}).get('items', [])
        except ValueError as e:
            raise ProviderUnavailable("Spotify returned an unreadable response") from e

        items = [self.to_item(a, category) for a in albums if a and a.get('album_type') == 'album']
        return self.processor.dedupe_albums(items)

    def _get_search(self, query, year):
        params = {'q': f"{query.strip()} year:{year}", 'type': 'album', 'limit': self.limit}
        headers = {'Authorization': f"Bearer {self.access_token()}"}
        try:
            return self.session.get(SEARCH_URL, headers=headers, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise ProviderUnavailable(f"Spotify search failed: {e}") from e

    def to_item(self, album, category):
        images = album.get('images') or []
        return Item(
            id=album['id'],
            title=self.processor.clean_text(album.get('name')),
            artist=', '.join(a.get('name', '') for a in album.get('artists') or []),
            release_year=self.processor.release_year(album.get('release_date')),
            cover_ref=images[0].get('url', '') if images else '',
            category=category,
        )
