import requests

from api.catalog import CatalogAdapter
from processing.data_cleaner import DataProcessor
from ranking.errors import ProviderUnavailable, RateLimited
from ranking.models import Item
from utilities.helpers import log_message

SEARCH_URL = 'https://itunes.apple.com/search'


class ITunesClient(CatalogAdapter):
    name = 'itunes'

    def __init__(self, session=None, logger=None, country=None, limit=200, timeout=10):
        """
        logger: function taking a single string argument for logging (e.g. log_message)
        """
        self.session = session or requests.Session()
        self.logger = logger or log_message
        self.country = country
        # a wide net; the year filter below throws most of it away
        self.limit = limit
        self.timeout = timeout
        self.processor = DataProcessor()

    def _headers(self):
        return {
            'User-Agent': 'Sonora/1.0',
            'Accept':     'application/json',
        }

    def search(self, query, year, category):
        """Search albums, keep those released in `year`, drop singles and near-duplicates."""
        if not query or not query.strip():
            return []

        params = {'term': query.strip(), 'entity': 'album', 'limit': self.limit}
        if self.country:
            params['country'] = self.country

        try:
            r = self.session.get(SEARCH_URL, headers=self._headers(), params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise ProviderUnavailable(f"iTunes search failed: {e}") from e

        # iTunes answers 403 once the per-minute quota is used up
        if r.status_code in (403, 429):
            raise RateLimited("iTunes rate limit reached", retry_after=r.headers.get('Retry-After'))
        if r.status_code >= 400:
            raise ProviderUnavailable(f"iTunes search failed with HTTP {r.status_code}")

        try:
            results = r.json().get('results', [])
        except ValueError as e:
            raise ProviderUnavailable("iTunes returned an unreadable response") from e

        items = [self.to_item(res, category) for res in results if self.keep_result(res, year)]
        unique = self.processor.dedupe_albums(items)
        if not unique:
            self.logger(f"No iTunes albums from {year} found for '{query}'")
        return unique

    def keep_result(self, result, year):
        if self.processor.release_year(result.get('releaseDate')) != year:
            return False
        name = (result.get('collectionName') or '').lower()
        if ' - single' in name:
            return False
        # one track is almost always a single; EPs and albums stay
        if result.get('trackCount') == 1:
            return False
        return bool(result.get('collectionId'))

    def to_item(self, result, category):
        return Item(
            id=str(result['collectionId']),
            title=self.processor.clean_text(result.get('collectionName')),
            artist=self.processor.clean_text(result.get('artistName')),
            release_year=self.processor.release_year(result.get('releaseDate')),
            cover_ref=self.processor.upgrade_artwork(result.get('artworkUrl100')),
            # iTunes has no notion of language; the item takes the category it was searched in
            category=category,
        )
