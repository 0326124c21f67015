from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from ranking.errors import CatalogError
from ranking.models import Item, validate_category


class CatalogAdapter(ABC):
    """
    Resolves a free-text query for one year and category into candidate albums.
    Implementations are side-effect free and raise ProviderUnavailable or
    RateLimited when the provider cannot answer.
    """
    name = 'catalog'

    @abstractmethod
    def search(self, query: str, year: int, category: str) -> List[Item]:
        raise NotImplementedError


@dataclass
class SearchOutcome:
    items: List[Item] = field(default_factory=list)
    error: Optional[CatalogError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def safe_search(adapter: CatalogAdapter, query: str, year: int, category: str) -> SearchOutcome:
    """Run a search, turning provider failures into an empty result that still carries the error."""
    validate_category(category)
    try:
        return SearchOutcome(items=adapter.search(query, year, category))
    except CatalogError as e:
        return SearchOutcome(items=[], error=e)
