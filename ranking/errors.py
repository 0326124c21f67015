# ranking/errors.py


class RankingError(Exception):
    """Base class for every error raised by the pool/ranking core."""


class DuplicateItem(RankingError):
    """An item with the same id is already in the pool."""


class NotFound(RankingError):
    pass


class NotInPool(NotFound):
    pass


class NotRanked(NotFound):
    pass


class GroupNotFound(NotFound):
    pass


class DuplicateRank(RankingError):
    """A ranked sequence would contain the same album twice."""


class NotSignedIn(RankingError):
    """Mutations need a signed-in identity."""


class WriteError(RankingError):
    """Persisting a partial update to the remote mirror failed."""

    def __init__(self, message, key=None, update=None):
        super().__init__(message)
        self.key = key
        self.update = update


class CatalogError(RankingError):
    pass


class ProviderUnavailable(CatalogError):
    pass


class RateLimited(CatalogError):
    def __init__(self, message, retry_after=None):
        super().__init__(message)
        self.retry_after = retry_after
