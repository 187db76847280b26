"""Exception types shared by the provider gateway, the match store and the workers."""


class LiveSyncError(Exception):
    """Base class for livesync failures."""


class ProviderError(LiveSyncError):
    """Upstream provider call failed (HTTP error, error body, unusable response)."""


class ProviderRateLimited(ProviderError):
    """Provider kept answering 429 after all retries."""


class PayloadError(LiveSyncError):
    """
    Malformed provider payload for a single item.

    Permanent: the item is skipped and the batch continues.
    """

    def __init__(self, message: str, reason: str = "validation_rejection"):
        super().__init__(message)
        self.reason = reason
