"""Exceptions raised across depthwise services and routes."""


class DepthwiseError(Exception):
    """Base exception for depthwise errors."""

    pass


class ProtocolError(DepthwiseError):
    """Raised when a stream frame is written out of order."""

    pass


class ProviderDisabledError(DepthwiseError):
    """Raised when the selected model's provider is not enabled."""

    def __init__(self, provider: str):
        super().__init__(f"Selected provider is not enabled {provider}")
        self.provider = provider


class ForbiddenContextError(DepthwiseError):
    """Raised when chat is invoked from a read-only shared view."""

    pass


class StorageError(DepthwiseError):
    """Raised when the key/value store cannot complete an operation."""

    pass
