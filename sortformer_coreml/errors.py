class SortformerError(Exception):
    """Base class for errors raised by the streaming Sortformer runtime."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AllocationFailed(SortformerError):
    """A buffer with the requested shape/dtype could not be allocated."""


class ModelLoadFailed(SortformerError):
    """The CoreML model could not be loaded, resolved, downloaded or compiled."""


class InferenceFailed(SortformerError):
    """A single main model call failed or returned incomplete outputs."""
