"""Exception hierarchy for the sorter."""

from __future__ import annotations


class GmsortError(Exception):
    """Base class for every error raised by gmsort."""


class ConfigurationError(GmsortError, ValueError):
    """Invalid or inconsistent configuration, raised when the option is set."""


class PreconditionError(GmsortError, RuntimeError):
    """An operation was called in a state that does not allow it."""


class EmptyTrainingSetError(PreconditionError):
    """Train() was called with nothing in the training reservoir."""


class NotTrainedError(PreconditionError):
    """Classification was requested before a successful training pass."""


class NoSortableChannelsError(PreconditionError):
    """A training pass produced no sortable channel and the caller asked to be told."""


class ArithmeticFailure(GmsortError, ArithmeticError):
    """Numerical kernel failure: singular, degenerate or non-finite input."""


class ChannelFitError(GmsortError, RuntimeError):
    """A mixture model could not be fitted for one channel."""


class TrainingCancelled(GmsortError):
    """The training pass was aborted through its cancellation event."""
