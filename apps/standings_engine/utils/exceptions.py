"""
Error taxonomy shared by every engine component.
"""


class EngineError(Exception):
    """Base class for engine errors."""


class InputError(EngineError):
    """Malformed match input, e.g. a finished match without a valid score."""


class IntegrityError(EngineError):
    """Broken standings arithmetic, drift, or duplicate rows."""


class ReferentialError(EngineError):
    """Reference to a participant, league, or season that does not exist."""


class ConcurrencyError(EngineError):
    """The migration lock is held by someone else."""


class ChecksumError(EngineError):
    """Snapshot payload does not match its recorded checksum."""


class CapacityError(EngineError):
    """An operation exceeded its size-proportional time budget."""


class PreflightError(EngineError):
    """A migration prerequisite is missing; nothing was touched."""


class StateTransitionError(EngineError):
    """Illegal migration state transition."""


class SnapshotNotFoundError(EngineError):
    """No snapshot artifacts exist for the requested id."""
