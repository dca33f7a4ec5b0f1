from __future__ import annotations


class FlagshipError(Exception):
    """Base error for FlagShip."""


class DatabaseError(FlagshipError):
    """Database layer failure."""


class UsageStoreUnavailableError(DatabaseError):
    """Usage counter storage could not be reached; safe to retry the whole batch."""


class QueueUnavailableError(FlagshipError):
    """Ingestion queue could not accept the job."""


class DeadLetterReplayError(FlagshipError):
    """Dead-lettered ingestion job cannot be replayed in its current state."""


class DeadLetterNotFoundError(DeadLetterReplayError):
    """Dead-lettered ingestion job does not exist."""
