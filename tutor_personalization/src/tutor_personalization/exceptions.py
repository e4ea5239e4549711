"""Exceptions raised by the personalization engine."""


class PersonalizationError(Exception):
    """Base class for personalization engine errors."""


class GenerationError(PersonalizationError):
    """Every configured text-generation provider failed (or none is configured)."""


class ProfileStorageError(PersonalizationError):
    """A user profile could not be loaded from or saved to durable storage."""
