"""OMCM exceptions.

Only explicit setter validation raises; persisted-state problems never do.
"""


class OmcmError(Exception):
    """Base class for OMCM errors."""


class InvalidTierError(OmcmError, ValueError):
    """Unknown Gemini quota tier passed to a setter."""
