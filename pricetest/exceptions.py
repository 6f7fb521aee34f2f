"""
Error taxonomy shared by the price testing core and the API layer.
"""


class PriceTestError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(PriceTestError):
    """A test configuration is not launchable (split, control flag, prices...)."""


class InsufficientDataError(PriceTestError):
    """A comparison group has no visitors, so no statistic can be computed."""


class UnknownRuleError(PriceTestError):
    """An automation rule names a condition or action type we do not know."""


class AssignmentError(PriceTestError):
    """Variations or traffic split are empty or malformed."""


class ConcurrentUpdateError(PriceTestError):
    """The stored test changed between read and write (version mismatch)."""
