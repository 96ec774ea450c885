"""Error taxonomy for the Everse batch core.

Not-found conditions are raised by lookups and caught by the engine that owns
the affected check. Duplicate inserts are raised by repositories and treated
as benign no-ops by the services.
"""


class BatchError(Exception):
    """Base class for all batch core errors."""


class NotFoundError(BatchError):
    """A required resource does not exist."""

    def __init__(self, resource: str, key: object) -> None:
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} not found: {key}")


class RateTableNotFoundError(NotFoundError):
    """No energy rate row is configured for a country."""

    def __init__(self, country_id: object) -> None:
        super().__init__("EnergyRate", country_id)


class DuplicateRecordError(BatchError):
    """An insert violated a uniqueness constraint."""


class InvalidTimeZoneError(BatchError, ValueError):
    """A tenant's configured time zone is not a known IANA zone."""
