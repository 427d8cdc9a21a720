class LedgerError(Exception):
    """Base class for every failure raised by the ledger core."""


class ValidationError(LedgerError, ValueError):
    pass


class NothingToUpdateError(ValidationError):
    def __init__(self, message: str = "nothing to update") -> None:
        super().__init__(message)


class RangeRequiredError(ValidationError):
    def __init__(
        self, message: str = "start and end dates required for custom period"
    ) -> None:
        super().__init__(message)


class NotFoundError(LedgerError, LookupError):
    pass


class NoBudgetConfigured(NotFoundError):
    def __init__(self, category: str) -> None:
        super().__init__(f"No budget configured for category '{category}'")
        self.category = category


class AlreadyExistsError(LedgerError):
    pass


class StoreError(LedgerError):
    """Persistence failure: unreachable store, disk error or constraint violation."""
