from __future__ import annotations


class RentalOpsError(RuntimeError):
    pass


class RentalValidationError(RentalOpsError):
    pass


class InvalidStateError(RentalOpsError):
    pass


class NotFoundError(RentalOpsError):
    pass


class AuthenticationError(RentalOpsError):
    pass


class NotAvailableError(RentalOpsError):
    pass
