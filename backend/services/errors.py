"""
Exception types raised by the payment engine.

  PaymentError
    ├── InvalidArgument        bad input, rejected before any computation/write
    ├── NotFound               referenced record does not exist
    ├── DataIntegrityError     a stored record violates the paid/amount pairing
    └── PersistenceError       storage read/write failed
          └── ConcurrentUpdateError   compare-and-swap lost; nothing changed

PersistenceError.partial distinguishes "nothing changed" (False) from
"the store reported success but the record is half-written" (True).
"""


class PaymentError(Exception):
    """Base class for all payment engine errors."""


class InvalidArgument(PaymentError, ValueError):
    pass


class NotFound(PaymentError, LookupError):
    def __init__(self, record_type: str, record_id: str):
        self.record_type = record_type
        self.record_id = record_id
        super().__init__(f"{record_type} not found: {record_id}")


class DataIntegrityError(PaymentError):
    def __init__(self, message: str, record_id: str | None = None):
        self.record_id = record_id
        super().__init__(message)


class PersistenceError(PaymentError):
    def __init__(self, message: str, partial: bool = False):
        self.partial = partial
        super().__init__(message)


class ConcurrentUpdateError(PersistenceError):
    def __init__(self, message: str):
        super().__init__(message, partial=False)
