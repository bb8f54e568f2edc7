from typing import Optional


class ServiceError(Exception):
    """Base class for errors raised by the workflow engines.

    ``message`` is safe to show to the caller, ``error`` is a short machine
    readable label. The HTTP layer renders both as ``{"message", "error"}``.
    """

    status_code = 500
    error = "server_error"

    def __init__(self, message: str, error: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error:
            self.error = error


class ValidationError(ServiceError):
    status_code = 400
    error = "validation_error"


class NotFoundError(ServiceError):
    status_code = 404
    error = "not_found"


class InsufficientStockError(ServiceError):
    status_code = 400
    error = "insufficient_stock"


class VoucherExhaustedError(ServiceError):
    status_code = 400
    error = "voucher_unavailable"


class SignatureMismatchError(ServiceError):
    status_code = 400
    error = "signature_mismatch"


class TransientStoreError(ServiceError):
    status_code = 500
    error = "store_unavailable"

    def __init__(self, message: str = "Server error", error: Optional[str] = None):
        super().__init__(message, error)
