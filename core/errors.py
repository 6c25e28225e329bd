"""Error taxonomy shared by the domain services.

Expected outcomes (duplicate like, premium required, already joined) are
result values returned by the services. The exceptions here cover the cases a
caller cannot act on in-band.
"""

from fastapi import HTTPException, status


class ServiceError(Exception):
    code = "service_error"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class TransientStoreError(ServiceError):
    """The backing store could not complete a write. Nothing was persisted."""

    code = "store_unavailable"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class MalformedRowError(ServiceError):
    """A row or change payload did not have the expected shape."""

    code = "malformed_row"


class InvalidOperation(ServiceError):
    code = "invalid_operation"
    http_status = status.HTTP_400_BAD_REQUEST


class NotFound(ServiceError):
    code = "not_found"
    http_status = status.HTTP_404_NOT_FOUND


class Forbidden(ServiceError):
    code = "forbidden"
    http_status = status.HTTP_403_FORBIDDEN


class PremiumRequired(Forbidden):
    code = "premium_required"


def to_http_exception(exc: ServiceError) -> HTTPException:
    # Fatal errors get a generic notice; details stay in the logs.
    message = exc.message if exc.http_status < 500 or exc.retryable else "Something went wrong"
    return HTTPException(
        status_code=exc.http_status,
        detail={"code": exc.code, "message": message, "retryable": exc.retryable},
    )
