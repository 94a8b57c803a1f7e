from fastapi import status


class SettlementError(Exception):
    code = "internal"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UnauthenticatedError(SettlementError):
    code = "unauthenticated"
    http_status = status.HTTP_401_UNAUTHORIZED


class InvalidArgumentError(SettlementError):
    code = "invalid-argument"
    http_status = status.HTTP_400_BAD_REQUEST


class NotFoundError(SettlementError):
    code = "not-found"
    http_status = status.HTTP_404_NOT_FOUND


class FailedPreconditionError(SettlementError):
    code = "failed-precondition"
    http_status = status.HTTP_412_PRECONDITION_FAILED


class InternalError(SettlementError):
    code = "internal"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable
