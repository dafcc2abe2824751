class AppError(ValueError):
    status_code = 400


class BadRequestError(AppError):
    status_code = 400


class InsufficientFundsError(BadRequestError):
    pass


class AlreadyDeletedError(BadRequestError):
    pass


class NotDeletedError(BadRequestError):
    pass


class InvalidOperationError(BadRequestError):
    pass


class NotFoundError(AppError):
    status_code = 404


class UnauthorizedError(AppError):
    status_code = 401


class ForbiddenError(AppError):
    status_code = 403


class ConflictError(AppError):
    status_code = 409
