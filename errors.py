from typing import Optional


class AppError(Exception):
    """Error with a client-facing message and HTTP status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class ValidationError(AppError):
    def __init__(self, message: str, errors: Optional[object] = None) -> None:
        super().__init__(400, message)
        self.errors = errors


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(401, message)


class NotFoundError(AppError):
    def __init__(self, message: str = "Resource not found") -> None:
        super().__init__(404, message)


class ConflictError(AppError):
    def __init__(self, message: str) -> None:
        super().__init__(409, message)
