"""
Errors raised by the relief engine.

Each error carries the HTTP status the API answers with and a free-form
`detail` mapping with whatever the caller needs to render a message.
"""

from typing import Any, Dict


class ReliefError(Exception):
    status_code = 400

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = detail

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "message": self.message,
            "code": self.code,
            "detail": self.detail,
        }


class NotFound(ReliefError):
    status_code = 404


class InvalidTransition(ReliefError):
    status_code = 409


class InsufficientInventory(ReliefError):
    status_code = 409


class ActiveAllocationsExist(ReliefError):
    status_code = 409


class ValidationError(ReliefError):
    status_code = 422


class Unauthorized(ReliefError):
    status_code = 401


class Forbidden(ReliefError):
    status_code = 403
