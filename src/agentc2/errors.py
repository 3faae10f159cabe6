"""Exception hierarchy shared by the service layer and the HTTP handlers."""

from __future__ import annotations


class AgentC2Error(Exception):
    """Base error carrying the HTTP status it should surface as."""

    status: int = 500

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status

    def to_dict(self) -> dict[str, object]:
        return {"success": False, "error": self.message}


class ValidationError(AgentC2Error):
    status = 400


class UnauthorizedError(AgentC2Error):
    status = 401


class ForbiddenError(AgentC2Error):
    status = 403


class NotFoundError(AgentC2Error):
    status = 404


class RateLimitedError(AgentC2Error):
    status = 429
