# Overview: Structured service errors shared by services and routes.

from __future__ import annotations


class ServiceError(Exception):
    """
    Base for user-facing service failures.

    Routes render these as {"error", "code", "details"} with status_code;
    anything that is not a ServiceError is treated as a 500.
    """
    status_code = 400
    default_code = "BAD_REQUEST"

    def __init__(self, message: str, code: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(ServiceError):
    status_code = 404
    default_code = "NOT_FOUND"
