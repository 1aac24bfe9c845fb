"""
Error taxonomy. Every error carries the HTTP status it is rendered with;
main.py turns them into `{"error": message}` bodies.
"""


class StoreError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StoreError):
    status_code = 400


class Unauthorized(StoreError):
    status_code = 401


class Forbidden(StoreError):
    status_code = 403


class NotFound(StoreError):
    status_code = 404


class InsufficientStock(StoreError):
    status_code = 400


class InvalidTransition(StoreError):
    status_code = 400


class InvalidValue(StoreError):
    status_code = 400


class UpstreamFailure(StoreError):
    status_code = 502
