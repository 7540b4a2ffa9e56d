"""
Error taxonomy shared by the route handlers and the payment orchestrator.

Each error carries the HTTP status it maps to; `main.py` registers one handler
for the whole family.
"""


class StoreError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(StoreError):
    status_code = 400


class Unauthenticated(StoreError):
    status_code = 401


class Forbidden(StoreError):
    status_code = 403


class NotFound(StoreError):
    status_code = 404


class Conflict(StoreError):
    status_code = 400


class UpstreamError(StoreError):
    status_code = 500


class PaymentNotFound(UpstreamError):
    """The provider answered 404 for a payment id."""
    status_code = 404
