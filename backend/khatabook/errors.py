# Overview: Typed domain errors shared by services and routes.

"""
Error taxonomy for the order lifecycle and ledger.

Services raise these; routes render them with error_response(). Ownership
mismatches are reported as NotFoundError so existence is not leaked to
actors outside the order.
"""

from __future__ import annotations

from flask import jsonify


class OrderFlowError(Exception):
    """Base class for refused operations. Carries the HTTP status the route layer returns."""

    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(OrderFlowError):
    """Record missing, or outside the acting user's scope."""

    http_status = 404


class InvalidTransitionError(OrderFlowError):
    """Requested change is not permitted from the current state."""

    http_status = 409


class ForbiddenError(OrderFlowError):
    """Actor lacks the relationship the operation requires (e.g. courier not linked)."""

    http_status = 403


class AlreadyProcessedError(OrderFlowError):
    """Payment already confirmed, or a payment change request already resolved."""

    http_status = 409


class ValidationError(OrderFlowError, ValueError):
    """400-level input problem."""

    http_status = 400


def error_response(exc: OrderFlowError):
    body = {"error": exc.message}
    if exc.details:
        body["details"] = exc.details
    return jsonify(body), exc.http_status
