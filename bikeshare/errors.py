"""
Error taxonomy for the ride service.

Every operation raises one of these instead of returning error tuples; the
Flask handler registered in create_app turns them into JSON responses.
"""

import logging

from flask import jsonify

logger = logging.getLogger(__name__)


class BikeShareError(Exception):
    status_code = 400
    error_code = 'BIKESHARE_ERROR'

    def __init__(self, message=None, **details):
        super().__init__(message or self.__class__.__doc__ or self.error_code)
        self.message = message or self.__class__.__doc__ or self.error_code
        self.details = details

    def to_dict(self):
        payload = {'error': self.message, 'error_code': self.error_code}
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(BikeShareError):
    """Invalid input"""
    status_code = 400
    error_code = 'VALIDATION_ERROR'


class InvalidIntervalError(ValidationError):
    """Reservation window must end after it starts"""
    error_code = 'INVALID_INTERVAL'


class NotFoundError(BikeShareError):
    """Resource not found"""
    status_code = 404
    error_code = 'NOT_FOUND'


class ForbiddenError(BikeShareError):
    """Resource belongs to another user"""
    status_code = 403
    error_code = 'FORBIDDEN'


class ConflictError(BikeShareError):
    """Request conflicts with an existing booking"""
    status_code = 409
    error_code = 'CONFLICT'


class IllegalTransitionError(BikeShareError):
    """Transition not allowed from the current state"""
    status_code = 409
    error_code = 'ILLEGAL_TRANSITION'


class AlreadyActiveError(IllegalTransitionError):
    """Reservation is already active"""
    error_code = 'ALREADY_ACTIVE'


class AlreadyCancelledError(IllegalTransitionError):
    """Reservation has been cancelled"""
    error_code = 'ALREADY_CANCELLED'


class InvalidCodeError(BikeShareError):
    """Unlock code or QR payload does not match"""
    status_code = 400
    error_code = 'INVALID_CODE'


class ExpiredChallengeError(BikeShareError):
    """Unlock challenge expired, request a new one"""
    status_code = 410
    error_code = 'CHALLENGE_EXPIRED'


class AmountMismatchError(BikeShareError):
    """Payment amount does not match the ride cost"""
    status_code = 422
    error_code = 'AMOUNT_MISMATCH'


class AlreadySettledError(BikeShareError):
    """Payment was already settled with a different outcome"""
    status_code = 409
    error_code = 'ALREADY_SETTLED'


class InsufficientPointsError(BikeShareError):
    """Insufficient loyalty points"""
    status_code = 402
    error_code = 'INSUFFICIENT_POINTS'


class ExternalServiceError(BikeShareError):
    """Upstream service unavailable, retry later"""
    status_code = 502
    error_code = 'EXTERNAL_SERVICE_ERROR'


# Integrity violations are never silently corrected
_LOGGED_AS_ERROR = (AmountMismatchError, AlreadySettledError)


def register_error_handlers(app):
    @app.errorhandler(BikeShareError)
    def handle_bikeshare_error(exc):
        if isinstance(exc, _LOGGED_AS_ERROR):
            logger.error("%s: %s %s", exc.error_code, exc.message, exc.details)
        elif isinstance(exc, ExternalServiceError):
            logger.warning("%s: %s", exc.error_code, exc.message)
        return jsonify(exc.to_dict()), exc.status_code
