"""
Error taxonomy shared by the crud layer and the HTTP handlers.

Crud functions raise these; `register_error_handlers` turns them into
`{"error": ..., "details": ...}` JSON bodies with the matching status code.
"""

import logging

from flask import jsonify
from pydantic import ValidationError
from sqlalchemy.exc import DBAPIError, DisconnectionError, SQLAlchemyError
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)

DATABASE_UNAVAILABLE_MESSAGE = (
    "Unable to connect to the database. Please check your database connection and try again."
)

_CONNECTION_MESSAGES = (
    "can't reach database server",
    "could not connect to server",
    "connection refused",
    "connect econnrefused",
    "connection timeout",
    "server closed the connection",
    "unable to open database file",
)


class ChambersError(Exception):
    status_code = 500

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        body = {'error': self.message}
        if self.details is not None:
            body['details'] = self.details
        return body


class ValidationFailed(ChambersError):
    status_code = 400


class BusinessRuleViolation(ChambersError):
    status_code = 400


class Unauthorized(ChambersError):
    status_code = 401


class Forbidden(ChambersError):
    status_code = 403


class NotFound(ChambersError):
    status_code = 404


class Conflict(ChambersError):
    status_code = 409


class ServiceUnavailable(ChambersError):
    status_code = 503


def is_database_connection_error(error):
    """True when the error means the database could not be reached at all"""
    if isinstance(error, DisconnectionError):
        return True
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    message = str(error).lower() if error else ''
    return any(fragment in message for fragment in _CONNECTION_MESSAGES)


def validation_details(error):
    """Field-level detail list from a pydantic ValidationError"""
    return [
        {
            'field': '.'.join(str(part) for part in err['loc']),
            'message': err['msg'],
            'type': err['type'],
        }
        for err in error.errors()
    ]


def register_error_handlers(app):

    @app.errorhandler(ChambersError)
    def handle_chambers_error(error):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(ValidationError)
    def handle_validation_error(error):
        return jsonify({'error': 'Invalid input', 'details': validation_details(error)}), 400

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(error):
        from chambers import db
        db.session.rollback()
        if is_database_connection_error(error):
            logger.error(f"Database connection error: {error}")
            return jsonify({'error': 'Database connection error', 'message': DATABASE_UNAVAILABLE_MESSAGE}), 503
        logger.error(f"Database error: {error}")
        return jsonify({'error': 'Internal server error', 'message': str(error)}), 500

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        if isinstance(error, HTTPException):
            return jsonify({'error': error.description}), error.code
        logger.error(f"Unhandled error: {error}", exc_info=True)
        return jsonify({'error': 'Internal server error', 'message': str(error)}), 500
