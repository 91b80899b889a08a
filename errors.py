# ==========================================================
#                  EXCEPTIONS
# ==========================================================
from flask import jsonify
from sqlalchemy.exc import IntegrityError

from logger import app_logger


class SongSculptorsError(Exception):
    """Base domain exception. `kind` is the stable tag sent to clients."""
    kind = "error"
    status_code = 400

    def __init__(self, message=None, **details):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details = details

    def to_dict(self):
        payload = {"success": False, "error": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(SongSculptorsError):
    kind = "validation_error"
    status_code = 400


class NotFoundError(SongSculptorsError):
    kind = "not_found"
    status_code = 404


class ConflictError(SongSculptorsError):
    kind = "conflict"
    status_code = 409


class StateError(SongSculptorsError):
    kind = "invalid_state"
    status_code = 409


class CooldownActive(StateError):
    kind = "cooldown_active"
    status_code = 429


class DuplicateCommission(ConflictError):
    kind = "duplicate_commission"


class OrderNumberExhausted(ConflictError):
    kind = "order_number_exhausted"


class InsufficientBalance(ValidationError):
    kind = "insufficient_balance"


class BelowMinimumThreshold(ValidationError):
    kind = "below_minimum_threshold"


def register_error_handlers(app):
    """Map domain exceptions onto JSON responses"""

    @app.errorhandler(SongSculptorsError)
    def handle_domain_error(error):
        app_logger.info(f"{error.kind}: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(error):
        from extensions import db
        db.session.rollback()
        app_logger.warning(f"Integrity error surfaced to request: {error.orig}")
        conflict = ConflictError("Record conflicts with existing data")
        return jsonify(conflict.to_dict()), conflict.status_code

    @app.errorhandler(401)
    def unauthorized(error):
        return jsonify({"success": False, "error": "unauthorized", "message": "Authentication required"}), 401

    @app.errorhandler(403)
    def forbidden(error):
        return jsonify({"success": False, "error": "forbidden", "message": "Forbidden"}), 403

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"success": False, "error": "not_found", "message": "Not found"}), 404

    return app
