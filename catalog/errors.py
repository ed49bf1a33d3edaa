# catalog/errors.py
"""Error taxonomy raised by the catalog service.

Every error carries a `kind` (what went wrong, for callers that branch on it),
a machine `code` and a human message. The HTTP adapter maps kinds to status
codes; nothing in the service layer knows about HTTP.
"""
from contextlib import contextmanager
from enum import Enum
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from .utils import get_logger

logger = get_logger("catalog.errors")


class ErrorKind(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    VALIDATION = "VALIDATION"
    INCOMPLETE_PROPERTY = "INCOMPLETE_PROPERTY"
    NO_IMAGES = "NO_IMAGES"
    LISTING_LIMIT_REACHED = "LISTING_LIMIT_REACHED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    INTERNAL = "INTERNAL"


STATUS_CODES = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.VALIDATION: 400,
    ErrorKind.INCOMPLETE_PROPERTY: 400,
    ErrorKind.NO_IMAGES: 400,
    ErrorKind.LISTING_LIMIT_REACHED: 402,
    ErrorKind.STORE_UNAVAILABLE: 503,
    ErrorKind.INTERNAL: 500,
}


class CatalogError(Exception):
    kind = ErrorKind.INTERNAL
    code = "INTERNAL_ERROR"
    default_message = "Internal error"

    def __init__(self, message=None, code=None, details=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        if code:
            self.code = code
        self.details = details

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.kind]

    def to_dict(self):
        body = {"code": self.code, "kind": self.kind.value, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(CatalogError):
    kind = ErrorKind.NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Property not found"


class ForbiddenError(CatalogError):
    kind = ErrorKind.FORBIDDEN
    code = "FORBIDDEN"
    default_message = "Access denied"


class ValidationError(CatalogError):
    kind = ErrorKind.VALIDATION
    code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class InvalidTransitionError(ValidationError):
    code = "INVALID_TRANSITION"
    default_message = "Transition not allowed from the current status"


class IncompletePropertyError(CatalogError):
    kind = ErrorKind.INCOMPLETE_PROPERTY
    code = "INCOMPLETE_PROPERTY"
    default_message = "Property is missing required fields"


class NoImagesError(CatalogError):
    kind = ErrorKind.NO_IMAGES
    code = "NO_IMAGES"
    default_message = "At least one property image is required"


class ListingLimitError(CatalogError):
    kind = ErrorKind.LISTING_LIMIT_REACHED
    code = "LISTING_LIMIT_REACHED"
    default_message = "Listing limit reached"


class StoreUnavailableError(CatalogError):
    kind = ErrorKind.STORE_UNAVAILABLE
    code = "STORE_UNAVAILABLE"
    default_message = "Storage is temporarily unavailable"


class InternalError(CatalogError):
    pass


@contextmanager
def store_errors(db: Session = None):
    """Translate SQLAlchemy failures into catalog errors, rolling back `db`."""
    try:
        yield
    except CatalogError:
        raise
    except (OperationalError, InterfaceError, DisconnectionError) as e:
        if db is not None:
            db.rollback()
        logger.error("Store unavailable: %s", e)
        raise StoreUnavailableError() from e
    except SQLAlchemyError as e:
        if db is not None:
            db.rollback()
        logger.exception("Store error: %s", e)
        raise InternalError() from e
