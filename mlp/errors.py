"""Typed error kinds raised by the entity engine.

Services raise these; the HTTP boundary maps each kind to a stable
message/hint pair and a status code via ERROR_RESPONSES.
"""

from enum import StrEnum
from typing import NamedTuple


class ErrorKind(StrEnum):
    UNKNOWN_ENTITY_TYPE = "unknownEntityType"
    NOT_FOUND = "notFound"
    INVALID_REQUEST = "invalidRequest"
    INVALID_MOVE = "invalidMove"
    RESTRICTED_BY_COMPARISONS = "restrictedByComparisons"
    FOREIGN_KEY_VIOLATION = "foreignKeyViolation"
    SCHEMA_MISMATCH = "schemaMismatch"
    DATA_INTEGRITY = "dataIntegrity"
    DATABASE_ERROR = "dbError"


class EngineError(Exception):
    """Base class for every error the engine surfaces to callers."""

    kind: ErrorKind = ErrorKind.DATABASE_ERROR


class UnknownEntityTypeError(EngineError):
    kind = ErrorKind.UNKNOWN_ENTITY_TYPE

    def __init__(self, type_name: str) -> None:
        self.type_name = type_name
        super().__init__(f"Unknown entity type: {type_name}")


class NotFoundError(EngineError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, node_id: int | None, expected_type: str | None = None) -> None:
        self.node_id = node_id
        self.expected_type = expected_type
        if expected_type:
            super().__init__(f"Node not found: {node_id} ({expected_type})")
        else:
            super().__init__(f"Node not found: {node_id}")


class InvalidRequestError(EngineError):
    kind = ErrorKind.INVALID_REQUEST


class InvalidMoveError(EngineError):
    kind = ErrorKind.INVALID_MOVE


class RestrictedByComparisonsError(EngineError):
    kind = ErrorKind.RESTRICTED_BY_COMPARISONS

    def __init__(self, node_id: int, count: int) -> None:
        self.node_id = node_id
        self.count = count
        super().__init__(f"Node {node_id} anchors {count} comparison(s)")


class ForeignKeyViolationError(EngineError):
    kind = ErrorKind.FOREIGN_KEY_VIOLATION


class SchemaMismatchError(EngineError):
    kind = ErrorKind.SCHEMA_MISMATCH


class DataIntegrityError(EngineError):
    kind = ErrorKind.DATA_INTEGRITY


class DatabaseError(EngineError):
    kind = ErrorKind.DATABASE_ERROR


_ERRORS_BY_KIND: dict[ErrorKind, type[EngineError]] = {
    cls.kind: cls
    for cls in (
        UnknownEntityTypeError,
        NotFoundError,
        InvalidRequestError,
        InvalidMoveError,
        RestrictedByComparisonsError,
        ForeignKeyViolationError,
        SchemaMismatchError,
        DataIntegrityError,
        DatabaseError,
    )
}


def error_class(kind: ErrorKind) -> type[EngineError]:
    """Return the exception class raised for an error kind."""
    return _ERRORS_BY_KIND[kind]


# ---------------------------------------------------------------------------
# Boundary messages
# ---------------------------------------------------------------------------


class ErrorResponse(NamedTuple):
    msg: str
    hint: str
    status: int


ERROR_RESPONSES: dict[ErrorKind, ErrorResponse] = {
    ErrorKind.UNKNOWN_ENTITY_TYPE: ErrorResponse(
        msg="Requested item type does not exist.",
        hint="No schema is registered for the requested entity type.",
        status=404,
    ),
    ErrorKind.NOT_FOUND: ErrorResponse(
        msg="Record not found!",
        hint="Record is missing in database. Likely an incorrect identifier.",
        status=404,
    ),
    ErrorKind.INVALID_REQUEST: ErrorResponse(
        msg="Request is invalid.",
        hint="The request data is malformed.",
        status=422,
    ),
    ErrorKind.INVALID_MOVE: ErrorResponse(
        msg="Item cannot be moved to this owner.",
        hint="Captures can only be moved to restricted nodes.",
        status=422,
    ),
    ErrorKind.RESTRICTED_BY_COMPARISONS: ErrorResponse(
        msg="Deselect any comparisons before moving this capture to a new owner.",
        hint="Captures can only be moved if no comparisons exist.",
        status=422,
    ),
    ErrorKind.FOREIGN_KEY_VIOLATION: ErrorResponse(
        msg="An error occurred. This operation is not permitted.",
        hint="Update to node data violates node relation restrictions.",
        status=422,
    ),
    ErrorKind.SCHEMA_MISMATCH: ErrorResponse(
        msg="Input data does not match model schema.",
        hint="Persisted data does not fit the current schema for this entity type.",
        status=500,
    ),
    ErrorKind.DATA_INTEGRITY: ErrorResponse(
        msg="Your request could not be completed. Contact the site administrator for assistance.",
        hint="Owner chain exceeds the maximum tree depth (possible cycle).",
        status=500,
    ),
    ErrorKind.DATABASE_ERROR: ErrorResponse(
        msg="Database error has occurred. Please contact the site administrator",
        hint="Database failed to complete transaction.",
        status=500,
    ),
}
