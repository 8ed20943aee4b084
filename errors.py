"""
Club Portal — error taxonomy

Every action boundary in app.py maps these to a status message:

• ValidationError   → bad input, row skipped or 400
• NotFoundError     → expected miss, item aborted or 404
• StoreError        → database collaborator rejected the read/write
• MissingIndexError → StoreError that needs operator action
"""


class PortalError(Exception):
    http_status = 500


class ValidationError(PortalError, ValueError):
    http_status = 400


class NotFoundError(PortalError, LookupError):
    http_status = 404


class PermissionDenied(PortalError):
    http_status = 403


class StoreError(PortalError, RuntimeError):
    http_status = 502


class MissingIndexError(StoreError):
    http_status = 503

    def __init__(self, index_name, table, column):
        self.index_name = index_name
        self.table = table
        self.column = column
        super().__init__(
            f"The query on {table}.{column} requires an index ({index_name})."
        )

    @property
    def guidance(self):
        return (
            f"System notice: this operation requires a one-time index creation. "
            f"Ask the operator to run: CREATE INDEX IF NOT EXISTS {self.index_name} "
            f"ON {self.table} ({self.column})"
        )
