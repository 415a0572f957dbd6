from typing import Optional


class SkoolAdminError(Exception):
    pass


class RemoteError(SkoolAdminError):
    """The backend rejected a request or could not be reached."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class NotFound(SkoolAdminError):
    """A single-row fetch matched no row."""

    def __init__(self, table: str, row_id: str) -> None:
        super().__init__(f"No {table} row with id {row_id!r}")
        self.table = table
        self.row_id = row_id


class ValidationError(SkoolAdminError):
    """A request was malformed and was never sent to the backend."""
