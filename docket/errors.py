from __future__ import annotations


class SyncError(RuntimeError):
    pass


class AccountConnectionError(SyncError):
    """Authentication or network failure while talking to one account."""


class SyncTimeoutError(AccountConnectionError):
    pass


class ParseError(SyncError):
    pass


class ConflictWriteError(SyncError):
    """The server rejected a conditional write because the object changed."""

    def __init__(self, href: str, expected_etag: str | None) -> None:
        super().__init__(f"Remote object changed since last sync: {href} (expected etag {expected_etag!r})")
        self.href = href
        self.expected_etag = expected_etag


class NotFoundError(SyncError):
    pass
