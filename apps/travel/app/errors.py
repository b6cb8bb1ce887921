from __future__ import annotations


class SyncError(Exception):
    """Base class for failures raised by the booking synchronization engine."""


class NotFound(SyncError):
    def __init__(self, resource: str, key: object = None):
        self.resource = resource
        self.key = key
        msg = f"{resource} not found" if key is None else f"{resource} {key} not found"
        super().__init__(msg)


class SchemaMismatch(SyncError):
    """
    A target table exists but offers no usable linkage column. Only the
    upsert for that table is abandoned.
    """

    def __init__(self, table: str, detail: str = ""):
        self.table = table
        self.detail = detail
        super().__init__(f"{table}: {detail}" if detail else f"{table}: no usable key column")


class LockTimeout(SyncError):
    def __init__(self, key: str, waited: float = 0.0):
        self.key = key
        self.waited = waited
        super().__init__(f"advisory lock {key!r} not acquired after {waited:.1f}s")


class TransientQueryError(SyncError):
    """A best-effort lookup failed; callers continue with narrower data."""

    def __init__(self, what: str, cause: BaseException | None = None):
        self.what = what
        self.cause = cause
        super().__init__(f"{what}: {cause}" if cause is not None else what)


class PersistenceError(SyncError):
    def __init__(self, table: str, op: str, cause: BaseException | None = None):
        self.table = table
        self.op = op
        self.cause = cause
        super().__init__(f"{op} {table} failed: {cause}" if cause is not None else f"{op} {table} failed")
