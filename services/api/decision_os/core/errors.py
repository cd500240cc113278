class LedgerError(Exception):
    """Base class for storage-boundary failures."""


class AppendOnlyViolationError(LedgerError):
    """Raised when an UPDATE or DELETE reaches an append-only table."""

    def __init__(self, table: str, operation: str):
        self.table = table
        self.operation = operation
        super().__init__(f"{table} is append-only; {operation} rejected")


class DuplicateEventError(LedgerError):
    """Raised when a natural idempotency key is inserted twice."""

    def __init__(self, dedupe_key: str):
        self.dedupe_key = dedupe_key
        super().__init__(f"Event with dedupe key '{dedupe_key}' already exists")


class EventNotFoundError(LedgerError):
    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Decision event '{event_id}' not found")
