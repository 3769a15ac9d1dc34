"""
Exception taxonomy for the CDC sink
"""

from typing import Dict, List, Optional


class CDCSinkError(Exception):
    """Base class for all CDC sink errors"""


class MalformedEvent(CDCSinkError):
    """
    A change event could not be decoded

    Raised for unparsable key/value payloads, values that do not match the
    declared schema, missing key fields and unknown operation codes.
    """

    def __init__(self, reason: str, destination: Optional[str] = None):
        self.reason = reason
        self.destination = destination
        if destination:
            super().__init__(f"{destination}: {reason}")
        else:
            super().__init__(reason)


class CommitFailure(CDCSinkError):
    """Table store write failed after all retry attempts were exhausted"""

    def __init__(self, table_name: str, attempts: int, cause: Exception):
        self.table_name = table_name
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"{table_name}: commit failed after {attempts} attempt(s) - {cause}")


class SchemaConflict(CDCSinkError):
    """Incoming rows are incompatible with the table schema and cannot be evolved"""

    def __init__(self, table_name: str, unsafe_changes: List[Dict]):
        self.table_name = table_name
        self.unsafe_changes = unsafe_changes
        columns = ", ".join(change['column'] for change in unsafe_changes)
        super().__init__(f"{table_name}: incompatible schema change on column(s) {columns}")
