"""Exception hierarchy for the HOA dues engine.

Store adapters, the dispatch consumer and the record updaters raise these;
the calculator and aggregator never catch them.

    DuesEngineError
      |-- NotFoundError          point read / patch against a missing document
      |-- ValidationFailure      malformed input (money strings, form fields)
      |-- StoreConflictError     create on existing key, replace-op on missing field
      |-- ThrottledError         transient store failure, retry with backoff
      |-- DeliveryFailure        email provider reported non-success
      |-- DispatchRecordError    send succeeded but the record update did not
"""

from __future__ import annotations


class DuesEngineError(Exception):
    """Base class for every error raised by hoa_dues."""


class NotFoundError(DuesEngineError):
    """A document lookup by (collection, id, partition) found nothing."""

    def __init__(self, collection: str, key: str, partition_key: str | None = None) -> None:
        self.collection = collection
        self.key = key
        self.partition_key = partition_key
        where = f" in partition {partition_key!r}" if partition_key is not None else ""
        super().__init__(f"{collection}: document {key!r} not found{where}")


class ValidationFailure(DuesEngineError, ValueError):
    """Input could not be parsed into a valid value."""

    def __init__(self, message: str, field_name: str = "") -> None:
        self.field_name = field_name
        super().__init__(f"{field_name}: {message}" if field_name else message)


class StoreConflictError(DuesEngineError):
    """A write conflicted with the current state of the document."""


class ThrottledError(DuesEngineError):
    """The store is busy; the caller should retry later."""

    retryable = True


class DeliveryFailure(DuesEngineError):
    """The email provider did not confirm a successful send."""

    retryable = True

    def __init__(self, message: str, event: dict | None = None) -> None:
        self.event = event or {}
        super().__init__(message)


class DispatchRecordError(DuesEngineError):
    """The email went out but marking the record as sent failed.

    Retrying the event will email the recipient a second time.
    """

    retryable = False

    def __init__(self, message: str, event: dict | None = None, message_id: str = "") -> None:
        self.event = event or {}
        self.message_id = message_id
        super().__init__(message)
