"""HOA Dues Engine - Account Aggregation and Dues Notice Dispatch.

Builds per-parcel account snapshots from the HOA document collections
(properties, owners, assessments, payments, sales, config), computes the
outstanding dues balance, creates pending dues-notice communications for
every account that owes, and sends them through an outbox-driven dispatch
consumer that marks each record sent exactly once.
"""

from .aggregator import AccountAggregator
from .bulk import AccountFilters, BulkAccountBuilder
from .calculator import calc_total_dues
from .dispatch import DispatchConsumer, DispatchOutcome
from .errors import (
    DeliveryFailure,
    DispatchRecordError,
    DuesEngineError,
    NotFoundError,
    StoreConflictError,
    ThrottledError,
    ValidationFailure,
)
from .models import (
    AccountSnapshot,
    Assessment,
    AssessmentView,
    Communication,
    DispatchEvent,
    DuesTotals,
    MailType,
    Owner,
    Payment,
    Property,
    SentStatus,
)
from .money import Money
from .notices import NoticeGenerator
from .store import InMemoryDocumentStore, PatchOperation, SqliteDocumentStore
from .updates import AccountUpdater, AssessmentUpdate, ConfigUpdate, OwnerPatch, PropertyPatch

__version__ = "1.0.0"

__all__ = [
    "AccountAggregator",
    "AccountFilters",
    "AccountSnapshot",
    "AccountUpdater",
    "Assessment",
    "AssessmentUpdate",
    "AssessmentView",
    "BulkAccountBuilder",
    "Communication",
    "ConfigUpdate",
    "DeliveryFailure",
    "DispatchConsumer",
    "DispatchEvent",
    "DispatchOutcome",
    "DispatchRecordError",
    "DuesEngineError",
    "DuesTotals",
    "InMemoryDocumentStore",
    "MailType",
    "Money",
    "NotFoundError",
    "NoticeGenerator",
    "Owner",
    "OwnerPatch",
    "PatchOperation",
    "Payment",
    "Property",
    "PropertyPatch",
    "SentStatus",
    "SqliteDocumentStore",
    "StoreConflictError",
    "ThrottledError",
    "ValidationFailure",
    "calc_total_dues",
]
