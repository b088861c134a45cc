from .base import (
    AGENTS_TABLE,
    NOTIFICATIONS_TABLE,
    REGISTRATIONS_TABLE,
    RESPONSE_ID_COLUMN,
    SUBMITTED_AT_COLUMN,
    Datastore,
    DatastoreError,
    fetch_one,
)
from .rest import RestDatastore
from .sql import SqlDatastore

__all__ = [
    "AGENTS_TABLE",
    "NOTIFICATIONS_TABLE",
    "REGISTRATIONS_TABLE",
    "RESPONSE_ID_COLUMN",
    "SUBMITTED_AT_COLUMN",
    "Datastore",
    "DatastoreError",
    "RestDatastore",
    "SqlDatastore",
    "fetch_one",
]
