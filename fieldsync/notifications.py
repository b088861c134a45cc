from __future__ import annotations

import logging
from typing import Protocol

from .datastores.base import NOTIFICATIONS_TABLE, Datastore


logger = logging.getLogger("fieldsync.notifications")

SYNC_FAILURE_TYPE = "SYNC_FAILURE"


class NotificationSink(Protocol):
    def notify_sync_failure(
        self,
        agent_id: str,
        customer_name: str,
        related_id: str | None,
        error_message: str | None,
    ) -> None: ...


def sync_failure_message(customer_name: str, error_message: str | None) -> str:
    tail = f"Error: {error_message}" if error_message else "Please try again."
    return f"Failed to sync registration for '{customer_name}' to Microsoft Forms. {tail}"


class DatastoreNotificationSink:
    """Writes failure notices into the agent's notifications collection."""

    def __init__(self, datastore: Datastore) -> None:
        self.datastore = datastore

    def notify_sync_failure(
        self,
        agent_id: str,
        customer_name: str,
        related_id: str | None,
        error_message: str | None,
    ) -> None:
        self.datastore.insert(
            NOTIFICATIONS_TABLE,
            {
                "agent_id": agent_id,
                "type": SYNC_FAILURE_TYPE,
                "title": "Sync Failed",
                "message": sync_failure_message(customer_name, error_message),
                "related_id": related_id,
                "metadata": {
                    "customerName": customer_name,
                    "error": error_message,
                    "registrationId": related_id,
                },
            },
        )
        logger.info(
            "sync failure notification created",
            extra={"fields": {"agent_id": agent_id, "related_id": related_id}},
        )


def notify_safely(
    sink: NotificationSink | None,
    *,
    agent_id: str,
    customer_name: str,
    related_id: str | None,
    error_message: str | None,
) -> bool:
    """Best-effort delivery: notification failures never affect the sync outcome."""

    if sink is None:
        return False
    try:
        sink.notify_sync_failure(agent_id, customer_name, related_id, error_message)
    except Exception:
        logger.exception("failed to create sync failure notification")
        return False
    return True
