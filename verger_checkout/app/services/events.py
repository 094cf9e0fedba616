# app/services/events.py
"""Append-only journal of verified processor events in Firestore."""
from __future__ import annotations

import asyncio
import os
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, Optional

import firebase_admin
import structlog
from firebase_admin import credentials, firestore

logger = structlog.get_logger(__name__)

COLLECTION = "payment_events"


@lru_cache
def ensure_firestore(project_id: Optional[str] = None) -> firestore.Client:
    """
    Return a Firestore client, initializing the Firebase app exactly once.
    Uses GOOGLE_APPLICATION_CREDENTIALS if present, or ADC otherwise.
    """
    if not firebase_admin._apps:
        sa_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
        options = {"projectId": project_id} if project_id else None
        try:
            if sa_path and os.path.isfile(sa_path):
                firebase_admin.initialize_app(credentials.Certificate(sa_path), options)
            else:
                firebase_admin.initialize_app(options=options)
        except ValueError:
            # another thread initialized the default app first
            pass
    return firestore.client()


class PaymentEventJournal:
    def __init__(self, project_id: Optional[str] = None, client: Any = None):
        self._project_id = project_id
        self._client = client

    def _collection(self):
        if self._client is None:
            self._client = ensure_firestore(self._project_id)
        return self._client.collection(COLLECTION)

    def _add(self, doc: Dict[str, Any]) -> None:
        self._collection().add(doc)

    async def record(
        self,
        processor: str,
        event_type: str,
        remote_session_id: Optional[str],
        event_id: Optional[str] = None,
    ) -> None:
        """Never raises: a journal outage must not fail a webhook."""
        doc = {
            "processor": processor,
            "type": event_type,
            "eventId": event_id,
            "remoteSessionId": remote_session_id,
            "at": datetime.now(timezone.utc),
        }
        try:
            await asyncio.to_thread(self._add, doc)
        except Exception as e:
            logger.warning("payment_event_journal_failed", event_type=event_type, error=str(e))
