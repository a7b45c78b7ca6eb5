"""Pydantic schemas for webhook ingestion."""
from typing import Literal
from uuid import UUID

from pydantic import BaseModel


class IngestResult(BaseModel):
    """Outcome of ``WebhookReconciler.ingest``."""

    event_id: UUID | None
    status: Literal["processed", "duplicate", "in_progress", "failed"]
    duplicate: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        """Gateways should stop redelivering when this is True."""
        return self.status in ("processed", "duplicate", "in_progress")
