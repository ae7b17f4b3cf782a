"""Request and response models for the regimen API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class CompleteInstanceRequest(BaseModel):
    """Body of a completion event for one daily instance."""

    outcome: Literal["taken", "completed", "skipped"] = "completed"
    log_id: str | None = None


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    """Standard error envelope: ``{"error": {"code": ..., "message": ...}}``."""

    error: ErrorDetail
