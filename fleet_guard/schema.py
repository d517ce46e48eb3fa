from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class HeartbeatRequest(BaseModel):
    worker_name: str = Field(..., min_length=1, max_length=200)
    metadata: dict[str, Any] | None = None


class DeploymentRequest(BaseModel):
    worker_name: str = Field(..., min_length=1, max_length=200)
    version: str = Field(..., min_length=1, max_length=200)
    previous_version: str | None = Field(None, min_length=1, max_length=200)
