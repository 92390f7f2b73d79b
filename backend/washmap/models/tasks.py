"""Schemas for transfer task listings and edits."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from washmap.core.status import Status


class TaskOut(BaseModel):
    """One planned transfer and its execution state."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    campaign_id: str
    sort_id: int
    from_address: str
    to_address: str
    token: str
    decimals: int
    amount: Decimal
    gas: Decimal
    reverse: bool
    signature: str = ""
    is_success: bool = False
    status: Status
    error: Optional[str] = None
    attempts: int = 0
    created_at: datetime
    updated_at: datetime


class TaskPageOut(BaseModel):
    tasks: List[TaskOut]
    total: int = Field(default=0, ge=0)
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=10, ge=1)


class TaskUpdateRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0)
    gas: Optional[Decimal] = Field(None, ge=0)


TaskOrderDirection = Literal["asc", "desc"]


__all__ = ["TaskOut", "TaskPageOut", "TaskUpdateRequest", "TaskOrderDirection"]
