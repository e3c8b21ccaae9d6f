"""
ChoreCore — Document shape schemas.

pydantic models describing what a well-formed incoming document looks like.
The policy rules use them to reject malformed creates before any field
level check runs.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ChildData(BaseModel):
    model_config = ConfigDict(extra="allow")

    userId: str = Field(min_length=1)


class ConsentRecord(BaseModel):
    """Parental consent document, keyed by ``{parentId}_{childId}``.

    JSON example:
    {
        "parentId": "parent1",
        "childData": {"userId": "alice"},
        "status": "pending"
    }
    """
    model_config = ConfigDict(extra="allow")

    parentId: str = Field(min_length=1)
    childData: ChildData
    status: Literal["pending", "approved", "denied"]


class NewTask(BaseModel):
    """Task document as submitted on creation."""
    model_config = ConfigDict(extra="allow")

    assignedTo: str = Field(min_length=1)
    assignedBy: str = Field(min_length=1)
    status: Literal["created"] = "created"
    rewardPoints: int = Field(default=0, ge=0, strict=True)
    requiresPhoto: bool = False
    photoValidationStatus: Literal["pending"] | None = None


class NewFamily(BaseModel):
    model_config = ConfigDict(extra="allow")

    createdBy: str = Field(min_length=1)
    parentIds: list[str]
    memberIds: list[str]
