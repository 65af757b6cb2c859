"""Evidence domain model."""

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Evidence(BaseModel):
    """Proof of completion recorded before a task is submitted."""

    id: str = Field(..., description="Unique evidence ID from database")
    task_id: str = Field(..., description="Task the evidence belongs to")
    user_id: str = Field(..., description="User who recorded it")
    description: str = Field(..., description="What was done")
    image_refs: list[str] = Field(..., min_length=1, description="References to stored images")
    created: datetime = Field(..., description="Upload timestamp (UTC)")

    @field_validator("image_refs", mode="before")
    @classmethod
    def decode_image_refs(cls, v: Any) -> Any:
        """Accept the JSON text stored in the image_refs column."""
        return json.loads(v) if isinstance(v, str) else v
