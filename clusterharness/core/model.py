"""Wire messages shared by every embedded service and its clients."""

from typing import Any

from pydantic import BaseModel, Field


class ServiceRequest(BaseModel):
    """A single request sent to an embedded service."""

    op: str = Field(description="Name of the operation to run.")
    args: dict[str, Any] = Field(
        default_factory=dict, description="Keyword arguments for the operation."
    )


class ServiceResponse(BaseModel):
    """The reply to a ``ServiceRequest``."""

    ok: bool = Field(description="Whether the operation succeeded.")
    result: Any = Field(default=None, description="Operation result when ok.")
    error: str | None = Field(default=None, description="Error message when not ok.")
    code: str | None = Field(
        default=None, description="Machine-readable error code when not ok."
    )
