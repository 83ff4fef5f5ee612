"""
============================================================================
ChangeWLD Exchange
Admin Schemas
============================================================================
"""

from pydantic import BaseModel, ConfigDict, Field


class AdminLoginRequest(BaseModel):
    """Body of POST /admin/login."""

    model_config = ConfigDict(extra="forbid")

    pin: str = Field(..., min_length=1, max_length=128, description="Operator PIN")


__all__ = ["AdminLoginRequest"]
