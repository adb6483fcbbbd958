"""
Error Schemas

Uniform JSON body for errors produced by the API's own middleware.
"""

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Error envelope returned to the caller."""

    success: bool = Field(default=False, description="Always false for errors")
    message: str = Field(..., description="Human-readable error message")
    code: str = Field(default="BAD_REQUEST", description="Machine-readable error code")
