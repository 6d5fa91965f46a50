"""Error response schemas shared by the payment and admin routers."""

from typing import Any, List, Optional

from pydantic import BaseModel, Field


class Violation(BaseModel):
    """One invalid request field."""

    path: str = Field(..., description="JSON path to the invalid field")
    message: str = Field(..., description="Validation error message")


class Problem(BaseModel):
    """RFC 9457 Problem Details body returned for every error."""

    type: Optional[str] = Field(None, description="Problem type URI")
    title: str = Field(..., description="Short human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: Optional[str] = Field(None, description="Human-readable explanation")
    instance: Optional[str] = Field(None, description="URI reference for this occurrence")
    code: Optional[str] = Field(None, description="Application error code, e.g. AMOUNT_MISMATCH")
    retryable: Optional[bool] = Field(None, description="Whether retrying the same request can succeed")
    request_id: Optional[str] = Field(None, description="Request ID for support")
    booking_id: Optional[str] = Field(
        None, description="Pending booking left behind by a failed gateway call"
    )
    violations: Optional[List[Violation]] = Field(None, description="Validation errors")


def problem_responses(*status_codes: int) -> dict[int | str, dict[str, Any]]:
    """OpenAPI ``responses`` entries documenting Problem Details bodies."""
    return {
        code: {"model": Problem, "content": {"application/problem+json": {}}}
        for code in status_codes
    }
