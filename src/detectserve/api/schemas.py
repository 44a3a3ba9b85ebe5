"""Pydantic response schemas for the DetectServe API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from detectserve.service import DetectionResult


class Dimensions(BaseModel):
    """Pixel size of the decoded image."""

    width: int
    height: int


class Match(BaseModel):
    """A detection that passed the confidence threshold."""

    class_id: int = Field(serialization_alias="class", description="Class id in the model's label map")
    score: float = Field(description="Engine confidence (0.0-1.0)")


class DetectionResponse(BaseModel):
    """Response for the image detection endpoint."""

    dimensions: Dimensions
    matches: list[Match]
    is_flagged: bool = Field(description="True if any match belongs to the flag class")

    @classmethod
    def from_result(cls, result: DetectionResult) -> DetectionResponse:
        return cls(
            dimensions=Dimensions(width=result.image_width, height=result.image_height),
            matches=[Match(class_id=m.class_id, score=m.score) for m in result.matches],
            is_flagged=result.flagged,
        )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    model: str | None
    providers: list[str]
    threshold: float
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Error envelope for failed detection requests."""

    error: str
