"""Pydantic schemas for SQL plans and execution results."""
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SqlStep(BaseModel):
    """One supplemental read-only query proposed by the model."""
    alias: str = Field(
        ...,
        description="Short identifier for the step, never shown to users",
        examples=["top_categories"]
    )
    description: str = Field(
        default="",
        description="What the step retrieves",
        examples=["Top 5 categories by revenue in the last 30 days"]
    )
    statement: str = Field(
        ...,
        alias="sql",
        description="Read-only SQL text (SELECT or WITH)",
        examples=["SELECT c.name, SUM(oi.quantity) AS sold FROM ..."]
    )

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class SqlPlan(BaseModel):
    """Plan returned by the model: a summary plus at most two steps."""
    summary: str = Field(
        default="",
        description="What the plan is trying to find out"
    )
    steps: list[SqlStep] = Field(
        default_factory=list,
        max_length=2,
        description="Ordered supplemental queries (zero when the snapshot suffices)"
    )

    model_config = ConfigDict(frozen=True)

    @classmethod
    def empty(cls, summary: str = "") -> "SqlPlan":
        return cls(summary=summary, steps=[])


class SqlExecutionResult(BaseModel):
    """Rows produced by one executed step.

    Ensures no raw database driver objects leak into prompts or responses:
    every value is JSON-serializable.
    """
    alias: str = Field(..., description="Alias of the step that produced the rows")
    description: str = Field(default="", description="Description of the step")
    rows: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Ordered column -> value maps",
        examples=[[{"category": "Fiction", "revenue": 1250000.0}]]
    )
    row_count: int = Field(
        ...,
        ge=0,
        description="Number of rows returned (never more than the row cap)",
        examples=[3]
    )

    model_config = ConfigDict(frozen=True)
