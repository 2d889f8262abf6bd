"""Pydantic schemas for the planner's model output.

The model is asked for `{"summary": ..., "steps": [{"alias", "description",
"sql"}]}` but does not always comply: steps may lack an alias, name the
statement `query` or `statement`, or come back as plain strings. These
schemas accept all of that and `PlanDraft.to_plan()` produces the strict
`SqlPlan`.
"""
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .schemas_sql import SqlPlan, SqlStep

MAX_PLAN_STEPS = 2


class PlannedStep(BaseModel):
    """One step as written by the model, before validation."""
    alias: Optional[str] = Field(default=None, description="Step identifier")
    description: str = Field(default="", description="What the step retrieves")
    sql: str = Field(default="", description="Proposed SQL text")

    model_config = ConfigDict(extra="ignore", frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _accept_variants(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"sql": data}
        if isinstance(data, dict) and not data.get("sql"):
            for key in ("statement", "query"):
                if isinstance(data.get(key), str):
                    return {**data, "sql": data[key]}
        return data

    @field_validator("alias", "description", "sql", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        return str(v)


class PlanDraft(BaseModel):
    """The plan exactly as the model returned it."""
    summary: str = Field(default="", description="Plan summary")
    steps: list[PlannedStep] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator("summary", mode="before")
    @classmethod
    def _summary_text(cls, v: Any) -> str:
        if v is None:
            return ""
        return v if isinstance(v, str) else str(v)

    @field_validator("steps", mode="before")
    @classmethod
    def _steps_list(cls, v: Any) -> list:
        if v is None:
            return []
        if not isinstance(v, list):
            return [v]
        return [item for item in v if isinstance(item, (dict, str))]

    def to_plan(self, max_steps: int = MAX_PLAN_STEPS) -> SqlPlan:
        """Keep at most `max_steps` steps that carry SQL text, with aliases filled in."""
        steps = []
        for index, step in enumerate(self.steps, start=1):
            if not step.sql.strip():
                continue
            steps.append(
                SqlStep(
                    alias=(step.alias or "").strip() or f"step_{index}",
                    description=step.description.strip(),
                    statement=step.sql.strip(),
                )
            )
            if len(steps) >= max_steps:
                break
        return SqlPlan(summary=self.summary.strip(), steps=steps)
