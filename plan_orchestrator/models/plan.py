"""Execution plan model.

An ``ExecutionPlan`` is produced by the external plan generator and is
immutable once submitted for a run. The orchestrator only reads it.
"""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from plan_orchestrator.exceptions import FlowDefinitionError
from plan_orchestrator.models.flow import FlowNode, StepNode, iter_steps


class ExecutionPlan(BaseModel):
    """A declarative workflow definition with a root flow tree.

    Attributes:
        plan_id: Unique plan identifier.
        name: Human-readable title.
        description: Free-form description from the generator.
        root: Root flow node.
        required_capabilities: Agent identifiers the plan declares it needs.
        metadata: Arbitrary generator metadata, not interpreted by the core.

    Example:
        >>> plan = ExecutionPlan.from_dict({
        ...     "planId": "plan-42",
        ...     "root": {"type": "step", "id": "only", "capability": "echo"},
        ... })
        >>> plan.total_steps
        1
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    plan_id: str = Field(..., min_length=1, alias="planId")
    name: str = ""
    description: str = ""
    root: FlowNode = Field(..., validation_alias=AliasChoices("root", "flow", "executionFlow"))
    required_capabilities: list[str] = Field(default_factory=list, alias="requiredCapabilities")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_unique_step_ids(self) -> ExecutionPlan:
        """Step ids key approval tickets and progress records, so they must be unique."""
        seen: set[str] = set()
        duplicates: list[str] = []
        for step in iter_steps(self.root):
            if step.id in seen:
                duplicates.append(step.id)
            seen.add(step.id)
        if duplicates:
            raise ValueError(f"Duplicate step ids in plan {self.plan_id}: {sorted(set(duplicates))}")
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionPlan:
        """Parse a plan document, raising FlowDefinitionError when it is malformed."""
        if not isinstance(data, dict):
            raise FlowDefinitionError("Execution plan must be a mapping")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            plan_id = data.get("plan_id") or data.get("planId") or "<unknown>"
            raise FlowDefinitionError(f"Invalid execution plan {plan_id}: {e}") from e

    def steps(self) -> list[StepNode]:
        return list(iter_steps(self.root))

    @property
    def total_steps(self) -> int:
        return len(self.steps())

    def get_step(self, step_id: str) -> StepNode | None:
        return next((s for s in iter_steps(self.root) if s.id == step_id), None)

    def referenced_capabilities(self) -> list[str]:
        """Capabilities referenced by the plan's steps, sorted and de-duplicated."""
        return sorted({step.capability for step in iter_steps(self.root)})

    def undeclared_capabilities(self) -> list[str]:
        """Capabilities used by steps but absent from ``required_capabilities``.

        Only meaningful when the plan declares its capabilities at all.
        """
        if not self.required_capabilities:
            return []
        declared = set(self.required_capabilities)
        return [c for c in self.referenced_capabilities() if c not in declared]
