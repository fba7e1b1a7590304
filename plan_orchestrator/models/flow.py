"""
Flow tree models for execution plans.

A plan's control structure is a tree of flow nodes. The tree is a tagged
union discriminated by the ``type`` field, so documents produced by the
plan generator parse straight into the right node class::

    {
        "type": "sequential",
        "children": [
            {"type": "step", "id": "fetch", "capability": "db-reader"},
            {
                "type": "conditional",
                "predicate": {"operator": "gt", "key": "rows", "value": 0},
                "then_branch": {"type": "step", "id": "report", "capability": "writer"}
            }
        ]
    }

Leaf ``StepNode`` objects are the units of work; every other node only
decides when and how often its children run.

Predicates:
    Conditionals and loops evaluate a predicate against a snapshot of the
    run's shared state. Predicates are either declarative ``Condition``
    objects (serializable, usable in plan files) or plain callables
    ``(Mapping[str, Any]) -> bool`` for plans built in code.

Example:
    >>> flow = SequentialNode(children=[
    ...     StepNode(id="a", capability="echo"),
    ...     StepNode(id="b", capability="echo", requires_approval=True),
    ... ])
    >>> count_steps(flow)
    2
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from enum import Enum
from typing import Annotated, Any, Literal, Union, assert_never

from pydantic import BaseModel, ConfigDict, Field, model_validator

_MISSING = object()


class ConditionOperator(str, Enum):
    """Operators supported by declarative conditions."""

    EXISTS = "exists"
    TRUTHY = "truthy"
    FALSY = "falsy"
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GE = "ge"
    LT = "lt"
    LE = "le"
    IN = "in"
    CONTAINS = "contains"
    ALL = "all"
    ANY = "any"
    NOT = "not"

    def __str__(self) -> str:
        return self.value


_COMPOSITE_OPERATORS = (ConditionOperator.ALL, ConditionOperator.ANY, ConditionOperator.NOT)


def lookup(state: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path (``"review.score"``) against nested mappings.

    Returns the module-level ``_MISSING`` sentinel when any segment is absent.
    """
    current: Any = state
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


class Condition(BaseModel):
    """Declarative predicate over shared run state.

    Leaf operators compare the value at ``key`` with ``value``. Composite
    operators (``all``, ``any``, ``not``) combine nested ``conditions``.
    A missing key makes every comparison false; ``falsy`` treats a missing
    key as falsy.

    Example:
        >>> cond = Condition(operator="all", conditions=[
        ...     Condition(operator="exists", key="result"),
        ...     Condition(operator="ge", key="result.score", value=0.8),
        ... ])
        >>> cond({"result": {"score": 0.9}})
        True
    """

    model_config = ConfigDict(frozen=True)

    operator: ConditionOperator = ConditionOperator.TRUTHY
    key: str | None = None
    value: Any = None
    conditions: list[Condition] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_operands(self) -> Condition:
        """Ensure each operator has the operands it needs."""
        if self.operator in _COMPOSITE_OPERATORS:
            if not self.conditions:
                raise ValueError(f"'{self.operator}' condition requires nested conditions")
            if self.operator == ConditionOperator.NOT and len(self.conditions) != 1:
                raise ValueError("'not' condition takes exactly one nested condition")
        elif not self.key:
            raise ValueError(f"'{self.operator}' condition requires a key")
        return self

    def __call__(self, state: Mapping[str, Any]) -> bool:
        return self.evaluate(state)

    def evaluate(self, state: Mapping[str, Any]) -> bool:
        """Evaluate the condition against a state mapping."""
        op = self.operator
        if op == ConditionOperator.ALL:
            return all(c.evaluate(state) for c in self.conditions)
        if op == ConditionOperator.ANY:
            return any(c.evaluate(state) for c in self.conditions)
        if op == ConditionOperator.NOT:
            return not self.conditions[0].evaluate(state)

        actual = lookup(state, self.key or "")
        if op == ConditionOperator.EXISTS:
            return actual is not _MISSING
        if op == ConditionOperator.FALSY:
            return actual is _MISSING or not actual
        if actual is _MISSING:
            return False

        try:
            if op == ConditionOperator.TRUTHY:
                return bool(actual)
            if op == ConditionOperator.EQ:
                return bool(actual == self.value)
            if op == ConditionOperator.NE:
                return bool(actual != self.value)
            if op == ConditionOperator.GT:
                return bool(actual > self.value)
            if op == ConditionOperator.GE:
                return bool(actual >= self.value)
            if op == ConditionOperator.LT:
                return bool(actual < self.value)
            if op == ConditionOperator.LE:
                return bool(actual <= self.value)
            if op == ConditionOperator.IN:
                return actual in self.value
            if op == ConditionOperator.CONTAINS:
                return self.value in actual
        except TypeError:
            # Incomparable types never satisfy a comparison
            return False

        raise ValueError(f"Unsupported condition operator: {op}")


Predicate = Union[Condition, Callable[[Mapping[str, Any]], bool]]


class _FlowNodeBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str | None = None


class SequentialNode(_FlowNodeBase):
    """Children run in list order; the first non-success stops the sequence."""

    type: Literal["sequential"] = "sequential"
    children: list[FlowNode] = Field(default_factory=list)


class ParallelNode(_FlowNodeBase):
    """Children run concurrently.

    With ``wait_for_all`` the node resolves once every child has resolved;
    otherwise it resolves with the first child outcome and leaves the rest
    running in the background.
    """

    type: Literal["parallel"] = "parallel"
    children: list[FlowNode] = Field(default_factory=list)
    wait_for_all: bool = Field(default=True, alias="waitForAll")


class ConditionalNode(_FlowNodeBase):
    """Exactly one branch runs, chosen by ``predicate``."""

    type: Literal["conditional"] = "conditional"
    predicate: Predicate = Field(..., alias="condition")
    then_branch: FlowNode = Field(..., alias="thenBranch")
    else_branch: FlowNode | None = Field(default=None, alias="elseBranch")


class LoopNode(_FlowNodeBase):
    """Body repeats until ``exit_condition`` holds or ``max_iterations`` is hit."""

    type: Literal["loop"] = "loop"
    body: FlowNode
    exit_condition: Predicate = Field(..., alias="exitCondition")
    max_iterations: int = Field(..., ge=1, alias="maxIterations")


class SubFlowNode(_FlowNodeBase):
    """Transparent wrapper around a nested flow tree."""

    type: Literal["subflow"] = "subflow"
    flow: FlowNode
    flow_id: str | None = Field(default=None, alias="flowId")


class StepNode(_FlowNodeBase):
    """Leaf unit of work bound to a capability (agent identifier)."""

    type: Literal["step"] = "step"
    id: str = Field(..., min_length=1, alias="stepId")
    capability: str = Field(..., min_length=1, alias="agentId")
    description: str = ""
    requires_approval: bool = Field(default=False, alias="requiresApproval")
    timeout: float | None = Field(default=None, gt=0, description="Per-step timeout in seconds")
    parameters: dict[str, Any] = Field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.id


FlowNode = Annotated[
    Union[SequentialNode, ParallelNode, ConditionalNode, LoopNode, SubFlowNode, StepNode],
    Field(discriminator="type"),
]

for _model in (Condition, SequentialNode, ParallelNode, ConditionalNode, LoopNode, SubFlowNode, StepNode):
    _model.model_rebuild()


def child_nodes(node: FlowNode) -> list[FlowNode]:
    """Return the direct children of a node in evaluation order."""
    if isinstance(node, (SequentialNode, ParallelNode)):
        return list(node.children)
    if isinstance(node, ConditionalNode):
        return [node.then_branch] if node.else_branch is None else [node.then_branch, node.else_branch]
    if isinstance(node, LoopNode):
        return [node.body]
    if isinstance(node, SubFlowNode):
        return [node.flow]
    if isinstance(node, StepNode):
        return []
    assert_never(node)


def iter_nodes(node: FlowNode) -> Iterator[FlowNode]:
    """Yield every node of the tree, depth first, parents before children."""
    yield node
    for child in child_nodes(node):
        yield from iter_nodes(child)


def iter_steps(node: FlowNode) -> Iterator[StepNode]:
    """Yield every step leaf of the tree, depth first."""
    for candidate in iter_nodes(node):
        if isinstance(candidate, StepNode):
            yield candidate


def count_steps(node: FlowNode) -> int:
    return sum(1 for _ in iter_steps(node))


def describe(node: FlowNode) -> str:
    """Short label for logs: the node name if set, else its type (or step id)."""
    if isinstance(node, StepNode):
        return node.display_name
    return node.name or node.type
