"""Core data models for the plan orchestrator.

This package defines the declarative execution plan and the run-scoped
state the engine keeps while executing one.

Key Models:
    - ExecutionPlan: Immutable plan with its flow tree
    - FlowNode: Tagged union of sequential, parallel, conditional, loop,
      subflow and step nodes
    - Condition: Declarative predicate over shared state
    - RunContext: Mutable state of one in-flight run
    - RunStatus: Progress snapshot
    - RunResult: Terminal result of a run
    - Outcome: Result of executing one flow node

Example:
    >>> from plan_orchestrator.models.plan import ExecutionPlan
    >>> plan = ExecutionPlan.from_dict(yaml.safe_load(document))
    >>> plan.total_steps
    3
"""
