"""plan-orchestrator: execution orchestration engine for multi-step plans.

Walks declarative execution plans (sequential, parallel, conditional, loop
and subflow nodes over agent-backed steps), coordinates concurrent runs over
a bounded worker pool, and gates steps on human approval.
"""

__version__ = "0.1.0"
