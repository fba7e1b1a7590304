"""CLI entry point for the plan orchestrator."""

import asyncio
import json
import sys

import click
import structlog

from plan_orchestrator.config.settings import OrchestratorSettings
from plan_orchestrator.engine.coordinator import ExecutionCoordinator
from plan_orchestrator.exceptions import ConfigurationError, PlanOrchestratorError
from plan_orchestrator.invokers.http_agent import HttpAgentInvoker
from plan_orchestrator.invokers.registry import InvokerRegistry
from plan_orchestrator.models.run import RunResult
from plan_orchestrator.store import create_store
from plan_orchestrator.utils.interactive import ConsoleApprover
from plan_orchestrator.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)


@click.group()
@click.option("--config", default=None, help="Path to configuration file (defaults and environment if omitted)")
@click.option("--log-level", default="INFO", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str) -> None:
    """plan-orchestrator: Execute declarative execution plans."""
    try:
        configure_logging(log_level)
        settings = OrchestratorSettings.from_yaml(config) if config else OrchestratorSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Unexpected error loading configuration: {e}", err=True)
        log.error("config_error_unexpected", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


@cli.command()
@click.option("--plan-id", required=True, help="Plan ID to execute")
@click.option("--auto-approve", is_flag=True, help="Approve every approval gate without prompting")
@click.option("--timeout", type=float, default=None, help="Cancel the run after this many seconds")
@click.pass_context
def run(ctx: click.Context, plan_id: str, auto_approve: bool, timeout: float | None) -> None:
    """Execute a plan and wait for it to finish."""
    try:
        settings = ctx.obj["settings"]
        result = asyncio.run(_run_plan(settings, plan_id, auto_approve, timeout))
    except PlanOrchestratorError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("run_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error("run_unexpected", exc_info=True)
        sys.exit(1)

    _print_result(result)
    if not result.success:
        sys.exit(1)


@cli.command()
@click.option("--plan-id", required=True, help="Plan ID to validate")
@click.pass_context
def validate(ctx: click.Context, plan_id: str) -> None:
    """Check that a plan loads and every capability it uses has an agent."""
    try:
        settings = ctx.obj["settings"]
        problems = asyncio.run(_validate_plan(settings, plan_id))
    except PlanOrchestratorError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("validate_error", exc_info=True)
        sys.exit(1)

    if problems:
        click.echo(f"Plan {plan_id} is not executable:", err=True)
        for problem in problems:
            click.echo(f"  - {problem}", err=True)
        sys.exit(1)
    click.echo(f"Plan {plan_id} is valid")


@cli.command()
@click.pass_context
def list_plans(ctx: click.Context) -> None:
    """List plans in the plan store."""
    try:
        settings = ctx.obj["settings"]
        asyncio.run(_list_plans(settings))
    except PlanOrchestratorError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--plan-id", required=True, help="Plan ID to show")
@click.pass_context
def show_plan(ctx: click.Context, plan_id: str) -> None:
    """Show the last recorded run status of a plan."""
    try:
        settings = ctx.obj["settings"]
        found = asyncio.run(_show_plan_status(settings, plan_id))
    except PlanOrchestratorError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    if not found:
        sys.exit(1)


def build_registry(settings: OrchestratorSettings) -> InvokerRegistry:
    """Register an HTTP invoker for every configured agent endpoint."""
    registry = InvokerRegistry()
    for capability, endpoint in settings.agents.items():
        registry.register(
            capability,
            HttpAgentInvoker(
                base_url=str(endpoint.base_url),
                path=endpoint.path,
                api_token=endpoint.api_token.get_secret_value() if endpoint.api_token else None,
                headers=endpoint.headers,
                timeout=endpoint.timeout,
            ),
        )
    return registry


async def _run_plan(
    settings: OrchestratorSettings,
    plan_id: str,
    auto_approve: bool,
    timeout: float | None,
) -> RunResult:
    """Execute a plan with terminal approvals.

    Args:
        settings: Orchestrator settings
        plan_id: Plan identifier
        auto_approve: Approve every gate automatically
        timeout: Optional limit for the whole run
    """
    log.info("cli_run", plan_id=plan_id, auto_approve=auto_approve)

    registry = build_registry(settings)
    coordinator = ExecutionCoordinator(settings, create_store(settings), registry)
    coordinator.approval_gate.add_listener(ConsoleApprover(coordinator.approval_gate, auto_approve=auto_approve))

    try:
        return await coordinator.execute_plan(plan_id, timeout=timeout)
    finally:
        await coordinator.shutdown()
        await registry.close()


async def _validate_plan(settings: OrchestratorSettings, plan_id: str) -> list[str]:
    store = create_store(settings)
    plan = await store.load_plan(plan_id)

    problems = [
        f"No agent configured for capability '{capability}'"
        for capability in plan.referenced_capabilities()
        if capability not in settings.agents
    ]
    problems.extend(
        f"Capability '{capability}' is used by a step but not listed in required_capabilities"
        for capability in plan.undeclared_capabilities()
    )
    if plan.total_steps == 0:
        problems.append("Plan has no steps")
    return problems


async def _list_plans(settings: OrchestratorSettings) -> None:
    store = create_store(settings)
    plan_ids = await store.list_plans()

    if not plan_ids:
        click.echo("No plans found.")
        return

    click.echo(f"Plans ({len(plan_ids)}):\n")
    for plan_id in plan_ids:
        status = await store.get_run_status(plan_id)
        state = status.get("status", "unknown") if status else "never run"
        click.echo(f"  • {plan_id}: {state}")


async def _show_plan_status(settings: OrchestratorSettings, plan_id: str) -> bool:
    """Print the last recorded run status; False if none exists."""
    store = create_store(settings)
    status = await store.get_run_status(plan_id)
    if status is None:
        click.echo(f"No run recorded for plan {plan_id}.", err=True)
        return False

    click.echo(f"\nPlan {plan_id} Status\n")
    click.echo(f"Status: {status.get('status', 'unknown')}")
    click.echo(f"Progress: {status.get('completed_steps', 0)}/{status.get('total_steps', 0)}")
    click.echo(f"Started: {status.get('started_at') or '-'}")
    click.echo(f"Ended: {status.get('ended_at') or '-'}")
    if status.get("failed_step") or status.get("error"):
        click.echo(f"Failed step: {status.get('failed_step') or '-'}")
        click.echo(f"Error: {status.get('error') or '-'}")
    if status.get("persistence_degraded"):
        click.echo("Warning: some progress updates were not persisted")

    completed = status.get("completed_step_ids", [])
    if completed:
        click.echo(f"\nCompleted steps ({len(completed)}):")
        for step_id in completed:
            click.echo(f"  ✅ {step_id}")
    return True


def _print_result(result: RunResult) -> None:
    click.echo(f"\nPlan {result.plan_id}: {result.state}")
    click.echo(f"Steps completed: {result.completed_steps}/{result.total_steps}")
    if result.execution_time is not None:
        click.echo(f"Execution time: {result.execution_time:.2f}s")
    if result.failed_step or result.error:
        click.echo(f"Failed step: {result.failed_step or '-'}")
        click.echo(f"Error: {result.error or '-'}")
    if result.shared_state:
        click.echo("\nShared state:")
        click.echo(json.dumps(result.shared_state, indent=2, default=str))


if __name__ == "__main__":
    cli()
