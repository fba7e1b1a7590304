"""Tests for plan_orchestrator/main.py."""

import json
from pathlib import Path
from unittest.mock import patch

import httpx
import pytest
import structlog
import yaml
from click.testing import CliRunner

from plan_orchestrator.config.settings import OrchestratorSettings
from plan_orchestrator.invokers import CallableInvoker, HttpAgentInvoker, InvokerRegistry, StepResult
from plan_orchestrator.main import build_registry, cli


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep log lines out of the captured command output."""
    structlog.configure(logger_factory=structlog.ReturnLoggerFactory())
    with patch("plan_orchestrator.main.configure_logging"):
        yield
    structlog.reset_defaults()


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def plans_dir(tmp_path: Path) -> Path:
    path = tmp_path / "plans"
    path.mkdir()
    return path


@pytest.fixture
def config_path(tmp_path: Path, plans_dir: Path) -> str:
    path = tmp_path / "orchestrator.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "execution": {"default_step_timeout": 5},
                "approval": {"timeout_seconds": 5},
                "store": {
                    "backend": "file",
                    "plans_directory": str(plans_dir),
                    "state_directory": str(tmp_path / "state"),
                },
                "agents": {"scripted": {"base_url": "http://agent.local"}},
            }
        )
    )
    return str(path)


def write_plan(plans_dir: Path, plan_id: str, root: dict) -> None:
    (plans_dir / f"{plan_id}.yaml").write_text(yaml.safe_dump({"planId": plan_id, "root": root}))


def local_registry(settings):
    def work(step, state):
        if "fail" in step.parameters:
            return StepResult.fail(step.parameters["fail"])
        return {step.id: "done"}

    return InvokerRegistry({"scripted": CallableInvoker(work)})


SIMPLE_FLOW = {
    "type": "sequential",
    "children": [
        {"type": "step", "stepId": "a", "agentId": "scripted"},
        {"type": "step", "stepId": "b", "agentId": "scripted"},
    ],
}


class TestConfigLoading:
    def test_missing_config_file(self, runner, tmp_path: Path):
        result = runner.invoke(cli, ["--config", str(tmp_path / "absent.yaml"), "list-plans"])

        assert result.exit_code == 1
        assert "Configuration file not found" in result.output

    def test_build_registry_from_agents(self):
        settings = OrchestratorSettings(
            agents={"db-reader": {"base_url": "http://db:8080", "path": "/run", "api_token": "t0k"}}
        )

        registry = build_registry(settings)

        invoker = registry.get("db-reader")
        assert isinstance(invoker, HttpAgentInvoker)
        assert invoker.url == "http://db:8080/run"
        assert invoker.client.headers["Authorization"] == "Bearer t0k"


class TestValidateCommand:
    def test_valid_plan(self, runner, config_path, plans_dir):
        write_plan(plans_dir, "etl", SIMPLE_FLOW)

        result = runner.invoke(cli, ["--config", config_path, "validate", "--plan-id", "etl"])

        assert result.exit_code == 0
        assert "Plan etl is valid" in result.output

    def test_capability_without_agent(self, runner, config_path, plans_dir):
        write_plan(plans_dir, "etl", {"type": "step", "stepId": "x", "agentId": "warehouse"})

        result = runner.invoke(cli, ["--config", config_path, "validate", "--plan-id", "etl"])

        assert result.exit_code == 1
        assert "No agent configured for capability 'warehouse'" in result.output

    def test_unknown_plan(self, runner, config_path):
        result = runner.invoke(cli, ["--config", config_path, "validate", "--plan-id", "ghost"])

        assert result.exit_code == 1
        assert "Execution plan not found: ghost" in result.output


class TestListAndShow:
    def test_no_plans(self, runner, config_path):
        result = runner.invoke(cli, ["--config", config_path, "list-plans"])

        assert result.exit_code == 0
        assert "No plans found." in result.output

    def test_lists_plans_with_status(self, runner, config_path, plans_dir):
        write_plan(plans_dir, "etl", SIMPLE_FLOW)

        result = runner.invoke(cli, ["--config", config_path, "list-plans"])

        assert result.exit_code == 0
        assert "etl: never run" in result.output

    def test_show_plan_without_runs(self, runner, config_path, plans_dir):
        write_plan(plans_dir, "etl", SIMPLE_FLOW)

        result = runner.invoke(cli, ["--config", config_path, "show-plan", "--plan-id", "etl"])

        assert result.exit_code == 1
        assert "No run recorded for plan etl" in result.output


class TestRunCommand:
    @pytest.fixture(autouse=True)
    def local_agents(self):
        with patch("plan_orchestrator.main.build_registry", side_effect=local_registry):
            yield

    def test_successful_run(self, runner, config_path, plans_dir):
        write_plan(plans_dir, "etl", SIMPLE_FLOW)

        result = runner.invoke(cli, ["--config", config_path, "run", "--plan-id", "etl"])

        assert result.exit_code == 0, result.output
        assert "Plan etl: completed" in result.output
        assert "Steps completed: 2/2" in result.output
        assert '"b": "done"' in result.output

        shown = runner.invoke(cli, ["--config", config_path, "show-plan", "--plan-id", "etl"])
        assert "Status: completed" in shown.output
        assert "Progress: 2/2" in shown.output
        assert "✅ a" in shown.output

        listed = runner.invoke(cli, ["--config", config_path, "list-plans"])
        assert "etl: completed" in listed.output

    def test_failed_run_exits_nonzero(self, runner, config_path, plans_dir):
        write_plan(
            plans_dir,
            "etl",
            {"type": "step", "stepId": "load", "agentId": "scripted", "parameters": {"fail": "warehouse full"}},
        )

        result = runner.invoke(cli, ["--config", config_path, "run", "--plan-id", "etl"])

        assert result.exit_code == 1
        assert "Plan etl: failed" in result.output
        assert "Failed step: load" in result.output
        assert "Error: warehouse full" in result.output

    def test_auto_approve(self, runner, config_path, plans_dir):
        write_plan(
            plans_dir,
            "deploy",
            {"type": "step", "stepId": "ship", "agentId": "scripted", "requiresApproval": True},
        )

        result = runner.invoke(cli, ["--config", config_path, "run", "--plan-id", "deploy", "--auto-approve"])

        assert result.exit_code == 0, result.output
        assert "Plan deploy: completed" in result.output

    def test_interactive_denial(self, runner, config_path, plans_dir):
        write_plan(
            plans_dir,
            "deploy",
            {"type": "step", "stepId": "ship", "agentId": "scripted", "requiresApproval": True},
        )

        with patch("plan_orchestrator.utils.interactive.click.confirm", return_value=False):
            result = runner.invoke(cli, ["--config", config_path, "run", "--plan-id", "deploy"])

        assert result.exit_code == 1
        assert "Approval required for step 'ship'" in result.output
        assert "Approval denied" in result.output

    def test_unknown_plan(self, runner, config_path):
        result = runner.invoke(cli, ["--config", config_path, "run", "--plan-id", "ghost"])

        assert result.exit_code == 1
        assert "Execution plan not found: ghost" in result.output


class TestRunAgainstHttpAgents:
    @pytest.fixture
    def agent_requests(self):
        return []

    @pytest.fixture(autouse=True)
    def mock_agents(self, agent_requests):
        def answer(request: httpx.Request) -> httpx.Response:
            agent_requests.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True, "output": {"shipped": True}})

        def registry_with_mock_transport(settings):
            registry = build_registry(settings)
            for capability in registry.capabilities():
                invoker = registry.get(capability)
                invoker.client = httpx.AsyncClient(
                    transport=httpx.MockTransport(answer),
                    headers=invoker.client.headers,
                )
            return registry

        with patch("plan_orchestrator.main.build_registry", side_effect=registry_with_mock_transport):
            yield

    def test_agent_requests_carry_the_plan_id(self, runner, config_path, plans_dir, agent_requests):
        write_plan(plans_dir, "release-7", SIMPLE_FLOW)

        result = runner.invoke(cli, ["--config", config_path, "run", "--plan-id", "release-7"])

        assert result.exit_code == 0, result.output
        assert [(r["planId"], r["stepId"]) for r in agent_requests] == [("release-7", "a"), ("release-7", "b")]
