"""Shared fixtures for the Feature Factory test suite."""

import os

import pytest
from typer.testing import CliRunner

from feature_factory.config import CheckpointConfig, FactoryConfig, clear_config_cache
from feature_factory.models import PhaseResult


class FakeInvoker:
    """Agent invoker double.

    Every agent succeeds with a small cost unless a handler is registered
    for it in ``handlers``. All requests are recorded.
    """

    def __init__(self, agents=None, cost_usd=0.1, turns=2):
        self.agents = set(agents) if agents is not None else None
        self.cost_usd = cost_usd
        self.turns = turns
        self.handlers = {}
        self.requests = []

    def supports(self, agent_id):
        return self.agents is None or agent_id in self.agents

    def invoke(self, request):
        self.requests.append(request)
        handler = self.handlers.get(request.agent_id)
        if handler is not None:
            return handler(request)
        return PhaseResult(
            agent_id=request.agent_id,
            success=True,
            output={"summary": f"{request.agent_id} done"},
            files_created=[f"{request.agent_id}.md"],
            cost_usd=self.cost_usd,
            turns_used=self.turns,
        )

    def called_agents(self):
        return [r.agent_id for r in self.requests]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Isolate tests from FEATURE_FACTORY_* variables and the config cache."""
    for name in list(os.environ):
        if name.startswith("FEATURE_FACTORY_"):
            monkeypatch.delenv(name, raising=False)
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def factory_config(tmp_path):
    """Config rooted at a temp directory with checkpoints off and no approval gates."""
    return FactoryConfig(
        working_directory=str(tmp_path),
        approval_mode="none",
        checkpoints=CheckpointConfig(enabled=False),
    )


@pytest.fixture
def fake_invoker():
    """Agent invoker that supports every agent."""
    return FakeInvoker()


@pytest.fixture
def invoker_class():
    """The FakeInvoker class, for tests that need custom construction."""
    return FakeInvoker


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()
