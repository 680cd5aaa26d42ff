"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from policyhub.policy.models import (
    ParsedNetworkPolicy,
    ParsedTracingPolicy,
    PolicyType,
)
from policyhub.policy.parser import load_policy


@pytest.fixture
def fixtures_dir() -> Path:
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def frontend_policy_path(fixtures_dir: Path) -> Path:
    return fixtures_dir / "frontend_policy.yaml"


@pytest.fixture
def frontend_policy_yaml(frontend_policy_path: Path) -> str:
    return frontend_policy_path.read_text(encoding="utf-8")


@pytest.fixture
def frontend_policy(frontend_policy_path: Path) -> ParsedNetworkPolicy:
    policy = load_policy(frontend_policy_path, PolicyType.CILIUM_NETWORK)
    assert isinstance(policy, ParsedNetworkPolicy)
    return policy


@pytest.fixture
def block_bash_path(fixtures_dir: Path) -> Path:
    return fixtures_dir / "block_bash.yaml"


@pytest.fixture
def block_bash_yaml(block_bash_path: Path) -> str:
    return block_bash_path.read_text(encoding="utf-8")


@pytest.fixture
def block_bash_policy(block_bash_path: Path) -> ParsedTracingPolicy:
    policy = load_policy(block_bash_path, PolicyType.TETRAGON)
    assert isinstance(policy, ParsedTracingPolicy)
    return policy
