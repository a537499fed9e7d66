"""
Pytest configuration and fixtures for sprig tests.
"""

import pytest

import sprig


@pytest.fixture
def env():
    """
    Provide a program environment under a fresh root.

    Each test gets its own root so that programs overwriting builtins or
    defining globals never leak into other tests.
    """
    return sprig.Environment(sprig.new_base_environment())


@pytest.fixture
def run(env):
    """Evaluate source text in the per-test environment."""

    def run(source: str) -> sprig.Value:
        return sprig.eval_source(source, env)

    return run


@pytest.fixture
def script(tmp_path):
    """Write a sprig script to a temporary file and return its path."""

    def script(source: str, name: str = "main.sprig"):
        path = tmp_path / name
        path.write_text(source, encoding="utf-8")
        return path

    return script
