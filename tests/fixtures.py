"""Reusable fixtures for testing."""

import sys
from pathlib import Path

import pytest

from benchmark_config import BenchmarkConfig
from language_config import build_language_table

FAKE_SERVER = Path(__file__).parent / "mocks" / "fake_lsp_server.py"


def fake_server_overrides(*flags: str) -> dict[str, dict]:
    """Server overrides that run the scripted fake server for Python."""
    return {"python": {"command": sys.executable, "args": ["-u", str(FAKE_SERVER), *flags]}}


def write_python_module(root: Path, relative: str, function_names: list[str]) -> Path:
    """Write a module defining one function per name, each calling the next."""
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = []
    for index, name in enumerate(function_names):
        callee = function_names[index + 1] if index + 1 < len(function_names) else None
        lines.append(f"def {name}():")
        lines.append(f"    return {callee}()" if callee else "    return 0")
        lines.append("")
    path.write_text("\n".join(lines), encoding="utf-8")
    return path


@pytest.fixture
def python_project(tmp_path):
    """A small Python project with ten functions, three of them not callable."""
    names = [
        "alpha",
        "beta",
        "empty_gamma",
        "delta",
        "epsilon",
        "empty_zeta",
        "eta",
        "theta",
        "empty_iota",
        "kappa",
    ]
    write_python_module(tmp_path, "pkg/core.py", names[:5])
    write_python_module(tmp_path, "pkg/util.py", names[5:])
    return tmp_path


@pytest.fixture
def fake_language_table():
    """Language table whose Python server is the scripted fake server."""
    return build_language_table(fake_server_overrides())


@pytest.fixture
def fast_config():
    """Benchmark configuration with short timeouts for subprocess tests."""
    return BenchmarkConfig(
        request_timeout=5.0,
        startup_timeout=10.0,
        shutdown_grace=2.0,
        spawn_probe=0.1,
        max_concurrency=4,
        servers=fake_server_overrides(),
    )
