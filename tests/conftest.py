from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Callable

import pytest

from workbench_mcp.admission import AdmissionController
from workbench_mcp.agent import AgentRunner
from workbench_mcp.git import GitSynchronizer
from workbench_mcp.pipeline import TaskPipeline
from workbench_mcp.profiles import ProfileLoader
from workbench_mcp.sessions import SessionRegistry
from workbench_mcp.workspaces import WorkspaceResolver

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body.strip() + "\n", encoding="utf-8")
    path.chmod(0o755)
    return path


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout


def init_repo(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-q")
    git(path, "config", "user.name", "Test User")
    git(path, "config", "user.email", "test@example.com")
    git(path, "config", "commit.gpgsign", "false")
    (path / "README.md").write_text("# demo\n", encoding="utf-8")
    git(path, "add", "README.md")
    git(path, "commit", "-q", "-m", "initial")
    return path


@pytest.fixture
def make_script(tmp_path: Path) -> Callable[[str, str], Path]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def _make(name: str, body: str) -> Path:
        return write_script(bin_dir / name, body)

    return _make


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture
def make_pipeline(workspace_root: Path):
    def _make(
        script: Path,
        *,
        workers: int = 2,
        timeout: float = 10.0,
        admission_timeout: float | None = 5.0,
        max_queue_depth: int | None = None,
        history_max_turns: int = 20,
        history_max_chars: int = 16000,
    ) -> TaskPipeline:
        return TaskPipeline(
            registry=SessionRegistry(max_turns=history_max_turns),
            admission=AdmissionController(workers, max_queue_depth=max_queue_depth),
            runner=AgentRunner(script, timeout=timeout, flags=(), kill_grace=0.5),
            resolver=WorkspaceResolver(workspace_root),
            git=GitSynchronizer(author_name="Workbench Test", author_email="workbench@example.com"),
            profiles=ProfileLoader(),
            admission_timeout=admission_timeout,
            history_max_chars=history_max_chars,
        )

    return _make
