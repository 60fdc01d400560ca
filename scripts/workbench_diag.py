"""Workbench diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

from workbench_mcp.agent import AgentNotFoundError, AgentRunner
from workbench_mcp.config import WorkbenchSettings
from workbench_mcp.git import GitOperationError, GitSynchronizer
from workbench_mcp.workspaces import WorkspaceNotFoundError, WorkspaceResolver


def load_runner(settings: WorkbenchSettings) -> AgentRunner:
    try:
        return AgentRunner(
            Path(settings.agent_path) if settings.agent_path else None,
            timeout=settings.execution_timeout_seconds,
        )
    except AgentNotFoundError as exc:
        print(f"Agent unavailable: {exc}")
        raise SystemExit(1)


def cmd_settings(args: argparse.Namespace) -> None:
    settings = WorkbenchSettings()
    print(json.dumps(settings.model_dump(mode="json"), indent=2, sort_keys=True))


def cmd_agent(args: argparse.Namespace) -> None:
    settings = WorkbenchSettings()
    runner = load_runner(settings)
    result = asyncio.run(runner.version())
    payload = {
        "path": str(runner.executable),
        "returncode": result.returncode,
        "version": result.stdout.strip() if result.ok else None,
    }
    print(json.dumps(payload, indent=2))
    if not result.ok:
        raise SystemExit(1)


def cmd_workspaces(args: argparse.Namespace) -> None:
    settings = WorkbenchSettings()
    resolver = WorkspaceResolver(settings.workspace_root)
    refs = resolver.list_checkouts()
    if args.json:
        print(json.dumps({"root": str(resolver.root), "checkouts": refs}, indent=2))
    else:
        for ref in refs:
            print(ref)


def cmd_status(args: argparse.Namespace) -> None:
    settings = WorkbenchSettings()
    resolver = WorkspaceResolver(settings.workspace_root)
    try:
        working_dir = resolver.resolve(args.repo_ref)
    except WorkspaceNotFoundError as exc:
        print(f"Workspace unavailable: {exc}")
        raise SystemExit(1)

    git = GitSynchronizer(timeout=settings.git_timeout_seconds)
    try:
        state = asyncio.run(git.status(working_dir))
    except GitOperationError as exc:
        print(f"Git status failed: {exc}")
        raise SystemExit(1)
    print(json.dumps(state.to_dict(), indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Workbench diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_settings = sub.add_parser("settings", help="Print effective settings as JSON")
    p_settings.set_defaults(func=cmd_settings)

    p_agent = sub.add_parser("agent", help="Locate the agent CLI and print its version")
    p_agent.set_defaults(func=cmd_agent)

    p_workspaces = sub.add_parser("workspaces", help="List checkouts under the workspace root")
    p_workspaces.add_argument("--json", action="store_true", help="Output JSON")
    p_workspaces.set_defaults(func=cmd_workspaces)

    p_status = sub.add_parser("status", help="Show git status for one checkout")
    p_status.add_argument("repo_ref", help="Repository reference, e.g. owner/name")
    p_status.set_defaults(func=cmd_status)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
