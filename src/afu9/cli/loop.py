"""
``afu9 loop next``: run the next lifecycle step for one issue.

Exit codes:
    0 = step succeeded, or nothing left to do
    2 = blocked (including a held lock)
    127 = the step raised
"""

from __future__ import annotations

import argparse
import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from afu9.cli.ux import console, error, header, success
from afu9.clients.github import GitHubClient
from afu9.config import get_settings
from afu9.core.errors import ExitCode
from afu9.db.session import dispose_engine, get_session, init_engine
from afu9.lifecycle.executor import LoopExecutor, LoopRunOutcome
from afu9.lifecycle.models import ExecutionMode


@asynccontextmanager
async def get_cli_session() -> AsyncIterator[AsyncSession]:
    """Session for one CLI invocation. The engine is disposed on exit."""
    init_engine(get_settings())
    sessions = get_session()
    try:
        yield await anext(sessions)
    finally:
        await sessions.aclose()
        await dispose_engine()


async def run_next_step(
    issue_id: str, *, actor: str, mode: ExecutionMode, request_id: str
) -> LoopRunOutcome:
    settings = get_settings()
    github = GitHubClient(
        settings.github_token,
        base_url=settings.github_api_url,
        timeout=settings.http_timeout,
        max_retries=settings.http_max_retries,
    )
    async with get_cli_session() as session:
        outcome = await LoopExecutor.for_session(session, github).run_next_step(
            issue_id, actor=actor, mode=mode, request_id=request_id
        )
        await session.commit()
    return outcome


def outcome_exit_code(outcome: LoopRunOutcome) -> int:
    if outcome.error is not None:
        return ExitCode.UNKNOWN_ERROR
    if outcome.blocked:
        return ExitCode.BLOCKED
    return ExitCode.SUCCESS


def print_outcome(outcome: LoopRunOutcome) -> None:
    header(f"Issue {outcome.issue_id}")
    step = outcome.step.value if outcome.step else "none"
    console.print(f"Step: {step}  Run: {outcome.run_id or '-'}", markup=False)
    if outcome.error is not None:
        error(f"{step} raised: {outcome.error}")
    elif outcome.blocked:
        code = outcome.blocker_code.value if outcome.blocker_code else "BLOCKED"
        error(f"{code}: {outcome.message}")
    else:
        success(outcome.message or "Nothing to do")


def loop_next_command(
    issue_id: str,
    *,
    actor: str,
    dry_run: bool = False,
    output_format: str = "table",
) -> int:
    mode = ExecutionMode.DRY_RUN if dry_run else ExecutionMode.EXECUTE
    outcome = asyncio.run(
        run_next_step(issue_id, actor=actor, mode=mode, request_id=str(uuid.uuid4()))
    )
    if output_format == "json":
        console.print_json(json.dumps(outcome.to_dict(), default=str))
    else:
        print_outcome(outcome)
    return outcome_exit_code(outcome)


def register_loop_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser("loop", help="Issue lifecycle loop")
    loop_subparsers = parser.add_subparsers(dest="loop_command", required=True)

    next_parser = loop_subparsers.add_parser("next", help="Run the next step for an issue")
    next_parser.add_argument("issue_id", help="Issue id")
    next_parser.add_argument("--actor", required=True, help="Who is driving the loop")
    next_parser.add_argument(
        "--dry-run", action="store_true", help="Validate and report without writing"
    )
    next_parser.add_argument(
        "--format",
        dest="output_format",
        choices=["table", "json"],
        default="table",
        help="Output format",
    )


def handle_loop_command(args: argparse.Namespace) -> int:
    return loop_next_command(
        args.issue_id,
        actor=args.actor,
        dry_run=args.dry_run,
        output_format=args.output_format,
    )
