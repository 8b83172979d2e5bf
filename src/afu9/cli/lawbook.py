"""``afu9 lawbook validate|hash``: check a lawbook document before publishing it."""

from __future__ import annotations

import argparse

from afu9.cli.ux import console, header, print_table, success
from afu9.core.errors import ExitCode
from afu9.lawbook.loader import load_lawbook_file
from afu9.lawbook.schema import compute_lawbook_hash


def validate_command(lawbook_file: str) -> int:
    lawbook = load_lawbook_file(lawbook_file)
    header(f"Lawbook {lawbook.lawbook_id} @ {lawbook.lawbook_version}")
    rows = [
        [
            action.action_type,
            ", ".join(action.allowed_envs),
            str(action.cooldown_seconds),
            (
                f"{action.max_runs_per_window}/{action.window_seconds}s"
                if action.max_runs_per_window is not None
                else "-"
            ),
            "yes" if action.requires_approval else "no",
        ]
        for action in lawbook.automation_policy.actions
    ]
    print_table(
        "Automation policy",
        ["Action", "Environments", "Cooldown (s)", "Rate limit", "Approval"],
        rows,
    )
    remediation = lawbook.remediation
    console.print(
        f"[muted]Remediation: {'enabled' if remediation.enabled else 'disabled'}, "
        f"{len(remediation.allowed_playbooks)} playbook(s), "
        f"{len(remediation.allowed_actions)} action(s)[/muted]"
    )
    success("Lawbook is valid")
    return ExitCode.SUCCESS


def hash_command(lawbook_file: str) -> int:
    lawbook = load_lawbook_file(lawbook_file)
    console.print(compute_lawbook_hash(lawbook), markup=False, highlight=False)
    return ExitCode.SUCCESS


def register_lawbook_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser("lawbook", help="Lawbook document tools")
    lawbook_subparsers = parser.add_subparsers(dest="lawbook_command", required=True)

    validate_parser = lawbook_subparsers.add_parser("validate", help="Validate a lawbook file")
    validate_parser.add_argument("lawbook_file", help="Path to lawbook YAML or JSON")

    hash_parser = lawbook_subparsers.add_parser("hash", help="Print the canonical lawbook hash")
    hash_parser.add_argument("lawbook_file", help="Path to lawbook YAML or JSON")


def handle_lawbook_command(args: argparse.Namespace) -> int:
    if args.lawbook_command == "hash":
        return hash_command(args.lawbook_file)
    return validate_command(args.lawbook_file)
