"""
``afu9 verdict``: evaluate a verification evidence file.

Exit codes:
    0 = GREEN
    2 = RED
    12 = evidence file missing or invalid
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from afu9.cli.ux import console, error, header, print_table, success
from afu9.core.errors import ExitCode, ValidationError
from afu9.verification import (
    VerdictResult,
    compute_evidence_hash,
    evaluate_verdict,
    validate_verification_evidence,
)


def verdict_command(evidence_file: str, output_format: str = "table") -> int:
    path = Path(evidence_file)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValidationError(
            f"Cannot read evidence file: {exc}",
            details={"path": str(path)},
            code="INVALID_EVIDENCE",
        ) from exc

    evidence = validate_verification_evidence(raw)
    result = evaluate_verdict(evidence)

    if output_format == "json":
        payload = result.to_dict()
        payload["evidenceHash"] = compute_evidence_hash(evidence)
        console.print_json(json.dumps(payload))
    else:
        _print_verdict(result)

    return ExitCode.SUCCESS if result.is_green else ExitCode.BLOCKED


def _print_verdict(result: VerdictResult) -> None:
    header(f"Verdict: {result.verdict}")
    if result.is_green:
        success(result.rationale)
    else:
        error(result.rationale)
    console.print()
    print_table(
        "Evaluation rules",
        ["Rule", "Result"],
        [[rule, "evaluated"] for rule in result.evaluation_rules],
    )
    for check in result.failed_checks:
        console.print(f"  [error]•[/error] {check}")


def register_verdict_parser(subparsers: argparse._SubParsersAction) -> None:
    parser = subparsers.add_parser(
        "verdict", help="Evaluate verification evidence to a GREEN/RED verdict"
    )
    parser.add_argument("evidence_file", help="Path to evidence JSON file")
    parser.add_argument(
        "--format",
        dest="output_format",
        choices=["table", "json"],
        default="table",
        help="Output format",
    )


def handle_verdict_command(args: argparse.Namespace) -> int:
    return verdict_command(args.evidence_file, output_format=args.output_format)
