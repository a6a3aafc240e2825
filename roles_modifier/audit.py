"""
Roles Policy Audit Tool — offline inspection of role policies.

Anyone holding a policy as a JSON list of mutation calls can replay it
here, see the effective permissions per role, prune redundant calls
before submitting them, or test a single call against the result.

Usage:
    roles-audit show policy.json
    roles-audit show policy.json --role 0x…01
    roles-audit prune policy.json
    roles-audit check policy.json --role 0x…01 --target 0x… --data 0x40c10f19…
    python -m roles_modifier.audit show policy.json
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

import structlog
from eth_utils import decode_hex
from rich.console import Console
from rich.table import Table

from roles_modifier.checker.permissions import PermissionChecker
from roles_modifier.config import settings
from roles_modifier.policy.schema import (
    ConditionTree,
    Operation,
    Verdict,
    normalize_role_key,
)
from roles_modifier.policy.store import PolicyStore
from roles_modifier.sdk.calls import (
    PolicyMutation,
    apply_calls,
    dump_calls,
    load_calls,
    remove_obsolete_calls,
)

console = Console()


def configure_logging() -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if settings.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_policy(path: str | Path) -> list[PolicyMutation]:
    return load_calls(Path(path).read_text(encoding="utf-8"))


def build_store(calls: Sequence[PolicyMutation]) -> PolicyStore:
    return apply_calls(PolicyStore(), calls)


def describe_tree(tree: ConditionTree | None) -> str:
    """One line per node: index, kind, operator and parent."""
    if tree is None:
        return "any arguments"
    lines = []
    for index, node in enumerate(tree.nodes):
        line = f"{index}: {node.kind.name} {node.operator.name}"
        if index:
            line += f" ← {node.parent}"
        if node.literal:
            line += f" 0x{node.literal.hex()[:16]}…"
        if node.one_of:
            line += f" ({len(node.one_of)} values)"
        lines.append(line)
    return "\n".join(lines)


def show_policy(calls: Sequence[PolicyMutation], role_key: str | None = None) -> int:
    """
    Render the effective policy of every role (or of one role).

    Returns:
        The number of roles rendered.
    """
    policy = build_store(calls).effective_policy()
    if role_key is not None:
        role_key = normalize_role_key(role_key)
        policy = {role: targets for role, targets in policy.items() if role == role_key}

    if not policy:
        console.print("[yellow]⚠ No role allows any target[/yellow]")
        return 0

    for role, targets in policy.items():
        table = Table(title=f"Role {role}", show_lines=True)
        table.add_column("Target", style="cyan")
        table.add_column("Clearance")
        table.add_column("Options")
        table.add_column("Function", style="magenta")
        table.add_column("Function options")
        table.add_column("Conditions", style="dim")

        for target, (rule, functions) in targets.items():
            if not functions:
                table.add_row(target, rule.clearance.name, rule.options.name, "-", "-", "-")
                continue
            for selector, function in functions.items():
                options = function.options.name if function.options is not None else "inherit"
                table.add_row(
                    target,
                    rule.clearance.name,
                    rule.options.name,
                    selector,
                    options,
                    describe_tree(function.conditions),
                )
        console.print(table)
    return len(policy)


def prune_policy(calls: Sequence[PolicyMutation]) -> list[PolicyMutation]:
    pruned = remove_obsolete_calls(calls)
    console.print(
        f"  Calls: [bold]{len(calls)}[/bold] → [bold green]{len(pruned)}[/bold green] "
        f"([dim]{len(calls) - len(pruned)} obsolete[/dim])"
    )
    console.print_json(dump_calls(pruned))
    return pruned


def check_call(
    calls: Sequence[PolicyMutation],
    role_key: str,
    target: str,
    data: bytes,
    value: int = 0,
    operation: Operation = Operation.CALL,
) -> Verdict:
    """Check one call against the policy and print the verdict."""
    checker = PermissionChecker(build_store(calls))
    verdict = checker.check(role_key, target, value, data, operation)
    if verdict.is_allowed:
        console.print(f"[bold green]✓ {verdict.status.value}[/bold green]")
    else:
        console.print(f"[bold red]✗ {verdict.status.value}[/bold red]")
        if verdict.cause is not None:
            console.print(f"  cause: {verdict.cause.value} (condition {verdict.node_index})")
        if verdict.reason:
            console.print(f"  [dim]{verdict.reason}[/dim]")
    return verdict


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Roles Modifier policy auditor")
    commands = parser.add_subparsers(dest="command", required=True)

    show = commands.add_parser("show", help="Render the effective policy per role")
    show.add_argument("calls", help="JSON file with a list of policy calls")
    show.add_argument("--role", default=None, help="Only show this role key")

    prune = commands.add_parser("prune", help="Print the calls left after removing obsolete ones")
    prune.add_argument("calls", help="JSON file with a list of policy calls")

    check = commands.add_parser("check", help="Check one call against the policy")
    check.add_argument("calls", help="JSON file with a list of policy calls")
    check.add_argument("--role", required=True, help="Role key the call acts under")
    check.add_argument("--target", required=True, help="Target address")
    check.add_argument("--data", default="0x", help="Calldata as 0x-prefixed hex")
    check.add_argument("--value", type=int, default=0, help="Wei sent with the call")
    check.add_argument("--delegate", action="store_true", help="Check as a delegate call")

    args = parser.parse_args(argv)
    configure_logging()
    calls = load_policy(args.calls)

    if args.command == "show":
        show_policy(calls, args.role)
        sys.exit(0)
    if args.command == "prune":
        prune_policy(calls)
        sys.exit(0)

    operation = Operation.DELEGATE_CALL if args.delegate else Operation.CALL
    verdict = check_call(
        calls, args.role, args.target, decode_hex(args.data), args.value, operation
    )
    sys.exit(0 if verdict.is_allowed else 1)


if __name__ == "__main__":
    main()
