"""
Gatekeeper CLI
Operator commands for validating rules and probing the counter store.
"""

import asyncio
import json
import logging
import sys

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from gatekeeper.config import settings
from gatekeeper.limiter import create_limiter
from gatekeeper.rules import ConfigurationError, RuleRegistry
from gatekeeper.store.factory import initialize_store, shutdown_store


console = Console()


def setup_logging(level: str) -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
def cli(log_level: str | None):
    """Gatekeeper - distributed request admission control."""
    load_dotenv()
    setup_logging(log_level or settings.log_level)


@cli.command()
@click.argument("rules_file", type=click.Path(dir_okay=False), default=None, required=False)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def validate(rules_file: str | None, as_json: bool):
    """Load and validate a rules file."""
    path = rules_file or settings.rules_path
    try:
        registry = RuleRegistry.from_file(path)
    except ConfigurationError as e:
        console.print(f"[red]Invalid rules: {e}[/red]")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(registry.to_dict(), indent=2))
        return

    table = Table(title=f"Rules ({path})")
    table.add_column("Rule", style="cyan")
    table.add_column("Algorithm")
    table.add_column("Capacity", justify="right")
    table.add_column("Refill/s", justify="right")
    table.add_column("Window s", justify="right")
    table.add_column("Fallback")

    for rule in registry:
        table.add_row(
            rule.rule_id,
            rule.algorithm.value,
            str(rule.capacity),
            "-" if rule.refill_rate_per_second is None else f"{rule.refill_rate_per_second:g}",
            "-" if rule.window_seconds is None else str(rule.window_seconds),
            rule.effective_fallback.value,
        )

    console.print(table)


@cli.command()
@click.argument("client_key")
@click.argument("rule_id")
@click.option("--count", "-n", default=1, show_default=True, help="Number of checks to run")
@click.option("--rules", "rules_file", default=None, help="Rules file (defaults to RULES_PATH)")
def check(client_key: str, rule_id: str, count: int, rules_file: str | None):
    """Run admission checks against the configured store."""

    async def run() -> list[dict]:
        registry = RuleRegistry.from_file(rules_file or settings.rules_path)
        registry.require([rule_id])
        store = await initialize_store()
        try:
            limiter = create_limiter(registry=registry, store=store)
            return [(await limiter.check(client_key, rule_id)).to_dict() for _ in range(count)]
        finally:
            await shutdown_store()

    try:
        verdicts = asyncio.run(run())
    except (ConfigurationError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    table = Table(title=f"{client_key} / {rule_id}")
    table.add_column("#", justify="right")
    table.add_column("Allowed")
    table.add_column("Remaining", justify="right")
    table.add_column("Retry after", justify="right")
    table.add_column("Fallback")

    for i, verdict in enumerate(verdicts, 1):
        table.add_row(
            str(i),
            "[green]yes[/green]" if verdict["allowed"] else "[red]no[/red]",
            str(verdict["remaining"]),
            f"{verdict['retry_after_seconds']:.3f}",
            "yes" if verdict["fallback"] else "",
        )

    console.print(table)


@cli.command()
def health():
    """Check counter store health."""

    async def run() -> dict:
        store = await initialize_store()
        try:
            return await store.health_check()
        finally:
            await shutdown_store()

    try:
        status = asyncio.run(run())
    except ValueError as e:
        console.print(f"[red]Store misconfigured: {e}[/red]")
        sys.exit(1)

    if status.get("connected"):
        console.print(f"[green]{status['backend']} store is healthy[/green]")
    else:
        console.print(f"[red]{status['backend']} store unavailable: {status.get('error', 'unknown')}[/red]")
        sys.exit(1)


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
