"""Hookseal CLI - sign and verify webhook payloads from the command line."""

from __future__ import annotations

import asyncio
import sys
from typing import BinaryIO

import click
from rich.console import Console
from rich.table import Table

from hookseal import __version__
from hookseal.config import ReplayProtectionConfig, WebhookSettings
from hookseal.errors import WebhookError
from hookseal.providers import WEBHOOK_PROVIDERS, get_provider, sign_payload
from hookseal.verifier import VerificationRequest, VerificationResult, WebhookVerifier

console = Console()

BUILTIN_PROVIDERS = [name.value for name in WEBHOOK_PROVIDERS]


def _read_body(data: str | None, file: BinaryIO | None) -> bytes:
    if data is not None and file is not None:
        raise click.UsageError("Use either --data or --file, not both")
    if data is not None:
        return data.encode("utf-8")
    if file is not None:
        return file.read()
    raise click.UsageError("A body is required: pass --data or --file")


def _parse_headers(values: tuple[str, ...]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for value in values:
        name, sep, header_value = value.partition(":")
        if not sep or not name.strip():
            raise click.BadParameter(f"Expected 'Name: value', got {value!r}", param_hint="-H")
        headers[name.strip().lower()] = header_value.strip()
    return headers


@click.group()
@click.version_option(__version__, prog_name="hookseal")
def main() -> None:
    """Hookseal - verify webhook signatures and block replays."""


@main.command()
def providers() -> None:
    """List the built-in providers."""
    table = Table(title="Built-in providers")
    table.add_column("Provider", style="cyan")
    table.add_column("Signature header")
    table.add_column("Timestamp header")
    table.add_column("Algorithm")
    table.add_column("Encoding")

    for name in BUILTIN_PROVIDERS:
        provider = get_provider(name)
        timestamp_header = provider.timestamp_header
        if timestamp_header is None and provider.embeds_timestamp:
            timestamp_header = "(in signature)"
        table.add_row(
            provider.name,
            provider.signature_header,
            timestamp_header or "-",
            provider.algorithm.value,
            provider.signature_encoding.value,
        )

    console.print(table)


@main.command()
@click.argument("provider", type=click.Choice(BUILTIN_PROVIDERS, case_sensitive=False))
@click.option("--secret", "-s", required=True, envvar="HOOKSEAL_SECRET", help="Shared secret")
@click.option("--timestamp", "-t", type=int, default=None, help="Epoch seconds (default: now)")
@click.option("--data", "-d", default=None, help="Body as a string")
@click.option("--file", "-f", type=click.File("rb"), default=None, help="Body file ('-' for stdin)")
def sign(
    provider: str,
    secret: str,
    timestamp: int | None,
    data: str | None,
    file: BinaryIO | None,
) -> None:
    """Print the headers a sender would attach to a payload."""
    body = _read_body(data, file)
    headers = sign_payload(get_provider(provider), body, secret, timestamp)
    for name, value in headers.items():
        console.print(f"{name}: {value}", soft_wrap=True, highlight=False, markup=False)


@main.command()
@click.argument("provider", type=click.Choice(BUILTIN_PROVIDERS, case_sensitive=False))
@click.option("--secret", "-s", required=True, envvar="HOOKSEAL_SECRET", help="Shared secret")
@click.option("--header", "-H", "header_values", multiple=True, help="Header as 'Name: value'")
@click.option("--data", "-d", default=None, help="Body as a string")
@click.option("--file", "-f", type=click.File("rb"), default=None, help="Body file ('-' for stdin)")
@click.option(
    "--tolerance",
    type=click.IntRange(min=1),
    default=300,
    show_default=True,
    help="Timestamp tolerance in seconds",
)
@click.option("--no-replay", is_flag=True, help="Skip timestamp freshness checks")
def verify(
    provider: str,
    secret: str,
    header_values: tuple[str, ...],
    data: str | None,
    file: BinaryIO | None,
    tolerance: int,
    no_replay: bool,
) -> None:
    """Verify a payload against its signature headers."""
    body = _read_body(data, file)
    headers = _parse_headers(header_values)
    settings = WebhookSettings(
        providers={provider: secret},
        replay_protection=ReplayProtectionConfig(enabled=not no_replay, tolerance=tolerance),
    )

    async def run() -> VerificationResult:
        async with WebhookVerifier(settings) as verifier:
            return await verifier.check(
                VerificationRequest(raw_body=body, headers=headers, provider=provider)
            )

    try:
        result = asyncio.run(run())
    except WebhookError as e:
        console.print(f"[red]{e.code}[/red] {e.message}")
        sys.exit(1)

    if not result.valid:
        code = result.failure.code if result.failure else "INVALID"
        console.print(f"[red]{code}[/red] {result.error}")
        sys.exit(1)

    console.print(f"[green]Verified[/green] {result.provider}")
    if result.timestamp is not None:
        console.print(f"  Timestamp:  {result.timestamp.isoformat()}", style="dim")


if __name__ == "__main__":
    main()
