# === NAVMAP v1 ===
# {
#   "module": "NeedFetch.cli",
#   "purpose": "Typer CLI for verified fetches and digest pinning",
#   "sections": [
#     {"id": "fetch", "name": "fetch", "anchor": "function-fetch", "kind": "function"},
#     {"id": "digest", "name": "digest", "anchor": "function-digest", "kind": "function"},
#     {"id": "version-cmd", "name": "version_cmd", "anchor": "function-version-cmd", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Typer CLI for NeedFetch.

Example:
    needfetch fetch https://cdn1/lib.py https://cdn2/lib.py --sha256 <hex> -o lib.py
    needfetch digest lib.py

Exit codes:
    0  delivered, or every source failed and ``--quiet-stop`` was given
    1  every source failed
    2  invalid configuration, or the content was rejected or could not be written
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console

from . import __version__
from .delivery import StructuredConsumer
from .digests import HashlibDigest
from .engine import FetchResult, NeedEngine
from .errors import ConfigError, SourcesExhausted
from .logging_config import setup_logging
from .settings import load_settings
from .sources import STOP, TRUST

app = typer.Typer(
    name="needfetch",
    help="Fetch a resource from mirrors, verify its digest, and fall back on failure",
    no_args_is_help=True,
)

_console = Console(stderr=True)


def _verbosity_level(verbose: int) -> Optional[str]:
    if verbose >= 2:
        return "DEBUG"
    if verbose == 1:
        return "INFO"
    return None


@app.command()
def fetch(
    sources: List[str] = typer.Argument(..., help="Source URLs in fallback order"),
    sha256: Optional[str] = typer.Option(
        None, "--sha256", "--digest", "-d", help="Expected hex digest (omit to print it)"
    ),
    trust_last: bool = typer.Option(
        False, "--trust-last", help="Deliver the last source even if its digest does not match"
    ),
    quiet_stop: bool = typer.Option(
        False, "--quiet-stop", help="Exit 0 without an error when every source fails"
    ),
    out: Optional[Path] = typer.Option(
        None, "--out", "-o", help="Write verified content here instead of stdout"
    ),
    timeout_ms: Optional[int] = typer.Option(
        None, "--timeout-ms", help="Per-attempt timeout in milliseconds"
    ),
    algorithm: Optional[str] = typer.Option(None, "--algorithm", "-a", help="hashlib algorithm"),
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", envvar="NEEDFETCH_CONFIG", help="YAML or JSON settings file"
    ),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="-v INFO, -vv DEBUG"),
) -> None:
    """Fetch the first source whose content matches the digest."""

    try:
        settings = load_settings(
            config,
            timeout_ms=timeout_ms,
            digest_algorithm=algorithm,
            log_level=_verbosity_level(verbose),
        )
    except ConfigError as exc:
        _console.print(f"[red]{exc}[/red]")
        raise typer.Exit(2)
    setup_logging(settings)

    source_list: list = list(sources)
    if trust_last:
        source_list.append(TRUST)
    if quiet_stop:
        source_list.append(STOP)
    if out is not None:
        consumer = StructuredConsumer(target_kind="file", execute_as=str(out))
    else:
        consumer = StructuredConsumer(target_kind="memory")

    engine = NeedEngine(settings)

    async def _run() -> FetchResult:
        try:
            return await engine.fetch(source_list, sha256, consumer)
        finally:
            await engine.aclose()

    try:
        result = asyncio.run(_run())
    except SourcesExhausted as exc:
        _console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    except ConfigError as exc:
        _console.print(f"[red]{exc}[/red]")
        raise typer.Exit(2)

    if result.state == "stopped":
        _console.print("[yellow]no source could be verified[/yellow]")
        return
    if not result.ok:
        assert result.delivery is not None
        _console.print(f"[red]{result.delivery.error}[/red]")
        raise typer.Exit(2)

    assert result.delivery is not None
    if out is None:
        typer.echo(result.delivery.content, nl=False)
    digest_text = result.actual_digest or "not computed (trusted source)"
    _console.print(f"[green]accepted[/green] {result.source} {settings.digest_algorithm}={digest_text}")
    if sha256 is None and result.actual_digest:
        _console.print(f"[cyan]pin with: --sha256 {result.actual_digest}[/cyan]")


@app.command()
def digest(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    algorithm: str = typer.Option("sha256", "--algorithm", "-a", help="hashlib algorithm"),
) -> None:
    """Print the digest of a local file for pinning in source lists."""

    try:
        provider = HashlibDigest(algorithm)
    except ConfigError as exc:
        _console.print(f"[red]{exc}[/red]")
        raise typer.Exit(2)
    typer.echo(provider(path.read_bytes()))


@app.command("version")
def version_cmd() -> None:
    """Show the installed version."""
    typer.echo(f"needfetch {__version__}")


if __name__ == "__main__":  # pragma: no cover
    app()
