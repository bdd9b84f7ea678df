"""tmz-auth CLI - Main entry point.

stdout carries only the JSON token payload; everything a human reads goes
to stderr.
"""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from .config import settings
from .errors import TokenHarvestError

app = typer.Typer(
    name="tmz-auth",
    help="Harvest Microsoft Teams access tokens from a browser session",
    no_args_is_help=True,
)
console = Console(stderr=True)

profile_app = typer.Typer(help="Persistent browser profile commands")
app.add_typer(profile_app, name="profile")

EXIT_OK = 0
EXIT_FAILURE = 1
# Distinct from a timeout so callers can retry interactively.
EXIT_SESSION_EXPIRED = 3


class ConsoleSink:
    """Narrate controller progress on the stderr console."""

    def __init__(self, out: Console | None = None):
        self.out = out or console

    def emit(self, message: str) -> None:
        self.out.print(f"[dim]\\[tmz-auth][/dim] {message}", highlight=False)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_controller(
    *,
    timeout: int,
    headless: bool,
    fresh: bool,
    profile_dir: Path,
    interrupt: asyncio.Event,
):
    from .browser import SessionHost
    from .harvest import AcquisitionController, RunConfig

    host = SessionHost(
        scopes=settings.resource_scopes(),
        browser_args=settings.browser_args,
        token_endpoint_marker=settings.token_endpoint_marker,
    )
    config = RunConfig(
        timeout=timeout,
        headless=headless,
        force_fresh=fresh,
        poll_interval=settings.poll_interval_seconds,
        stale_threshold=settings.stale_threshold,
    )
    return AcquisitionController(
        host,
        config,
        profile_dir=profile_dir,
        entry_url=settings.entry_url,
        app_hosts=settings.app_hosts,
        login_hosts=settings.login_hosts,
        scopes=settings.resource_scopes(),
        is_real=settings.token_predicate(),
        sink=ConsoleSink(),
        interrupt=interrupt,
    )


async def _acquire(**options):
    interrupt = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _handle_signal(_signum, _frame=None) -> None:
        # Ends the run as an interrupted timeout; the browser is still closed.
        loop.call_soon_threadsafe(interrupt.set)

    prev_int = prev_term = None
    try:
        prev_int = signal.getsignal(signal.SIGINT)
        prev_term = signal.getsignal(signal.SIGTERM)
        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)
    except ValueError:
        # Not on the main thread (e.g. under a test runner); no handlers.
        prev_int = prev_term = None

    try:
        controller = _build_controller(interrupt=interrupt, **options)
        return await controller.run()
    finally:
        if prev_int is not None:
            signal.signal(signal.SIGINT, prev_int)
        if prev_term is not None:
            signal.signal(signal.SIGTERM, prev_term)


def _run_acquisition(
    *,
    timeout: int,
    headless: bool,
    fresh: bool,
    profile_dir: Path | None,
    verbose: bool,
) -> None:
    from .harvest import SessionExpiredHeadless, Succeeded, TimedOut

    _configure_logging(verbose)
    resolved = profile_dir or settings.resolved_profile_dir

    if not headless:
        console.print(
            Panel(
                "[bold yellow]Complete the Teams sign-in in the browser window.[/bold yellow]\n\n"
                "The profile is kept, so later refreshes can run headless.\n"
                f"[dim]Profile: {resolved}[/dim]",
                title="Login",
            )
        )

    try:
        outcome = asyncio.run(
            _acquire(
                timeout=timeout,
                headless=headless,
                fresh=fresh,
                profile_dir=resolved,
            )
        )
    except TokenHarvestError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(EXIT_FAILURE)

    if isinstance(outcome, Succeeded):
        typer.echo(json.dumps(outcome.to_payload()))
        raise typer.Exit(EXIT_OK)

    if isinstance(outcome, SessionExpiredHeadless):
        console.print(
            "[red]Session expired.[/red] "
            "[dim]Run 'tmz-auth login' (without --headless) to sign in again.[/dim]"
        )
        raise typer.Exit(EXIT_SESSION_EXPIRED)

    if isinstance(outcome, TimedOut) and outcome.interrupted:
        console.print("\n[yellow]Login cancelled[/yellow]")
    else:
        console.print(f"[red]Timed out after {timeout}s waiting for tokens.[/red]")
    raise typer.Exit(EXIT_FAILURE)


# ============================================================================
# Token Commands
# ============================================================================


@app.command("login")
def login(
    timeout: int = typer.Option(
        settings.timeout_seconds,
        "--timeout", "-t",
        help="Max seconds to wait for tokens",
    ),
    headless: bool = typer.Option(False, "--headless", help="Run without a browser window"),
    fresh: bool = typer.Option(False, "--fresh", help="Delete the saved profile first"),
    profile_dir: Path = typer.Option(
        None,
        "--profile-dir",
        help="Browser profile directory (default: state dir)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging on stderr"),
):
    """Sign in through the browser and print the tokens as JSON.

    First run: complete SSO/MFA in the window that opens.
    Later runs: the saved profile usually signs in by itself.
    """
    _run_acquisition(
        timeout=timeout,
        headless=headless,
        fresh=fresh,
        profile_dir=profile_dir,
        verbose=verbose,
    )


@app.command("refresh")
def refresh(
    timeout: int = typer.Option(
        settings.timeout_seconds,
        "--timeout", "-t",
        help="Max seconds to wait for tokens",
    ),
    interactive: bool = typer.Option(
        False,
        "--interactive",
        help="Show the browser window instead of running headless",
    ),
    profile_dir: Path = typer.Option(
        None,
        "--profile-dir",
        help="Browser profile directory (default: state dir)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging on stderr"),
):
    """Renew tokens headless from the saved profile (for schedulers)."""
    _run_acquisition(
        timeout=timeout,
        headless=not interactive,
        fresh=False,
        profile_dir=profile_dir,
        verbose=verbose,
    )


# ============================================================================
# Profile Commands
# ============================================================================


@profile_app.command("path")
def profile_path():
    """Show where the browser profile is stored."""
    typer.echo(str(settings.resolved_profile_dir))


@profile_app.command("reset")
def profile_reset(
    profile_dir: Path = typer.Option(
        None,
        "--profile-dir",
        help="Browser profile directory (default: state dir)",
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
):
    """Delete the saved browser profile (forces a fresh sign-in)."""
    from .browser import SessionHost

    target = profile_dir or settings.resolved_profile_dir
    if not target.exists():
        console.print(f"[dim]No profile at {target}[/dim]")
        raise typer.Exit(0)

    if not force:
        if not typer.confirm(f"Delete browser profile at {target}?"):
            console.print("[yellow]Cancelled[/yellow]")
            raise typer.Exit(0)

    if SessionHost.purge_profile(target):
        console.print("[green]Browser profile removed[/green]")
    else:
        console.print(f"[red]Could not remove {target}[/red]")
        raise typer.Exit(EXIT_FAILURE)


@app.command()
def version():
    """Show version information."""
    from . import __version__

    typer.echo(f"tmz-auth v{__version__}")


if __name__ == "__main__":
    app()
