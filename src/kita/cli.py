"""Command line entry point."""

import asyncio
from pathlib import Path

import httpx
import typer
from aiohttp import web

from kita import __version__
from kita._logging import configure_logging, get_logger
from kita.accounts import AccountManager
from kita.client import AcmeClient
from kita.config import Settings, load_settings
from kita.controller import ReconcileController
from kita.directory import DirectoryCache
from kita.exceptions import ConfigurationError
from kita.orchestrator import CertificateOrchestrator
from kita.renewal import RenewalEvaluator, RenewalScheduler
from kita.responder import ChallengeResponder, create_app
from kita.solver import ChallengeSolver
from kita.store import KubernetesResourceStore

logger = get_logger(__name__)

app = typer.Typer(
    name="kita",
    help="Issue and renew Ingress TLS certificates from ACME servers.",
    add_completion=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"kita version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Kubernetes Ingress TLS via ACME."""


@app.command()
def run(
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML settings file (defaults to $KITA_CONFIG_FILE).",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Log what would be issued without contacting the ACME server.",
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        help="Override the configured log level.",
    ),
) -> None:
    """Run the controller until interrupted."""
    try:
        settings = load_settings(config)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e

    if dry_run:
        settings = settings.model_copy(update={"dry_run": True})
    configure_logging(log_level or settings.log_level)

    try:
        asyncio.run(serve(settings))
    except ConfigurationError as e:
        logger.error("Startup failed", extra={"error": str(e)})
        raise typer.Exit(code=1) from e
    except KeyboardInterrupt:
        logger.info("Stopped")


async def serve(settings: Settings) -> None:
    """Wire the components together and run them.

    Directories of every issuer are loaded before anything else starts, so
    a misconfigured issuer fails startup.
    """
    store = KubernetesResourceStore.from_environment(settings.namespace)
    responder = ChallengeResponder()

    async with httpx.AsyncClient(timeout=settings.response_timeout, verify=settings.ca_cert) as http:
        directories = DirectoryCache(http, settings.issuers)
        await directories.load()

        accounts = AccountManager(AcmeClient(http, directories))
        solver = ChallengeSolver(
            store,
            responder,
            solver_role=settings.solver_role,
            probe_timeout=settings.challenge_wait_timeout,
            ready_timeout=settings.solver_ready_timeout,
        )
        scheduler = RenewalScheduler()
        controller = ReconcileController(
            store,
            CertificateOrchestrator(accounts, solver, settings.auth_finalize),
            RenewalEvaluator(scheduler),
            scheduler,
            settings,
        )

        runner = web.AppRunner(create_app(responder))
        await runner.setup()
        site = web.TCPSite(runner, settings.responder_host, settings.responder_port)
        await site.start()
        logger.info(
            "Challenge responder listening",
            extra={"host": settings.responder_host, "port": settings.responder_port},
        )

        try:
            await controller.run()
        finally:
            await controller.close()
            await runner.cleanup()
