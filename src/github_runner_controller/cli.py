"""
Command-line interface for GitHub Runner Controller.

This module provides the CLI for running the controller, validating
configuration files and inspecting the runner fleet.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List

import structlog
import typer
import yaml
from pydantic import ValidationError

from .controllers.runner_controller import RunnerController
from .models.config import ControllerConfiguration
from .models.runner import Pool, RunnerStatus
from .storage.sql import SQLRunnerStore
from .utils.security import SecurityValidator

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

app = typer.Typer(
    name="github-runner-controller",
    help="Autoscaling controller for self-hosted GitHub Actions runners",
    no_args_is_help=True
)

logger = structlog.get_logger()


def load_configuration(config_path: str) -> ControllerConfiguration:
    """
    Load and validate configuration from file.

    Args:
        config_path: Path to configuration file

    Returns:
        Validated configuration object

    Raises:
        typer.Exit: If configuration is invalid
    """
    config_file = Path(config_path)
    if not config_file.exists():
        typer.echo(f"Error: Configuration file not found: {config_path}", err=True)
        raise typer.Exit(1)

    try:
        with open(config_file, "r") as f:
            if config_path.endswith(".json"):
                config_data = json.load(f)
            else:
                config_data = yaml.safe_load(f)

        config = ControllerConfiguration(**(config_data or {}))

        typer.echo(f"Configuration loaded successfully from {config_path}")
        return config

    except ValidationError as e:
        typer.echo("Configuration validation error:", err=True)
        for error in e.errors():
            typer.echo(f"  {error['loc']}: {error['msg']}", err=True)
        raise typer.Exit(1)
    except (OSError, ValueError, yaml.YAMLError) as e:
        typer.echo(f"Error loading configuration: {e}", err=True)
        raise typer.Exit(1)


def setup_logging(log_level: str, log_format: str = "json") -> None:
    """Setup structured logging with specified level and format."""
    logging.basicConfig(level=getattr(logging, log_level.upper()))

    if log_format == "console":
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="%H:%M:%S"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.dev.ConsoleRenderer()
            ]
        )


def collect_security_issues(config: ControllerConfiguration) -> List[str]:
    """Run the pool security checks over every configured pool."""
    validator = SecurityValidator()
    issues: List[str] = []
    for definition in config.pools:
        try:
            pool = Pool(
                credential_id=definition.credential,
                **definition.model_dump(exclude={"credential"}),
            )
        except ValidationError as e:
            issues.append(f"{definition.name}: invalid pool ({e.errors()[0]['msg']})")
            continue
        runner_image = config.docker.runner_image if config.docker.enabled else None
        issues.extend(f"{definition.name}: {issue}" for issue in validator.validate_pool(pool, runner_image))
    return issues


@app.command()
def run(
    config: str = typer.Option(
        "config.yaml",
        "--config", "-c",
        help="Path to configuration file",
        envvar="GITHUB_CONTROLLER_CONFIG"
    ),
    log_level: str = typer.Option(
        "INFO",
        "--log-level", "-l",
        help="Logging level",
        envvar="LOG_LEVEL"
    ),
    log_format: str = typer.Option(
        "json",
        "--log-format",
        help="Log format (json or console)",
        envvar="LOG_FORMAT"
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Validate configuration without starting controller"
    )
) -> None:
    """
    Start the GitHub Runner Controller.

    Loads configuration, seeds credentials and pools, recovers runners
    from the previous session and serves until interrupted.
    """
    try:
        setup_logging(log_level, log_format)

        typer.echo("🚀 Starting GitHub Runner Controller")
        typer.echo(f"📄 Loading configuration from: {config}")

        controller_config = load_configuration(config)

        if controller_config.encryption_key is None:
            typer.echo("⚠️  ENCRYPTION_KEY is not set - stored secrets use a development key", err=True)

        if dry_run:
            typer.echo("✅ Configuration validation successful (dry run)")
            typer.echo(f"🔑 Credentials configured: {len(controller_config.credentials)}")
            typer.echo(f"📊 Pools configured: {len(controller_config.pools)}")
            typer.echo(f"🐳 Docker runners: {'enabled' if controller_config.docker.enabled else 'disabled'}")
            typer.echo(f"🔄 Reconcile interval: {controller_config.reconciler.interval}s")
            return

        controller = RunnerController(controller_config)

        asyncio.run(_run_controller(controller))

    except KeyboardInterrupt:
        typer.echo("\n🛑 Shutdown requested by user")
    except typer.Exit:
        raise
    except Exception as e:
        typer.echo(f"❌ Controller failed: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def validate(
    config: str = typer.Option(
        "config.yaml",
        "--config", "-c",
        help="Path to configuration file"
    )
) -> None:
    """
    Validate configuration file without starting the controller.

    Checks credential and pool references and reports pool settings
    that weaken runner isolation.
    """
    typer.echo("🔍 Validating configuration...")

    controller_config = load_configuration(config)
    security_issues = collect_security_issues(controller_config)

    if security_issues:
        typer.echo("⚠️  Security issues found:", err=True)
        for issue in security_issues:
            typer.echo(f"  - {issue}", err=True)

    typer.echo("✅ Configuration validation successful")
    typer.echo(f"🔑 Credentials: {len(controller_config.credentials)}")
    typer.echo(f"📊 Pools: {len(controller_config.pools)}")
    typer.echo(f"🧩 GitHub App: {'configured' if controller_config.github_app else 'not configured'}")
    typer.echo(f"🔒 Metrics enabled: {controller_config.enable_metrics}")

    if security_issues:
        typer.echo(f"⚠️  Security warnings: {len(security_issues)}")
    else:
        typer.echo("🛡️  No security issues found")


SAMPLE_CONFIG: Dict[str, Any] = {
    "github": {
        "api_url": "https://api.github.com",
        "web_url": "https://github.com",
    },
    "storage": {
        "database_url": "sqlite+aiosqlite:///data/github-runner-controller.db",
    },
    "docker": {
        "enabled": True,
        "runner_image": "myoung34/github-runner:2.319.1",
    },
    "native": {
        "runners_dir": "~/.github-runner-controller/runners",
    },
    "reconciler": {
        "interval": 300,
        "initial_delay": 10,
    },
    "credentials": [
        {
            "name": "my-org",
            "type": "pat",
            "scope": "org",
            "target": "my-org",
            "token_env": "GITHUB_TOKEN",
            "webhook_secret_env": "GITHUB_WEBHOOK_SECRET",
        }
    ],
    "pools": [
        {
            "name": "linux-docker",
            "credential": "my-org",
            "platform": "linux",
            "architecture": "x64",
            "isolation_type": "docker",
            "labels": ["docker"],
            "min_runners": 0,
            "max_runners": 5,
            "warm_runners": 1,
            "idle_timeout_minutes": 10,
        }
    ],
    "monitoring_port": 8080,
    "log_level": "INFO",
    "enable_metrics": True,
}


@app.command()
def generate_config(
    output: str = typer.Option(
        "config.yaml",
        "--output", "-o",
        help="Output configuration file path"
    ),
    format: str = typer.Option(
        "yaml",
        "--format", "-f",
        help="Configuration format (yaml or json)"
    )
) -> None:
    """
    Generate a sample configuration file.

    Tokens and webhook secrets are read from environment variables so
    the generated file holds no secrets.
    """
    try:
        with open(Path(output), "w") as f:
            if format.lower() == "json":
                json.dump(SAMPLE_CONFIG, f, indent=2)
            else:
                yaml.dump(SAMPLE_CONFIG, f, default_flow_style=False, indent=2, sort_keys=False)

        typer.echo(f"✅ Sample configuration generated: {output}")
        typer.echo("🔧 Please update the credential targets and pool labels before use")
        typer.echo("🔑 Set GITHUB_TOKEN, GITHUB_WEBHOOK_SECRET and ENCRYPTION_KEY in the environment")

    except OSError as e:
        typer.echo(f"❌ Failed to generate configuration: {e}", err=True)
        raise typer.Exit(1)


async def collect_status(store: SQLRunnerStore) -> Dict[str, Dict[str, int]]:
    """Runner counts per pool name and status."""
    await store.initialize()
    try:
        pools = {p.id: p.name for p in await store.list_pools()}
        summary: Dict[str, Dict[str, int]] = {
            name: {s.value: 0 for s in RunnerStatus} for name in pools.values()
        }
        for runner in await store.list_runners():
            pool_name = pools.get(runner.pool_id or "", "unpooled")
            counts = summary.setdefault(pool_name, {s.value: 0 for s in RunnerStatus})
            counts[runner.status.value] += 1
        return summary
    finally:
        await store.close()


@app.command()
def status(
    config: str = typer.Option(
        "config.yaml",
        "--config", "-c",
        help="Path to configuration file"
    ),
    format: str = typer.Option(
        "table",
        "--format", "-f",
        help="Output format (table, json, yaml)"
    )
) -> None:
    """
    Display runner counts per pool and status.

    Reads the controller's store directly, so it works whether or not
    the controller is running.
    """
    controller_config = load_configuration(config)
    try:
        summary = asyncio.run(collect_status(SQLRunnerStore(controller_config.storage.database_url)))
    except Exception as e:
        typer.echo(f"❌ Failed to read runner state: {e}", err=True)
        raise typer.Exit(1)

    if format == "json":
        typer.echo(json.dumps(summary, indent=2))
        return
    if format == "yaml":
        typer.echo(yaml.dump(summary, default_flow_style=False))
        return

    statuses = [s.value for s in RunnerStatus]
    width = max([len("pool")] + [len(name) for name in summary])
    typer.echo("  ".join(["pool".ljust(width)] + [s.rjust(11) for s in statuses]))
    for pool_name, counts in sorted(summary.items()):
        typer.echo("  ".join([pool_name.ljust(width)] + [str(counts[s]).rjust(11) for s in statuses]))
    if not summary:
        typer.echo("No pools or runners found")


async def _run_controller(controller: RunnerController) -> None:
    """Run the controller with proper async handling."""
    try:
        await controller.start()
    except asyncio.CancelledError:
        logger.info("Shutdown signal received")
    except Exception as e:
        logger.error("Controller error", error=str(e))
        raise
    finally:
        try:
            await controller.stop()
        except Exception as e:
            logger.error("Error during controller shutdown", error=str(e))


def main() -> None:
    """Main entry point for the CLI application."""
    app()


if __name__ == "__main__":
    main()
