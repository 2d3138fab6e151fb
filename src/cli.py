"""Click CLI for running and operating the Meta webhook relay."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

import click
import uvicorn

from src.audit.logger import validate_audit_chain
from src.config import (
    ConfigError,
    ConfigSource,
    EnvConfigSource,
    JsonFileConfigSource,
    Settings,
    load_settings,
)
from src.models import Platform
from src.server.app import create_app
from src.webhook.credentials import CredentialResolver
from src.webhook.signature import sign_body


def _source(config_path: str | None) -> ConfigSource:
    if config_path:
        return JsonFileConfigSource(config_path)
    return EnvConfigSource()


def _load(config_path: str | None) -> Settings:
    try:
        return load_settings(_source(config_path))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
@click.option(
    "--log-level",
    default=lambda: os.environ.get("LOG_LEVEL", "INFO"),
    show_default="INFO",
    help="Python logging level.",
)
def cli(log_level: str) -> None:
    """Meta webhook relay for Instagram and Messenger."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.option("--config", "config_path", default=lambda: os.environ.get("CONFIG_PATH"),
              help="Path to config.json (defaults to environment variables).")
@click.option("--host", default=None, help="Bind address (overrides config).")
@click.option("--port", default=None, type=int, help="Bind port (overrides config).")
def serve(config_path: str | None, host: str | None, port: int | None) -> None:
    """Run the webhook server."""
    settings = _load(config_path)
    app = create_app(settings)
    uvicorn.run(
        app,
        host=host or settings.server.host,
        port=port or settings.server.port,
        log_level=logging.getLevelName(logging.getLogger().level).lower(),
    )


@cli.command("check-config")
@click.option("--config", "config_path", default=lambda: os.environ.get("CONFIG_PATH"),
              help="Path to config.json (defaults to environment variables).")
def check_config(config_path: str | None) -> None:
    """Validate configuration and summarize resolved credentials."""
    settings = _load(config_path)
    resolver = CredentialResolver(settings.meta)
    summary = {
        "verify_tokens": len(resolver.verify_tokens()),
        "signing_secrets": {
            p.value: len(resolver.candidate_secrets(p)) for p in Platform
        },
        "delivery_token": {
            p.value: resolver.access_token(p) is not None for p in Platform
        },
        "strict_secret_scope": settings.meta.strict_secret_scope,
        "agent_mode": settings.openclaw.mode,
        "agent_url": (
            settings.openclaw.upstream_url
            if settings.openclaw.mode == "chat" else settings.openclaw.hook_url
        ),
    }
    click.echo(json.dumps(summary, indent=2))


@cli.command()
@click.argument("body_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--secret", required=True, help="App secret used to sign the body.")
def sign(body_file: str, secret: str) -> None:
    """Print the X-Hub-Signature-256 value for a request body file."""
    click.echo(sign_body(Path(body_file).read_bytes(), secret))


@cli.command("verify-audit")
@click.argument("log_path", type=click.Path(exists=True, dir_okay=False))
def verify_audit(log_path: str) -> None:
    """Validate the hash chain of an audit log."""
    result = validate_audit_chain(Path(log_path))
    if not result.valid:
        raise click.ClickException(f"Audit chain broken at line {result.broken_at_line}")
    click.echo("Audit chain valid")


if __name__ == "__main__":
    cli()
