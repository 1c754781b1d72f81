"""Typer-based operator console for the relay."""
from __future__ import annotations

import json
import logging
import pathlib

import typer

from .codec import AuthorizationCodec
from .config import load_config
from .errors import InvalidAuthorization, RelayConfigurationError, RelayError
from .models import Authorization
from .verifier import SignatureVerifier

app = typer.Typer(help="Operate the authorization relay")

_DEFAULT_CONFIG = pathlib.Path("config/relayer.yaml")


@app.command()
def serve(
    config_path: pathlib.Path = typer.Option(_DEFAULT_CONFIG, "--config"),
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8080, "--port"),
    log_level: str = typer.Option("info", "--log-level"),
) -> None:
    """Run the relay HTTP API."""
    import uvicorn

    from .process import create_app

    logging.basicConfig(level=log_level.upper())
    uvicorn.run(create_app(config_path=config_path), host=host, port=port, log_level=log_level)


@app.command()
def digest(authorization_path: pathlib.Path = typer.Argument(..., exists=True, readable=True)) -> None:
    """Print the digest, request id and recovered signer of an authorization file."""
    try:
        authorization = Authorization.from_mapping(json.loads(authorization_path.read_text(encoding="utf-8")))
    except (InvalidAuthorization, json.JSONDecodeError) as exc:
        typer.echo(f"invalid authorization: {exc}", err=True)
        raise typer.Exit(code=2) from exc

    codec = AuthorizationCodec()
    value = codec.digest(authorization.operation, authorization.domain)
    try:
        signer = SignatureVerifier().recover(value, authorization.signature)
    except RelayError as exc:
        signer = f"<{exc.kind.value}: {exc}>"
    summary = {
        "digest": "0x" + value.hex(),
        "requestId": codec.request_id(authorization.operation),
        "principal": authorization.operation.principal,
        "signer": signer,
        "matches": signer == authorization.operation.principal,
    }
    typer.echo(json.dumps(summary, indent=2))


@app.command("check-config")
def check_config(config_path: pathlib.Path = typer.Argument(_DEFAULT_CONFIG)) -> None:
    """Validate a relay configuration file."""
    try:
        config = load_config(config_path, apply_env=False)
    except (RelayConfigurationError, ValueError) as exc:
        typer.echo(f"invalid configuration: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(
        json.dumps(
            {
                "domain": config.domain.to_dict(),
                "allowedTargets": [policy.target for policy in config.guard.allowed_targets],
                "rateLimit": config.guard.rate_limit,
                "maxGas": config.guard.max_gas,
                "storeBackend": config.store_backend,
                "maxConcurrency": config.max_concurrency,
            },
            indent=2,
        )
    )


if __name__ == "__main__":  # pragma: no cover
    app()
