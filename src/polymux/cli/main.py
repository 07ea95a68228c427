"""
Polymux CLI - run the gateway, or talk to one provider from the shell
"""
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import typer

from polymux.config import get_settings

app = typer.Typer(
    name="polymux",
    help="Multi-provider AI gateway",
    add_completion=False
)


@app.command(name="serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: API_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port (default: API_PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
):
    """Run the HTTP/WebSocket gateway"""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "polymux.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@app.command(name="ask")
def ask(
    prompt: str = typer.Argument(..., help="Prompt text"),
    provider: str = typer.Option("claude", "--provider", "-c", help="Catalog provider id"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model override"),
    cwd: Optional[Path] = typer.Option(None, "--cwd", help="Working directory for agent backends"),
    resume: Optional[str] = typer.Option(None, "--resume", help="Session id to resume"),
    user_id: Optional[str] = typer.Option(None, "--user", help="User whose credentials to use"),
):
    """
    Run one turn and print the reply.

    Examples:

        polymux ask "Explain this repo" --provider claude --cwd .

        polymux ask "Summarize RFC 9110" --provider deepseek
    """
    from polymux.gateway import build_gateway
    from polymux.models.commands import TurnOptions
    from polymux.utils.logging import setup_logging

    settings = get_settings()
    # stdout carries the reply only
    setup_logging(settings, stream=sys.stderr)

    gateway = build_gateway(settings)
    if not gateway.catalog.is_valid_provider(provider):
        typer.echo(f"Unknown provider: {provider}", err=True)
        raise typer.Exit(code=2)

    options = TurnOptions(
        model=model,
        cwd=str(cwd) if cwd else None,
        resume_session_id=resume,
        user_id=user_id,
    )

    async def run() -> str:
        try:
            return await gateway.turns.process_turn(provider, prompt, options)
        finally:
            await gateway.stop()

    reply = asyncio.run(run())
    typer.echo(reply)
    if reply.startswith("Error: "):
        raise typer.Exit(code=1)


@app.command(name="providers")
def providers_cmd(
    category: Optional[str] = typer.Option(None, "--category", help="Filter by category"),
    json_output: bool = typer.Option(False, "--json", help="JSON output"),
):
    """List the provider catalog"""
    from polymux.providers.catalog import load_catalog

    catalog = load_catalog(get_settings().provider_catalog_file)
    descriptors = catalog.list_by_category(category) if category else catalog.list_all()

    if json_output:
        typer.echo(json.dumps([d.to_public_dict() for d in descriptors], indent=2, ensure_ascii=False))
        return

    for descriptor in descriptors:
        auth = "own auth" if descriptor.manages_own_auth else descriptor.env_key or descriptor.credential_kind
        typer.echo(
            f"{descriptor.id:<12} {descriptor.transport_type.value:<24} "
            f"{descriptor.default_model:<28} {auth}"
        )


if __name__ == "__main__":
    app()
