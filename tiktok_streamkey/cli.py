"""CLI entry point for TikTok Streamkey."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import NoReturn

import click

from . import __version__
from .config import Settings, load_settings
from .oauth.flow import (
    AcquisitionError,
    AcquisitionTimeoutError,
    ExchangeNetworkError,
    ExchangeParseError,
    MissingVerifierError,
    TokenExchangeError,
    WindowClosedByUser,
)
from .oauth.manager import AcquisitionInProgressError, AuthManager
from .output import OutputHandler
from .stream_api import StreamAPI, StreamAPIError, StreamCategory

# Logger for CLI
logger = logging.getLogger("streamkey")

NO_TOKEN_HELP = "No token found. Run 'streamkey login' first."


def _acquisition_help(error: AcquisitionError) -> str:
    """Suggest what to do after a failed acquisition attempt."""
    if isinstance(error, WindowClosedByUser):
        return "The browser window was closed before authorization finished. Run 'streamkey login' again."
    if isinstance(error, AcquisitionTimeoutError):
        return "Authorization took too long. Increase STREAMKEY_AUTH_TIMEOUT or try again."
    if isinstance(error, ExchangeParseError):
        return "Streamlabs answered the token exchange with a non-JSON page. Try again later."
    if isinstance(error, ExchangeNetworkError):
        return "The token exchange request failed. Check your network connection and try again."
    if isinstance(error, TokenExchangeError):
        return "Streamlabs rejected the authorization code. Run 'streamkey login --force' to start over."
    if isinstance(error, MissingVerifierError):
        return "Internal error: no PKCE verifier was available for the exchange."
    if isinstance(error, AcquisitionInProgressError):
        return "Wait for the running login to finish."
    return "Run with --verbose for details."


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False),
    help="Directory for cookies.json and tokens.json (default: current directory)",
)
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(
    ctx: click.Context, json_mode: bool, data_dir: str | None, env_path: str | None, verbose: bool
) -> None:
    """TikTok Streamkey - Get TikTok LIVE stream keys via Streamlabs."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["data_dir"] = Path(data_dir).expanduser() if data_dir else None
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode)

    # Configure logging based on verbosity
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_settings(ctx: click.Context) -> Settings | NoReturn:
    """Get settings from context, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return load_settings(ctx.obj["data_dir"], ctx.obj["env_path"])
    except ValueError as e:
        output.error(e, error_type="ConfigError", help_text="Check the STREAMKEY_* environment variables.")
        raise SystemExit(1)  # Never reached due to sys.exit in output.error


def get_manager(ctx: click.Context) -> AuthManager:
    output: OutputHandler = ctx.obj["output"]
    return AuthManager(get_settings(ctx), on_status=output.status)


def require_token(ctx: click.Context) -> str | NoReturn:
    """Get the cached token, exiting with an error if there is none."""
    output: OutputHandler = ctx.obj["output"]
    token = get_manager(ctx).session_cache.get_token()
    if token is None:
        output.error(FileNotFoundError("No cached token"), error_type="NotLoggedIn", help_text=NO_TOKEN_HELP)
        raise SystemExit(1)  # Never reached due to sys.exit in output.error
    return token


@main.command()
@click.option("--force", "-f", is_flag=True, help="Ignore the cached token and log in again")
@click.pass_context
def login(ctx: click.Context, force: bool) -> None:
    """Log in to TikTok through Streamlabs and cache the token."""
    output: OutputHandler = ctx.obj["output"]
    manager = get_manager(ctx)

    try:
        auth_data = asyncio.run(manager.retrieve_auth_data(force=force))
    except AcquisitionError as e:
        output.error(e, help_text=_acquisition_help(e))
        return

    status = manager.get_status()
    output.success(
        status.to_dict(),
        human_message=(
            f"Token retrieved successfully ({status.token_preview}).\n"
            f"Saved to {manager.tokens_path}"
        ),
    )
    logger.debug(f"Auth data fields: {sorted(auth_data)}")


@main.command()
@click.pass_context
def logout(ctx: click.Context) -> None:
    """Remove the cached token and saved browser cookies."""
    output: OutputHandler = ctx.obj["output"]
    removed = get_manager(ctx).logout()
    output.success(
        {"logged_out": removed},
        human_message="Logged out." if removed else "Nothing to remove; not logged in.",
    )


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the cached authorization state."""
    output: OutputHandler = ctx.obj["output"]
    auth_status = get_manager(ctx).get_status()

    if output.json_mode:
        output.success(auth_status.to_dict())
        return

    if auth_status.authenticated:
        click.secho(f"Logged in (token {auth_status.token_preview})", fg="green")
    else:
        click.secho("Not logged in", fg="yellow")
    click.echo(f"  Token cache: {auth_status.tokens_path}")
    click.echo(f"  Cookie jar:  {auth_status.cookies_path} ({auth_status.cookie_count} cookies)")


@main.command()
@click.option("--force", "-f", is_flag=True, help="Ignore the cached token and log in again")
@click.pass_context
def token(ctx: click.Context, force: bool) -> None:
    """Print the Streamlabs token, logging in if needed."""
    output: OutputHandler = ctx.obj["output"]
    manager = get_manager(ctx)

    try:
        oauth_token = asyncio.run(manager.retrieve_token(force=force))
    except AcquisitionError as e:
        output.error(e, help_text=_acquisition_help(e))
        return

    output.success({"oauth_token": oauth_token}, human_message=oauth_token)


@main.command()
@click.pass_context
def info(ctx: click.Context) -> None:
    """Show Streamlabs account and stream info."""
    output: OutputHandler = ctx.obj["output"]
    oauth_token = require_token(ctx)

    async def fetch() -> dict:
        async with StreamAPI(oauth_token) as api:
            return await api.get_info()

    try:
        data = asyncio.run(fetch())
    except StreamAPIError as e:
        output.error(e, help_text="If the token has expired, run 'streamkey login --force'.")
        return

    output.success(data)


def _category_rows(categories: list[StreamCategory]) -> list[list[str]]:
    return [[c.id, c.full_name] for c in categories]


@main.command()
@click.argument("game")
@click.pass_context
def search(ctx: click.Context, game: str) -> None:
    """Search stream categories by name."""
    output: OutputHandler = ctx.obj["output"]
    oauth_token = require_token(ctx)

    async def run_search() -> list[StreamCategory]:
        async with StreamAPI(oauth_token) as api:
            return await api.search(game)

    categories = asyncio.run(run_search())

    if output.json_mode:
        output.success([c.to_dict() for c in categories])
        return
    if not categories:
        click.echo(f"No categories found for '{game}'")
        return
    output.table(["ID", "NAME"], _category_rows(categories))


def resolve_category(game: str, categories: list[StreamCategory]) -> StreamCategory | None:
    """Pick the category to stream under.

    An exact (case-insensitive) name match wins, then the first result.
    """
    wanted = game.strip().lower()
    for category in categories:
        if category.full_name.lower() == wanted:
            return category
    return categories[0] if categories else None


@main.command()
@click.argument("game")
@click.option("--title", "-t", default="TikTok Stream", show_default=True, help="Stream title")
@click.option("--audience", "-a", default="0", show_default=True, help="Audience type (0 = everyone)")
@click.pass_context
def start(ctx: click.Context, game: str, title: str, audience: str) -> None:
    """Start a stream and print its server URL and stream key."""
    output: OutputHandler = ctx.obj["output"]
    oauth_token = require_token(ctx)

    async def run_start():
        async with StreamAPI(oauth_token) as api:
            output.status(f"Searching for category: {game}...")
            match = resolve_category(game, await api.search(game))
            if match is None:
                output.status("No categories found, using input as the category id")
                category_id = game
            else:
                output.status(f"Using category: {match.full_name} ({match.id})")
                category_id = match.id

            output.status("Starting stream...")
            return await api.start(title, category_id, audience)

    stream = asyncio.run(run_start())
    if stream is None:
        output.error(
            RuntimeError("Failed to start stream"),
            help_text="Run with --verbose to see the Streamlabs response.",
        )
        return

    output.success(
        stream.to_dict(),
        human_message=(
            "Stream started successfully!\n"
            f"Server: {stream.rtmp_url}\n"
            f"Key:    {stream.stream_key}\n"
            f"ID:     {stream.id}"
        ),
    )


@main.command()
@click.argument("stream_id")
@click.pass_context
def end(ctx: click.Context, stream_id: str) -> None:
    """End a running stream."""
    output: OutputHandler = ctx.obj["output"]
    oauth_token = require_token(ctx)

    async def run_end() -> bool:
        async with StreamAPI(oauth_token) as api:
            return await api.end(stream_id)

    if not asyncio.run(run_end()):
        output.error(
            RuntimeError(f"Failed to end stream {stream_id}"),
            help_text="Check the stream id, or run with --verbose for details.",
        )
        return

    output.success({"id": stream_id, "ended": True}, human_message=f"Stream {stream_id} ended.")


if __name__ == "__main__":
    main()
