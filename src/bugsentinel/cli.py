import asyncio
from pathlib import Path
from typing import Awaitable, Callable, Optional

import typer
from tqdm import tqdm

from bugsentinel.core.dependencies import DependencyContainer
from bugsentinel.data.services.sync_types import ServiceResult, Snippet

app = typer.Typer(
    name="bugsentinel",
    help="Offline-first code snippet manager with AI-assisted analysis.",
    add_completion=False
)


def build_container(profile: Optional[str] = None) -> DependencyContainer:
    return DependencyContainer(profile=profile)


def _fail(message: str) -> None:
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _check(result: ServiceResult):
    if not result.ok:
        _fail(result.error)
    return result.data


def _run(ctx: typer.Context, handler: Callable[[DependencyContainer], Awaitable[None]], require_user: bool = False):
    """Start the container, run ``handler`` against it and always shut down."""
    profile = (ctx.obj or {}).get("profile")

    async def runner():
        container = build_container(profile)
        try:
            await container.start()
            if require_user and container.state.user is None:
                _fail("Not signed in. Run `bugsentinel login` first.")
            await handler(container)
        finally:
            await container.shutdown()

    asyncio.run(runner())


def _read_code(code: Optional[str], file: Optional[Path]) -> Optional[str]:
    if file is not None:
        return file.read_text(encoding="utf-8")
    return code


async def _find_snippet(container: DependencyContainer, snippet_id: str) -> Snippet:
    _check(await container.snippet_service.load_snippets())
    snippet = container.state.find_snippet(snippet_id)
    if snippet is None:
        _fail(f"No snippet with id {snippet_id}")
    return snippet


@app.callback()
def main(
    ctx: typer.Context,
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Local data profile to use."),
):
    ctx.obj = {"profile": profile}


# ----------------------------- Account -----------------------------
@app.command()
def login(
    ctx: typer.Context,
    email: str = typer.Option(..., prompt=True),
    password: str = typer.Option(..., prompt=True, hide_input=True),
):
    """Sign in to the hosted backend."""
    async def handler(container: DependencyContainer):
        user = _check(await container.auth_service.sign_in(email, password))
        typer.secho(f"Signed in as {user.email}", fg=typer.colors.GREEN)

    _run(ctx, handler)


@app.command()
def signup(
    ctx: typer.Context,
    email: str = typer.Option(..., prompt=True),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
):
    """Create an account."""
    async def handler(container: DependencyContainer):
        user = _check(await container.auth_service.sign_up(email, password))
        if container.state.user is None:
            typer.echo(f"Account created for {user.email}. Confirm your email, then log in.")
        else:
            typer.secho(f"Account created; signed in as {user.email}", fg=typer.colors.GREEN)

    _run(ctx, handler)


@app.command()
def logout(
    ctx: typer.Context,
    discard_pending: bool = typer.Option(
        False, "--discard-pending", help="Sign out even if local changes have not been synced."
    ),
):
    """Sign out and clear local data."""
    async def handler(container: DependencyContainer):
        _check(await container.auth_service.sign_out(discard_pending=discard_pending))
        typer.secho("Signed out.", fg=typer.colors.GREEN)

    _run(ctx, handler)


# ----------------------------- Sync -----------------------------
@app.command()
def status(ctx: typer.Context):
    """Show connection, sync and quota status."""
    async def handler(container: DependencyContainer):
        connection = container.snippet_service.get_connection_status()
        user = container.state.user
        usage = container.local_store.get_storage_usage()
        quota = container.analysis_service.get_rate_limit_status()

        typer.echo(f"User:            {user.email if user else '(not signed in)'}")
        typer.echo(f"Connection:      {'online' if connection.is_online else 'offline'}")
        typer.echo(f"Pending changes: {connection.pending_changes}")
        typer.echo(f"Last sync:       {connection.last_sync.isoformat() if connection.last_sync else 'never'}")
        typer.echo(f"Local storage:   {usage['used']:,} / {usage['quota']:,} bytes")
        if container.analysis_service.is_available():
            typer.echo(f"AI requests:     {quota['requests_remaining']} remaining")
        else:
            typer.echo("AI requests:     unavailable (no API key)")

    _run(ctx, handler)


@app.command()
def sync(ctx: typer.Context):
    """Push queued changes and pull the latest snippets."""
    async def handler(container: DependencyContainer):
        bar = None

        def on_progress(done: int, total: int, entry) -> None:
            nonlocal bar
            if bar is None:
                bar = tqdm(total=total, desc="Syncing", unit="change")
            bar.update(1)

        try:
            report = await container.snippet_service.force_sync_now(progress_callback=on_progress)
        finally:
            if bar is not None:
                bar.close()

        if report is None:
            _fail("Sync not started: offline or a sync is already running")
        if report.skipped:
            _fail(f"Sync skipped: {report.message}")
        if not report.success:
            _fail(f"Sync incomplete: {report.message}")
        typer.secho(f"Sync complete: {report.message}", fg=typer.colors.GREEN)

    _run(ctx, handler, require_user=True)


# ----------------------------- Snippets -----------------------------
@app.command("list")
def list_snippets(ctx: typer.Context):
    """List your snippets, newest first."""
    async def handler(container: DependencyContainer):
        snippets = _check(await container.snippet_service.load_snippets())
        if not snippets:
            typer.echo("No snippets yet.")
            return
        for snippet in snippets:
            label = container.snippet_service.get_language_label(snippet.language)
            typer.echo(f"{snippet.id}  {snippet.title} [{label}]  {snippet.updated_at:%Y-%m-%d %H:%M}")

    _run(ctx, handler, require_user=True)


@app.command()
def add(
    ctx: typer.Context,
    language: str = typer.Option(..., "--language", "-l"),
    title: Optional[str] = typer.Option(None, "--title", "-t"),
    code: Optional[str] = typer.Option(None, "--code", "-c"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", exists=True, dir_okay=False),
):
    """Save a new snippet."""
    async def handler(container: DependencyContainer):
        service = container.snippet_service
        snippet = _check(await service.create_snippet(
            title or service.generate_default_title(language),
            language,
            _read_code(code, file) or "",
        ))
        typer.secho(f"Saved {snippet.id}: {snippet.title}", fg=typer.colors.GREEN)

    _run(ctx, handler, require_user=True)


@app.command()
def edit(
    ctx: typer.Context,
    snippet_id: str = typer.Argument(...),
    title: Optional[str] = typer.Option(None, "--title", "-t"),
    language: Optional[str] = typer.Option(None, "--language", "-l"),
    code: Optional[str] = typer.Option(None, "--code", "-c"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", exists=True, dir_okay=False),
):
    """Change a snippet's title, language or code."""
    async def handler(container: DependencyContainer):
        updates = {"title": title, "language": language, "code": _read_code(code, file)}
        if all(v is None for v in updates.values()):
            _fail("Nothing to change")
        await _find_snippet(container, snippet_id)
        snippet = _check(await container.snippet_service.update_snippet(snippet_id, updates))
        typer.secho(f"Updated {snippet.id}", fg=typer.colors.GREEN)

    _run(ctx, handler, require_user=True)


@app.command()
def rm(ctx: typer.Context, snippet_id: str = typer.Argument(...)):
    """Delete a snippet."""
    async def handler(container: DependencyContainer):
        await _find_snippet(container, snippet_id)
        _check(await container.snippet_service.delete_snippet(snippet_id))
        typer.secho(f"Deleted {snippet_id}", fg=typer.colors.GREEN)

    _run(ctx, handler, require_user=True)


# ----------------------------- AI -----------------------------
@app.command()
def analyze(ctx: typer.Context, snippet_id: str = typer.Argument(...)):
    """Ask the AI model for bugs and issues in a snippet."""
    async def handler(container: DependencyContainer):
        snippet = await _find_snippet(container, snippet_id)
        issues = _check(await container.analysis_service.analyze(snippet))
        if not issues:
            typer.secho("No issues found.", fg=typer.colors.GREEN)
            return
        for issue in issues:
            typer.echo(f"[{issue.severity}] {issue.type} at {issue.line}:{issue.column}: {issue.message}")
            if issue.suggestion:
                typer.echo(f"    fix: {issue.suggestion}")

    _run(ctx, handler, require_user=True)


@app.command()
def refactor(ctx: typer.Context, snippet_id: str = typer.Argument(...)):
    """Ask the AI model for a refactored version of a snippet."""
    async def handler(container: DependencyContainer):
        snippet = await _find_snippet(container, snippet_id)
        result = _check(await container.analysis_service.refactor(snippet))
        typer.echo(result.refactored_code)
        typer.echo("")
        typer.echo(result.explanation)
        for improvement in result.improvements:
            typer.echo(f"  - {improvement}")

    _run(ctx, handler, require_user=True)


if __name__ == "__main__":
    app()
