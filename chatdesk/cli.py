import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from chatdesk.app import open_app
from chatdesk.core.exceptions import ChatDeskError, ProviderError
from chatdesk.schemas.profiles import ModelParameters

console = Console()
cli_app = typer.Typer(name="chatdesk", help="ChatDesk conversation store and model gateway")
profiles_app = typer.Typer(help="Manage connection profiles")
conversations_app = typer.Typer(help="Browse and prune conversation history")
cli_app.add_typer(profiles_app, name="profiles")
cli_app.add_typer(conversations_app, name="conversations")


def _run_async(coro):
    """Run async code from sync CLI context; core errors become exit code 1."""
    try:
        return asyncio.run(coro)
    except ProviderError as e:
        console.print(f"[bold red]{e.user_message}[/bold red]")
        raise typer.Exit(code=1)
    except (ChatDeskError, ValueError) as e:
        console.print(f"[bold red]{getattr(e, 'message', e)}[/bold red]")
        raise typer.Exit(code=1)


def _fmt(dt) -> str:
    return dt.strftime("%Y-%m-%d %H:%M") if dt else "-"


# ── Profiles ─────────────────────────────────────────────────────────────────


@profiles_app.command("list")
def list_profiles():
    """List all profiles."""
    async def _list():
        async with open_app() as app:
            return app.registry.snapshot

    snapshot = _run_async(_list())

    table = Table(title="Profiles")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Model", style="green")
    table.add_column("Endpoint")
    table.add_column("Default")
    table.add_column("Selected")
    for p in snapshot.profiles:
        table.add_row(
            p.id,
            p.name,
            p.model_name,
            p.api_endpoint,
            "yes" if p.is_default else "",
            "*" if p.id == snapshot.selected_id else "",
        )
    console.print(table)


@profiles_app.command("add")
def add_profile(
    name: str = typer.Option(..., "--name", help="Display name"),
    endpoint: str = typer.Option(..., "--endpoint", help="API endpoint URL"),
    model: str = typer.Option(..., "--model", help="Model name; prefix with 'ollama:' for Ollama"),
    api_key: str = typer.Option("", "--api-key", help="API key (stored in the secret store)"),
    temperature: float = typer.Option(0.7, "--temperature"),
    max_tokens: int = typer.Option(2048, "--max-tokens"),
    default: bool = typer.Option(False, "--default", help="Make this the default profile"),
):
    """Create a profile."""
    async def _add():
        async with open_app() as app:
            return await app.registry.create(
                name,
                endpoint,
                api_key,
                model,
                ModelParameters(temperature=temperature, max_tokens=max_tokens),
                is_default=default,
            )

    profile = _run_async(_add())
    console.print(f"[bold green]Profile created:[/bold green] {profile.name} ({profile.id})")


@profiles_app.command("set-default")
def set_default_profile(profile_id: str = typer.Argument(help="Profile ID")):
    """Make a profile the default (and selected) profile."""
    async def _set():
        async with open_app() as app:
            return await app.registry.set_default(profile_id)

    profile = _run_async(_set())
    console.print(f"[bold green]Default profile:[/bold green] {profile.name}")


@profiles_app.command("duplicate")
def duplicate_profile(profile_id: str = typer.Argument(help="Profile ID")):
    """Copy a profile, API key included."""
    async def _dup():
        async with open_app() as app:
            return await app.registry.duplicate(profile_id)

    profile = _run_async(_dup())
    console.print(f"[bold green]Profile created:[/bold green] {profile.name} ({profile.id})")


@profiles_app.command("delete")
def delete_profile(profile_id: str = typer.Argument(help="Profile ID")):
    """Delete a profile (not the last one, not the selected one)."""
    async def _delete():
        async with open_app() as app:
            await app.registry.delete(profile_id)

    _run_async(_delete())
    console.print("[bold red]Profile deleted.[/bold red]")


@profiles_app.command("export")
def export_profiles(
    path: Path = typer.Argument(help="Output file"),
    passphrase: str = typer.Option(None, "--passphrase", help="Encrypt the export with this passphrase"),
    plaintext: bool = typer.Option(False, "--plaintext", help="Allow API keys to be written unencrypted"),
):
    """Export every profile, API keys included."""
    async def _export():
        async with open_app() as app:
            return await app.registry.export_all(confirm_plaintext=plaintext, passphrase=passphrase)

    data = _run_async(_export())
    path.write_bytes(data)
    if not passphrase:
        console.print("[yellow]Warning: the export file contains API keys in plaintext.[/yellow]")
    console.print(f"[bold green]Profiles exported to {path}[/bold green]")


@profiles_app.command("import")
def import_profiles(
    path: Path = typer.Argument(help="Export file to read"),
    passphrase: str = typer.Option(None, "--passphrase", help="Passphrase used at export time"),
):
    """Import profiles from an export file."""
    async def _import():
        async with open_app() as app:
            return await app.registry.import_all(path.read_bytes(), passphrase=passphrase)

    imported = _run_async(_import())
    console.print(f"[bold green]Imported {len(imported)} profile(s).[/bold green]")


@profiles_app.command("test")
def test_profile(profile_id: str = typer.Argument(None, help="Profile ID (defaults to the selected profile)")):
    """Check that a profile's endpoint is reachable."""
    async def _test():
        async with open_app() as app:
            profile = app.registry.get(profile_id) if profile_id else app.registry.selected
            if profile is None:
                return None
            secret = await app.registry.get_secret(profile.id)
            return await app.registry.test_connection(profile.api_endpoint, secret, profile.model_name)

    reachable = _run_async(_test())
    if reachable is None:
        console.print(f"[yellow]No profile found matching '{profile_id}'.[/yellow]")
        raise typer.Exit(code=1)
    if reachable:
        console.print("[bold green]Connection successful.[/bold green]")
    else:
        console.print("[bold red]Connection failed.[/bold red]")
        raise typer.Exit(code=1)


# ── Conversations ────────────────────────────────────────────────────────────


def _print_conversations(conversations, title: str) -> None:
    if not conversations:
        console.print("[dim]No conversations found.[/dim]")
        return
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Updated")
    for c in conversations:
        table.add_row(c.id, c.title, _fmt(c.updated_at))
    console.print(table)


@conversations_app.command("list")
def list_conversations(
    limit: int = typer.Option(None, "--limit", help="Page size"),
    offset: int = typer.Option(0, "--offset"),
):
    """List conversations, most recently updated first."""
    async def _list():
        async with open_app() as app:
            return await app.conversations.list_conversations(limit=limit, offset=offset)

    _print_conversations(_run_async(_list()), "Conversations")


@conversations_app.command("search")
def search_conversations(query: str = typer.Argument(help="Text to look for in titles and messages")):
    """Search conversations by title or message content."""
    async def _search():
        async with open_app() as app:
            return await app.conversations.search_conversations(query)

    _print_conversations(_run_async(_search()), f"Conversations matching '{query}'")


@conversations_app.command("show")
def show_conversation(conversation_id: str = typer.Argument(help="Conversation ID")):
    """Print a conversation's messages."""
    async def _show():
        async with open_app() as app:
            return await app.conversations.get_conversation(conversation_id)

    conversation = _run_async(_show())
    if conversation is None:
        console.print(f"[yellow]No conversation found matching '{conversation_id}'.[/yellow]")
        raise typer.Exit(code=1)

    console.print(f"[bold]{conversation.title}[/bold]")
    for m in conversation.messages:
        style = "cyan" if m.role == "user" else "green"
        console.print(f"[{style}]{m.role}[/{style}] [dim]{_fmt(m.timestamp)}[/dim]")
        console.print(m.content, markup=False)


@conversations_app.command("delete")
def delete_conversation(conversation_id: str = typer.Argument(help="Conversation ID")):
    """Delete a conversation and its messages."""
    async def _delete():
        async with open_app() as app:
            await app.conversations.delete_conversation(conversation_id)

    _run_async(_delete())
    console.print("[bold red]Conversation deleted.[/bold red]")


@conversations_app.command("clear")
def clear_conversations(yes: bool = typer.Option(False, "--yes", help="Skip confirmation")):
    """Delete the entire conversation history."""
    if not yes:
        typer.confirm("Delete all conversations?", abort=True)

    async def _clear():
        async with open_app() as app:
            return await app.conversations.delete_all_conversations()

    count = _run_async(_clear())
    console.print(f"[bold red]Deleted {count} conversation(s).[/bold red]")


# ── Chat ─────────────────────────────────────────────────────────────────────


@cli_app.command("chat")
def chat(
    message: str = typer.Argument(help="Message to send"),
    conversation_id: str = typer.Option(None, "--conversation", help="Continue an existing conversation"),
    stream: bool = typer.Option(False, "--stream", help="Print the reply as it arrives"),
):
    """Send a message with the selected profile and print the reply."""
    async def _chat():
        async with open_app() as app:
            cid = conversation_id or (await app.chat.start_conversation()).id
            if stream:
                async for chunk in app.chat.stream(cid, message):
                    console.print(chunk, end="", markup=False, highlight=False)
                console.print()
            else:
                reply = await app.chat.send(cid, message)
                console.print(reply.content, markup=False)
            return cid

    cid = _run_async(_chat())
    console.print(f"[dim]conversation {cid}[/dim]")


@cli_app.command("models")
def list_models(endpoint: str = typer.Argument(help="Ollama endpoint, e.g. http://localhost:11434")):
    """List the models an Ollama server offers."""
    async def _models():
        async with open_app() as app:
            return await app.gateway.list_ollama_models(endpoint)

    models = _run_async(_models())
    if not models:
        console.print("[dim]No models found.[/dim]")
        return
    for name in models:
        console.print(name)


def main():
    cli_app()


if __name__ == "__main__":
    main()
