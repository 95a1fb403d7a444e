import asyncio

import typer
from rich.console import Console
from rich.table import Table

console = Console()
cli_app = typer.Typer(name="thinking-chat-admin", help="Thinking Chat administrative CLI")


def _run_async(coro):
    """Run async code from sync CLI context."""
    return asyncio.run(coro)


async def _ensure_db():
    from thinking_chat.core.database import init_db
    await init_db()


@cli_app.command("init-db")
def init_database():
    """Create the database schema if it does not exist."""
    _run_async(_ensure_db())
    console.print("[bold green]Database ready.[/bold green]")


@cli_app.command("seed-models")
def seed_models():
    """Insert the default model catalog entries that are missing."""
    async def _seed():
        await _ensure_db()
        from thinking_chat.services.model_catalog import ModelCatalog
        catalog = ModelCatalog()
        await catalog.ensure_seeded()
        return await catalog.list_models()

    models = _run_async(_seed())
    console.print(f"[bold green]Model catalog has {len(models)} entries.[/bold green]")


@cli_app.command("list-models")
def list_models():
    """List catalog models."""
    async def _list():
        await _ensure_db()
        from thinking_chat.services.model_catalog import ModelCatalog
        return await ModelCatalog().list_models()

    models = _run_async(_list())

    if not models:
        console.print("[dim]No models in the catalog. Run seed-models first.[/dim]")
        return

    table = Table(title="Models")
    table.add_column("ID", style="cyan")
    table.add_column("Display Name")
    table.add_column("Provider", style="green")
    table.add_column("Updated")

    for model in models:
        table.add_row(model.id, model.display_name, model.provider, model.updated_at or "—")

    console.print(table)


@cli_app.command("list-conversations")
def list_conversations(
    limit: int = typer.Option(50, "--limit", help="Maximum number of conversations to show"),
):
    """List conversations, most recently updated first."""
    async def _list():
        await _ensure_db()
        from thinking_chat.services.conversations import ConversationStore
        return await ConversationStore().list_conversation_summaries(limit=limit)

    conversations = _run_async(_list())

    if not conversations:
        console.print("[dim]No conversations found.[/dim]")
        return

    table = Table(title="Conversations")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Model", style="green")
    table.add_column("Messages", justify="right")
    table.add_column("Updated")

    for conv in conversations:
        table.add_row(conv.id, conv.title, conv.model_id, str(conv.message_count), conv.updated_at)

    console.print(table)


@cli_app.command("show-conversation")
def show_conversation(
    conversation_id: str = typer.Argument(help="Conversation ID"),
):
    """Print a conversation transcript."""
    async def _show():
        await _ensure_db()
        from thinking_chat.services.conversations import ConversationStore
        return await ConversationStore().get_conversation(conversation_id)

    conv = _run_async(_show())

    if conv is None:
        console.print(f"[yellow]No conversation found with id '{conversation_id}'.[/yellow]")
        raise typer.Exit(code=1)

    console.print(f"\n[bold]{conv.title}[/bold]  [dim]{conv.model_label or conv.model_id}[/dim]\n")
    for msg in conv.messages:
        style = "cyan" if msg.role == "user" else "green"
        console.print(f"[{style}]{msg.role}[/{style}] [dim]{msg.created_at}[/dim]")
        console.print(msg.content, markup=False)
        console.print()


def main():
    cli_app()


if __name__ == "__main__":
    main()
