"""
WhatsApp Bridge CLI

Command-line interface for WhatsApp bridge administration.

Commands:
- init-db: Create the bridge tables
- session-status: Show persisted session state
- list-chats: List chats for a tenant
- list-messages: Show the latest messages of a chat
- mark-read: Reset the unread counter of a chat
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="whatsapp-bridge",
    help="WhatsApp Bridge CLI",
)

console = Console()


def get_db():
    """Get database session."""
    from hotelcore.db import get_db as _get_db
    return next(_get_db())


def parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        rprint(f"[red]Invalid {label}: {value}[/red]")
        raise typer.Exit(1)


def fmt_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


@app.command()
def init_db():
    """
    Create the bridge tables (sessions, contacts, chats, messages, guests).

    Existing tables are left untouched.
    """
    from hotelcore.db import init_db as _init_db
    from whatsapp_bridge.persistence.models import WhatsAppBase

    _init_db(WhatsAppBase.metadata)
    rprint(f"[green]Created tables:[/green] {', '.join(sorted(WhatsAppBase.metadata.tables))}")


@app.command()
def session_status(
    tenant_id: Optional[str] = typer.Argument(None, help="Tenant ID (all tenants if omitted)"),
):
    """
    Show persisted session state.
    """
    db = get_db()

    try:
        from whatsapp_bridge.persistence.repo import WhatsAppRepository

        sessions = WhatsAppRepository(db).list_sessions(tenant_id)

        if not sessions:
            rprint("[yellow]No sessions found[/yellow]")
            raise typer.Exit(0)

        table = Table(title="WhatsApp Sessions")
        table.add_column("Tenant")
        table.add_column("Session")
        table.add_column("Status")
        table.add_column("QR Attempts")
        table.add_column("Last Error")
        table.add_column("Updated")

        status_styles = {"CONNECTED": "green", "ERROR": "red", "QRCODE": "yellow"}
        for session in sessions:
            style = status_styles.get(session.status, "white")
            table.add_row(
                session.tenant_id,
                session.session_name,
                f"[{style}]{session.status}[/{style}]",
                str(session.qr_attempts),
                session.last_error or "-",
                fmt_time(session.updated_at),
            )

        console.print(table)

    finally:
        db.close()


@app.command()
def list_chats(
    tenant_id: str = typer.Argument(..., help="Tenant ID"),
    limit: int = typer.Option(20, help="Maximum number of chats to show"),
):
    """
    List chats for a tenant, most recent first.
    """
    db = get_db()

    try:
        from whatsapp_bridge.routing.chat import ChatAggregator

        chats = ChatAggregator(db).list_chats(tenant_id, limit=limit)

        if not chats:
            rprint("[yellow]No chats found[/yellow]")
            raise typer.Exit(0)

        table = Table(title=f"Chats for tenant {tenant_id}")
        table.add_column("ID", style="dim")
        table.add_column("Phone")
        table.add_column("Name")
        table.add_column("Unread")
        table.add_column("Last Message")
        table.add_column("At")

        for chat in chats:
            table.add_row(
                str(chat.chat_id),
                chat.contact_phone,
                chat.contact_name,
                str(chat.unread_count),
                (chat.last_message or "-")[:40],
                fmt_time(chat.last_message_at),
            )

        console.print(table)

    finally:
        db.close()


@app.command()
def list_messages(
    chat_id: str = typer.Argument(..., help="Chat UUID"),
    limit: int = typer.Option(20, help="Maximum number of messages to show"),
):
    """
    Show the latest messages of a chat (oldest at the top).
    """
    chat_uuid = parse_uuid(chat_id, "chat ID")
    db = get_db()

    try:
        from whatsapp_bridge.persistence.message_store import MessageStore

        messages = MessageStore(db).list_by_chat(chat_uuid, limit=limit)

        if not messages:
            rprint("[yellow]No messages found[/yellow]")
            raise typer.Exit(0)

        table = Table(title=f"Messages in chat {chat_id[:8]}...")
        table.add_column("At")
        table.add_column("Dir")
        table.add_column("Status")
        table.add_column("Body")

        for message in reversed(messages):
            arrow = "[cyan]<-[/cyan]" if message.direction == "in" else "[magenta]->[/magenta]"
            table.add_row(fmt_time(message.timestamp), arrow, message.status, message.body)

        console.print(table)

    finally:
        db.close()


@app.command()
def mark_read(
    tenant_id: str = typer.Argument(..., help="Tenant ID"),
    chat_id: str = typer.Argument(..., help="Chat UUID"),
):
    """
    Reset the unread counter of a chat.
    """
    chat_uuid = parse_uuid(chat_id, "chat ID")
    db = get_db()

    try:
        from whatsapp_bridge.routing.chat import ChatAggregator

        if not ChatAggregator(db).mark_read(tenant_id, chat_uuid):
            rprint(f"[red]Chat not found: {chat_id}[/red]")
            raise typer.Exit(1)

        db.commit()
        rprint(f"[green]Chat {chat_id} marked as read[/green]")

    finally:
        db.close()


if __name__ == "__main__":
    app()
