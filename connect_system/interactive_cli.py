#!/usr/bin/env python3
"""Interactive triage console for admins.

This allows an admin to:
1. See the pending complaint queue in the terminal
2. Open a complaint with its timeline and message thread
3. Change status, priority or category and leave notes
4. Reply to the student without going through HTTP
"""
import asyncio
import sys
from typing import List
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich import box
from rich.prompt import Prompt

from auth import Actor, load_actor
from complaints import ComplaintStore
from database import init_db, get_db_session
from errors import ConnectError
from messaging import MessagingChannel
from schemas import (
    ComplaintFilters, ComplaintResponse, ComplaintUpdate, MessageCreate, MessageResponse,
    Priority, Status, TimelineEntryResponse
)
from timeline import list_timeline


console = Console()

PRIORITY_STYLES = {
    Priority.HIGH: "bold red",
    Priority.MEDIUM: "yellow",
    Priority.LOW: "green",
}


def build_complaint_table(complaints: List[ComplaintResponse], title: str = "📋 Complaints") -> Table:
    """Table of complaints, one row each, newest first as given."""
    table = Table(
        title=title,
        box=box.ROUNDED,
        show_header=True,
        header_style="bold magenta"
    )

    table.add_column("#", style="dim", width=4)
    table.add_column("ID", style="cyan", width=10)
    table.add_column("Title")
    table.add_column("Category")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Student")

    for position, complaint in enumerate(complaints, start=1):
        style = PRIORITY_STYLES.get(complaint.priority, "")
        table.add_row(
            str(position),
            complaint.id[:8],
            complaint.title,
            complaint.category.value,
            f"[{style}]{complaint.priority.value}[/{style}]" if style else complaint.priority.value,
            complaint.status.value,
            complaint.creator_name or "-"
        )
    return table


def build_timeline_table(entries: List[TimelineEntryResponse]) -> Table:
    table = Table(title="🕒 Timeline", box=box.SIMPLE, header_style="bold")
    table.add_column("When", style="dim")
    table.add_column("Change", style="green")
    table.add_column("By")
    table.add_column("Note")
    for entry in entries:
        table.add_row(
            entry.created_at.strftime("%Y-%m-%d %H:%M"),
            entry.title,
            entry.actor_name or "-",
            entry.notes or ""
        )
    return table


def build_thread_panel(messages: List[MessageResponse], viewer_id: str) -> Panel:
    """Message thread in creation order; unread messages carry a dot."""
    if not messages:
        body = "[dim]No messages yet[/dim]"
    else:
        lines = []
        for message in messages:
            who = "You" if message.sender_id == viewer_id else (message.sender_name or "Student")
            marker = "" if message.is_read else " [bold blue]●[/bold blue]"
            lines.append(f"[bold]{who}[/bold] [dim]{message.created_at:%H:%M}[/dim]{marker}\n  {message.message_text}")
        body = "\n".join(lines)
    return Panel(body, title="💬 Messages", border_style="blue", box=box.ROUNDED, padding=(1, 2))


def resolve_reference(reference: str, complaints: List[ComplaintResponse]) -> str:
    """Accept a row number from the last listing, an id prefix or a full id."""
    if reference.isdigit() and 1 <= int(reference) <= len(complaints):
        return complaints[int(reference) - 1].id
    matches = [complaint.id for complaint in complaints if complaint.id.startswith(reference)]
    if len(matches) == 1:
        return matches[0]
    return reference


class TriageConsole:
    """Interactive complaint triage for one admin."""

    def __init__(self, actor: Actor, store: ComplaintStore = None, channel: MessagingChannel = None):
        self.actor = actor
        self.store = store or ComplaintStore()
        self.channel = channel or MessagingChannel()
        self.last_listing: List[ComplaintResponse] = []

    async def show_queue(self, status: Status = Status.PENDING):
        async with get_db_session() as db:
            self.last_listing = await self.store.list_complaints(
                db, self.actor, ComplaintFilters(status=status)
            )
        console.print(build_complaint_table(self.last_listing, f"📋 {status.value} complaints"))

    async def show_complaint(self, complaint_id: str):
        """Print the complaint, its timeline and its thread; opening the thread marks it read."""
        async with get_db_session() as db:
            complaint = await self.store.get_complaint(db, self.actor, complaint_id)
            entries = await list_timeline(db, complaint_id)
            messages = await self.channel.list_messages(db, self.actor, complaint_id)
            await self.channel.mark_read(db, self.actor, complaint_id)

        details = (
            f"[bold]{complaint.title}[/bold]\n\n{complaint.description}\n\n"
            f"[bold]Category:[/bold] {complaint.category.value}   "
            f"[bold]Priority:[/bold] {complaint.priority.value}   "
            f"[bold]Status:[/bold] {complaint.status.value}\n"
            f"[bold]Center:[/bold] {complaint.center}   "
            f"[bold]Student:[/bold] {complaint.creator_name or '-'} ({complaint.creator_email or '-'})"
        )
        console.print(Panel(details, title=f"Complaint {complaint.id[:8]}", border_style="bold blue"))
        console.print(build_timeline_table(entries))
        console.print(build_thread_panel(messages, self.actor.user_id))

    async def update(self, complaint_id: str):
        status = Prompt.ask("Status", choices=[item.value for item in Status], default="")
        priority = Prompt.ask("Priority", choices=[item.value for item in Priority], default="")
        note = Prompt.ask("Note (optional)", default="")
        request = ComplaintUpdate(
            status=status or None,
            priority=priority or None,
            note=note or None
        )
        async with get_db_session() as db:
            complaint = await self.store.update_complaint(db, self.actor, complaint_id, request)
        console.print(
            f"[green]✅ Complaint {complaint.id[:8]} is now {complaint.status.value} "
            f"({complaint.priority.value})[/green]"
        )

    async def reply(self, complaint_id: str):
        text = Prompt.ask("Message")
        async with get_db_session() as db:
            await self.channel.send_message(db, self.actor, complaint_id, MessageCreate(message_text=text))
        console.print("[green]✅ Message sent[/green]")

    def display_welcome(self):
        """Display welcome message."""
        welcome = f"""
[bold cyan]Complaint Triage Console[/bold cyan]
[dim]Signed in as {self.actor.full_name or self.actor.user_id}[/dim]

Commands:
  [green]list[/green] [dim][pending|progress|resolved][/dim]   show the queue
  [green]show[/green] [dim]<#|id>[/dim]                        complaint, timeline and thread
  [green]update[/green] [dim]<#|id>[/dim]                      change status or priority, add a note
  [green]reply[/green] [dim]<#|id>[/dim]                       message the student
  [green]quit[/green]
        """

        panel = Panel(
            welcome,
            border_style="bold blue",
            box=box.DOUBLE,
            padding=(1, 2)
        )

        console.print(panel)
        console.print()

    async def run_interactive(self):
        """Run the interactive CLI loop."""
        self.display_welcome()
        await self.show_queue()

        statuses = {"pending": Status.PENDING, "progress": Status.IN_PROGRESS, "resolved": Status.RESOLVED}
        commands = {"show": self.show_complaint, "update": self.update, "reply": self.reply}

        while True:
            console.print()
            line = Prompt.ask("triage").strip()
            if not line:
                continue

            command, _, argument = line.partition(" ")
            command = command.lower()
            argument = argument.strip()

            if command in ["quit", "exit", "q"]:
                console.print("\n[cyan]Goodbye![/cyan]\n")
                break

            try:
                if command == "list":
                    await self.show_queue(statuses.get(argument.lower(), Status.PENDING))
                elif command in commands and argument:
                    await commands[command](resolve_reference(argument, self.last_listing))
                else:
                    console.print("[red]⚠️  Unknown command[/red]")
            except ConnectError as e:
                console.print(f"[yellow]⚠️  {e.message}[/yellow]")


async def main():
    """Main entry point."""
    if len(sys.argv) != 2:
        console.print("[red]Usage: interactive_cli.py <admin-user-id>[/red]")
        sys.exit(1)

    # Initialize database
    console.print("[cyan]Initializing database...[/cyan]")
    await init_db()

    async with get_db_session() as db:
        actor = await load_actor(db, sys.argv[1])
    if actor is None or not actor.is_admin:
        console.print("[red]⚠️  Not an admin profile[/red]")
        sys.exit(1)

    triage = TriageConsole(actor)

    try:
        await triage.run_interactive()
    except KeyboardInterrupt:
        console.print("\n\n[cyan] Goodbye![/cyan]\n")
        sys.exit(0)


if __name__ == "__main__":
    asyncio.run(main())
