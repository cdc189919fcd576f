from __future__ import annotations

from typing import Optional

import typer
import uvicorn
from rich import print
from rich.console import Console
from rich.table import Table

from .config import AppConfig, load_config
from .logging_config import setup_logging
from .models import new_id
from .services import Services, build_services


app = typer.Typer(add_completion=False)
console = Console()


@app.callback()
def _callback() -> None:
	"""Inbox automation CLI."""


def _services(dry_run: Optional[bool] = None) -> Services:
	config: AppConfig = load_config()
	if dry_run is not None:
		config.dry_run = dry_run
	setup_logging(config.log_level)
	return build_services(config)


@app.command()
def serve(
	host: str = typer.Option("0.0.0.0", help="Bind address"),
	port: int = typer.Option(8000, help="Port"),
):
	"""Run the webhook server."""
	config = load_config()
	setup_logging(config.log_level)
	if not config.google_pubsub_verification_token and not config.outlook_client_state:
		print("[yellow]Neither GOOGLE_PUBSUB_VERIFICATION_TOKEN nor OUTLOOK_CLIENT_STATE is set; all webhooks will be rejected[/yellow]")
	uvicorn.run("inbox_automation.webapp:create_default_app", factory=True, host=host, port=port)


@app.command("process-message")
def process_message(
	mailbox_id: str = typer.Argument(..., help="Mailbox id"),
	message_id: str = typer.Argument(..., help="Provider message id"),
	rerun: bool = typer.Option(False, help="Run the rules again even if the message was already processed"),
	dry_run: Optional[bool] = typer.Option(None, help="Record decisions without touching the mailbox"),
):
	"""Run the rules on one message."""
	services = _services(dry_run)
	try:
		mailbox = services.store.get_mailbox(mailbox_id)
		if mailbox is None:
			print(f"[red]Unknown mailbox {mailbox_id}[/red]")
			raise typer.Exit(code=1)
		executed = services.processor.process_message(mailbox, message_id, rerun_id=new_id() if rerun else None)
		if executed is None:
			print("[yellow]Nothing recorded (already processed, outbound, ignored or not found)[/yellow]")
			return
		print(f"Rule [cyan]{executed.rule_id or '-'}[/cyan] -> [bold]{executed.status.value}[/bold]: {executed.reason}")
		for action in executed.actions:
			colour = "green" if action.status.value == "APPLIED" else "red" if action.status.value == "ERROR" else "yellow"
			detail = f" ({action.error})" if action.error else ""
			print(f"  [{colour}]{action.type.value} {action.status.value}[/{colour}]{detail}")
	finally:
		services.shutdown()


@app.command("renew-watches")
def renew_watches():
	"""Renew Gmail watches and Outlook subscriptions that are about to expire."""
	services = _services()
	try:
		results = services.renewer.renew_all()
	finally:
		services.shutdown()
	for mailbox_id, outcome in sorted(results.items()):
		colour = {"renewed": "green", "failed": "red"}.get(outcome, "dim")
		print(f"{mailbox_id}: [{colour}]{outcome}[/{colour}]")
	if "failed" in results.values():
		raise typer.Exit(code=1)


@app.command("drain-deferred")
def drain_deferred(mailbox_id: Optional[str] = typer.Argument(None, help="Only this mailbox")):
	"""Process messages that were set aside while a mailbox was rate limited."""
	services = _services()
	try:
		if mailbox_id:
			mailbox = services.store.get_mailbox(mailbox_id)
			if mailbox is None:
				print(f"[red]Unknown mailbox {mailbox_id}[/red]")
				raise typer.Exit(code=1)
			results = {mailbox_id: services.history.drain_deferred(mailbox)}
		else:
			results = services.history.drain_all()
	finally:
		services.shutdown()
	if not results:
		print("Nothing deferred.")
	for key, result in sorted(results.items()):
		print(f"{key}: processed={result.processed} skipped={result.skipped} deferred={result.deferred} errors={result.errors}")


@app.command()
def history(
	mailbox_id: str = typer.Argument(..., help="Mailbox id"),
	limit: int = typer.Option(20, help="How many records"),
):
	"""Show the most recent rule executions for a mailbox."""
	services = _services()
	try:
		records = services.store.recent_executed_rules(mailbox_id, limit=limit)
	finally:
		services.shutdown()
	table = Table(title=f"Executed rules for {mailbox_id}")
	table.add_column("When")
	table.add_column("Message")
	table.add_column("Rule")
	table.add_column("Status")
	table.add_column("Actions")
	table.add_column("Reason", overflow="fold")
	for record in records:
		actions = ", ".join(f"{a.type.value}:{a.status.value}" for a in record.actions)
		table.add_row(record.created_at[:19], record.message_id, record.rule_id or "-", record.status.value, actions, record.reason)
	console.print(table)


if __name__ == "__main__":
	app()
