"""
SessionSync CLI -- push, pull, save and resume conversations.

Entry point: sessionsync.cli:main

Git warnings are printed, never prompted for: re-run with
``--resolve <choice>`` or ``--force`` to proceed past them.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import SYNC_HOME, __version__
from .errors import Issue, SessionSyncError
from .git import GitRepository
from .sync.cipher import derive_key
from .sync.coordinator import SyncCoordinator
from .sync.models import SyncResult
from .sync.state import load_config
from .verifier import GitSafetyCheck, GitStateVerifier, Resolution

console = Console()

KEY_ENV_VAR = "SESSIONSYNC_KEY"


def _coordinator(home: str, repo: Optional[str] = None) -> SyncCoordinator:
    home_path = Path(home).expanduser()
    config = load_config(home_path)
    key = b""
    if config.encrypt:
        secret = os.environ.get(KEY_ENV_VAR, "")
        if not secret:
            console.print(f"[bold red]Encryption is on but {KEY_ENV_VAR} is not set.[/]")
            sys.exit(1)
        key = derive_key(secret.encode("utf-8"))
    vcs = GitRepository(Path(repo)) if repo else None
    return SyncCoordinator(home=home_path, vcs=vcs, key=key, config=config)


def _print_issues(issues: list[Issue]) -> None:
    for issue in issues:
        color = "yellow" if issue.is_warning else "red"
        console.print(f"  [{color}]{issue.kind.value}[/]: {issue.message}")
        options = issue.context.get("options")
        if options:
            console.print(f"    [dim]resolve with: {', '.join(options)}[/]")


def _print_check(check: GitSafetyCheck) -> None:
    table = Table(title="Git safety check", show_header=False)
    table.add_column("Check")
    table.add_column("Result")
    for label, value in (
        ("repository", check.is_repo),
        ("remote", check.has_remote),
        ("online", check.is_online),
        ("clean", check.is_repo and not check.has_uncommitted_changes),
        ("can push", check.can_push),
    ):
        table.add_row(label, "[green]yes[/]" if value else "[red]no[/]")
    table.add_row("state", f"[cyan]{check.state.value}[/]")
    console.print(table)
    _print_issues(check.errors + check.warnings)


def _print_sync(result: SyncResult) -> None:
    if not result.ok:
        console.print(f"[red]{result.direction.value} failed[/]")
        if result.issue:
            _print_issues([result.issue])
        return
    line = (
        f"[green]{result.direction.value}[/] {result.action.value} "
        f"[{result.start}, {result.end})"
    )
    if result.stats:
        line += f" [dim]{result.stats.compressed_size} bytes, ratio {result.stats.ratio:.3f}[/]"
    console.print(line)


def _run(coro):
    try:
        return asyncio.run(coro)
    except SessionSyncError as exc:
        console.print(f"[bold red]{exc.issue.kind.value}[/]: {exc}")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="sessionsync")
@click.option("--verbose", "-v", is_flag=True, help="Log sync activity.")
def main(verbose):
    """SessionSync -- carry conversations between devices with their code state."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )


@main.command("status")
@click.argument("conversation_id")
@click.option("--home", default=SYNC_HOME, type=click.Path())
def status_cmd(conversation_id, home):
    """Show local and stored state for a conversation."""
    coordinator = _coordinator(home)
    info = _run(coordinator.status(conversation_id))
    meta = info["metadata"]
    cloud = info["cloud"]
    console.print(
        Panel(
            f"Local messages: [bold]{info['local_messages']}[/]\n"
            f"Unsynced: [bold]{info['unsynced']}[/]\n"
            f"Last synced index: {meta['last_synced_message_index']}\n"
            f"Last snapshot index: {meta['last_snapshot_index']}\n"
            f"Last synced: {meta['last_synced_timestamp'] or '[dim]never[/]'}\n"
            f"Stored messages: {cloud['total_messages']} "
            f"(snapshot at {cloud['latest_snapshot_index']}, "
            f"ratio {cloud['compression_ratio']:.3f})\n"
            f"Boundaries: {info['boundaries']}\n"
            f"Blob store: [cyan]{info['blob_store']}[/]",
            title=conversation_id,
            border_style="cyan",
        )
    )


@main.command("check")
@click.option("--repo", default=".", type=click.Path(exists=True))
@click.option("--home", default=SYNC_HOME, type=click.Path())
def check_cmd(repo, home):
    """Run the git safety check for a repository."""
    config = load_config(Path(home).expanduser())
    verifier = GitStateVerifier(GitRepository(Path(repo)), config.reachability_timeout)
    check = _run(verifier.check())
    _print_check(check)
    if not check.ready:
        sys.exit(1)


@main.command("push")
@click.argument("conversation_id")
@click.option("--home", default=SYNC_HOME, type=click.Path())
def push_cmd(conversation_id, home):
    """Upload new messages of a conversation."""
    result = _run(_coordinator(home).upload(conversation_id))
    _print_sync(result)
    if not result.ok:
        sys.exit(1)


@main.command("pull")
@click.argument("conversation_id")
@click.option("--home", default=SYNC_HOME, type=click.Path())
def pull_cmd(conversation_id, home):
    """Download a conversation and merge it locally."""
    result = _run(_coordinator(home).download(conversation_id))
    _print_sync(result)
    if not result.ok:
        sys.exit(1)


_RESOLVE = click.option(
    "--resolve", "resolutions", multiple=True,
    type=click.Choice([r.value for r in Resolution]),
    help="How to clear a git warning. Repeatable.",
)


@main.command("save")
@click.argument("conversation_id")
@click.option("--repo", default=".", type=click.Path(exists=True))
@click.option("--home", default=SYNC_HOME, type=click.Path())
@_RESOLVE
@click.option("--force", is_flag=True, help="Proceed past git warnings.")
def save_cmd(conversation_id, repo, home, resolutions, force):
    """Save a conversation against the current commit."""
    coordinator = _coordinator(home, repo)
    result = _run(coordinator.save(
        conversation_id,
        working_directory=str(Path(repo).resolve()),
        resolutions=[Resolution(r) for r in resolutions],
        force=force,
    ))
    if result.sync:
        _print_sync(result.sync)
    if not result.ok:
        if result.awaiting_resolution:
            console.print("[yellow]Save paused: resolve the warnings below.[/]")
        _print_issues(result.issues)
        sys.exit(1)
    session = result.session
    console.print(
        f"[green]Saved[/] session [cyan]{session.session_id}[/] "
        f"at {session.branch or 'detached'}@{session.git_commit[:8]}"
    )


@main.command("resume")
@click.argument("session_id")
@click.option("--repo", default=".", type=click.Path(exists=True))
@click.option("--home", default=SYNC_HOME, type=click.Path())
@_RESOLVE
@click.option("--force", is_flag=True, help="Proceed past git warnings.")
def resume_cmd(session_id, repo, home, resolutions, force):
    """Check out a saved session's commit and restore its conversation."""
    coordinator = _coordinator(home, repo)
    result = _run(coordinator.resume(
        session_id,
        resolutions=[Resolution(r) for r in resolutions],
        force=force,
    ))
    if result.sync:
        _print_sync(result.sync)
    if not result.ok:
        if result.awaiting_resolution:
            console.print("[yellow]Resume paused: resolve the warnings below.[/]")
        _print_issues(result.issues)
        sys.exit(1)
    console.print(
        f"[green]Resumed[/] {result.session.conversation_id} "
        f"at {result.session.git_commit[:8]}"
    )
    _print_issues(result.issues)


@main.command("boundaries")
@click.argument("conversation_id")
@click.option("--home", default=SYNC_HOME, type=click.Path())
def boundaries_cmd(conversation_id, home):
    """List where a conversation's code state changed."""
    coordinator = _coordinator(home)
    records = coordinator.linker.boundaries(conversation_id)
    if not records:
        console.print("[dim]No boundaries recorded.[/]")
        return
    table = Table(title=f"Boundaries -- {conversation_id}")
    table.add_column("Message", justify="right")
    table.add_column("Branch")
    table.add_column("Commit")
    for record in records:
        table.add_row(
            str(record.message_index),
            record.git_state.branch or "[dim]detached[/]",
            record.git_state.commit[:12],
        )
    console.print(table)


@main.command("sessions")
@click.option("--conversation", default=None, help="Only this conversation.")
@click.option("--home", default=SYNC_HOME, type=click.Path())
def sessions_cmd(conversation, home):
    """List saved sessions, newest first."""
    coordinator = _coordinator(home)
    entries = coordinator.sessions.list(conversation)
    if not entries:
        console.print("[dim]No sessions saved.[/]")
        return
    table = Table(title="Sessions")
    table.add_column("Session")
    table.add_column("Conversation")
    table.add_column("Commit")
    table.add_column("Device")
    table.add_column("Messages", justify="right")
    table.add_column("Saved")
    for entry in entries:
        table.add_row(
            entry.session_id,
            entry.conversation_id,
            f"{entry.branch or 'detached'}@{entry.git_commit[:8]}",
            entry.device_id,
            str(entry.message_count),
            entry.timestamp.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)
