"""
CLI entry point for convoctl: conversation generation from the command line.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable

import click
import questionary
from questionary import Choice
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

try:
    from importlib.metadata import version as pkg_version

    _version = pkg_version("convoctl")
except Exception:
    _version = "0.1.0"

from convoctl.core.auto_send import AutoSendSequencer
from convoctl.core.config import ConfigManager, load_config
from convoctl.core.context_cache import ContextCache
from convoctl.core.editing import EditAction, EditDetails, EditResubmitController
from convoctl.core.llm import CompletionClient
from convoctl.core.orchestrator import GenerationOrchestrator, GenerationOutcome
from convoctl.core.session_store import SessionNotFoundError, SessionStore
from convoctl.core.telemetry import TelemetryCollector
from convoctl.models.app_config import AppConfig, AppConfigError, load_app_config
from convoctl.models.session import AICharacter, Message, Session
from convoctl.utils.callbacks import CallbackRef

console = Console()
console_err = Console(stderr=True)

_ROLE_STYLES = {"user": "cyan", "model": "green", "error": "red"}

PROMPT_STYLE = questionary.Style([
    ("qmark", "fg:ansicyan bold"),
    ("question", "bold"),
    ("pointer", "fg:ansicyan bold"),
    ("highlighted", "fg:ansicyan bold"),
])


@dataclass
class Runtime:
    """Everything a command needs to talk to sessions and the model."""

    config: AppConfig
    store: SessionStore
    telemetry: TelemetryCollector
    orchestrator: GenerationOrchestrator


def _app_config(ctx: click.Context) -> AppConfig:
    path = ctx.obj.get("config_path")
    try:
        return load_app_config(Path(path) if path else None)
    except AppConfigError as e:
        console_err.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def _runtime(ctx: click.Context) -> Runtime:
    app_config = _app_config(ctx)
    load_config()

    store = SessionStore(app_config.sessions.base_dir)
    telemetry = TelemetryCollector(
        app_config.telemetry.base_dir, enabled=app_config.telemetry.enabled
    )
    cache = ContextCache()
    client = CompletionClient(
        max_retries=app_config.model.max_retries,
        retry_delay=app_config.model.retry_delay,
        retry_backoff=app_config.model.retry_backoff,
        fallback_models=app_config.model.fallback,
        context_cache=cache,
    )
    orchestrator = GenerationOrchestrator(
        store,
        client,
        cache=cache,
        telemetry=telemetry,
        config=app_config,
        on_new_ai_message=CallbackRef(),
    )
    return Runtime(app_config, store, telemetry, orchestrator)


def _session_or_exit(store: SessionStore, session_id: str) -> Session:
    try:
        return store.require_session(session_id)
    except SessionNotFoundError as e:
        console_err.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def _print_message(msg: Message, seconds: float | None = None) -> None:
    style = _ROLE_STYLES.get(msg.role, "white")
    who = msg.character_name or msg.role.upper()
    footer = f"{msg.id}" + (f" · {seconds:.1f}s" if seconds is not None else "")
    console.print(
        Panel(
            Text(msg.content) if msg.content else Text("(empty)", style="dim"),
            title=f"[{style}]{who}[/{style}]",
            title_align="left",
            subtitle=f"[dim]{footer}[/dim]",
            subtitle_align="right",
            border_style=style,
        )
    )


def _run_generation(runtime: Runtime, session_id: str, aw: Awaitable[Any]) -> Any:
    """Run one orchestrator call; Ctrl-C cancels it and rolls the session back."""

    async def _main() -> Any:
        task = asyncio.ensure_future(aw)
        try:
            with console.status("[bold]Generating...[/bold]"):
                return await asyncio.shield(task)
        except asyncio.CancelledError:
            await runtime.orchestrator.cancel(session_id)
            await task
            raise

    try:
        return asyncio.run(_main())
    except KeyboardInterrupt:
        console.print("[yellow]Cancelled[/yellow]")
        sys.exit(130)


def _report(runtime: Runtime, session_id: str, outcome: GenerationOutcome | None) -> None:
    if outcome is None:
        console.print("[yellow]Nothing to do.[/yellow]")
        return
    session = runtime.store.require_session(session_id)
    msg = session.get_message(outcome.message_id)
    times = runtime.telemetry.generation_times(session_id)
    if msg is not None:
        _print_message(msg, times.get(msg.id))
    if outcome.status != "completed":
        sys.exit(1)


# =============================================================================
# Root CLI Group
# =============================================================================


@click.group()
@click.version_option(version=_version, prog_name="convoctl")
@click.option("--debug", is_flag=True, hidden=True, help="Enable debug logging")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to convoctl.yaml (default: ./convoctl.yaml)",
)
@click.pass_context
def cli(ctx: click.Context, debug: bool, config_path: str | None):
    """
    convoctl: run and steer LLM conversations.

    \b
        convoctl new                      # Create a session
        convoctl send SESSION "Hi"        # Send a message
        convoctl continue SESSION         # Continue the conversation
        convoctl autosend SESSION "Go on" --times 5
    """
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = config_path

    if debug:
        logging.basicConfig(level=logging.DEBUG, format="[%(levelname)s] %(name)s: %(message)s")
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("LiteLLM").setLevel(logging.WARNING)


# =============================================================================
# Session Commands
# =============================================================================


@cli.command()
@click.option("--title", "-t", default=None, help="Session title")
@click.option("--model", "-m", default=None, help="LiteLLM model identifier")
@click.option("--system", "-s", "system_instruction", default=None, help="System instruction")
@click.pass_context
def new(ctx: click.Context, title: str | None, model: str | None, system_instruction: str | None):
    """Create a new session."""
    app_config = _app_config(ctx)
    store = SessionStore(app_config.sessions.base_dir)

    settings = app_config.generation.settings.model_copy(deep=True)
    if system_instruction:
        settings.system_instruction = system_instruction

    session = store.create_session(
        model=model or app_config.model.provider,
        title=title or app_config.sessions.default_title,
        settings=settings,
    )
    console.print(f"[green]✓[/green] Created session [cyan]{session.session_id}[/cyan]")


@cli.command()
@click.pass_context
def sessions(ctx: click.Context):
    """List sessions."""
    store = SessionStore(_app_config(ctx).sessions.base_dir)
    metas = store.list_sessions()
    if not metas:
        console.print("[dim]No sessions yet. Run [cyan]convoctl new[/cyan] to create one.[/dim]")
        return

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Model", style="dim")
    table.add_column("Updated", style="dim")
    for meta in metas:
        table.add_row(
            meta.session_id,
            meta.title,
            meta.model,
            meta.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@cli.command()
@click.argument("session_id")
@click.pass_context
def show(ctx: click.Context, session_id: str):
    """Print a session's transcript."""
    app_config = _app_config(ctx)
    store = SessionStore(app_config.sessions.base_dir)
    telemetry = TelemetryCollector(
        app_config.telemetry.base_dir, enabled=app_config.telemetry.enabled
    )
    session = _session_or_exit(store, session_id)
    times = telemetry.generation_times(session_id)

    console.print(f"[bold]{session.meta.title}[/bold] [dim]({session.meta.model})[/dim]")
    for msg in session.messages:
        _print_message(msg, times.get(msg.id))


@cli.command()
@click.argument("session_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def delete(ctx: click.Context, session_id: str, yes: bool):
    """Delete a session."""
    store = SessionStore(_app_config(ctx).sessions.base_dir)
    if not yes and not click.confirm(f"Delete session {session_id}?"):
        return
    if store.delete_session(session_id):
        console.print(f"[green]✓[/green] Deleted {session_id}")
    else:
        console.print(f"[yellow]Session not found:[/yellow] {session_id}")


@cli.command("delete-message")
@click.argument("session_id")
@click.argument("message_id")
@click.option("--following", is_flag=True, help="Also delete every later message")
@click.pass_context
def delete_message(ctx: click.Context, session_id: str, message_id: str, following: bool):
    """Delete a message (and optionally everything after it)."""
    runtime = _runtime(ctx)
    session = _session_or_exit(runtime.store, session_id)
    if session.index_of(message_id) == -1:
        console_err.print(f"[red]Error:[/red] Message '{message_id}' not found.")
        sys.exit(1)

    if following:
        removed = asyncio.run(runtime.store.delete_message_and_following(session_id, message_id))
        runtime.telemetry.clear_generation_times(session_id, removed)
        console.print(f"[green]✓[/green] Deleted {len(removed)} message(s)")
    else:
        asyncio.run(runtime.store.delete_message(session_id, message_id))
        runtime.telemetry.clear_generation_times(session_id, [message_id])
        console.print(f"[green]✓[/green] Deleted {message_id}")


# =============================================================================
# Generation Commands
# =============================================================================


@cli.command()
@click.argument("session_id")
@click.argument("text", required=False, default="")
@click.option("--persona", "-p", default=None, help="Persona id to answer (character mode)")
@click.pass_context
def send(ctx: click.Context, session_id: str, text: str, persona: str | None):
    """Send a message and print the reply."""
    runtime = _runtime(ctx)
    _session_or_exit(runtime.store, session_id)
    outcome = _run_generation(
        runtime, session_id, runtime.orchestrator.send(session_id, text, persona_id=persona)
    )
    _report(runtime, session_id, outcome)


@cli.command("continue")
@click.argument("session_id")
@click.pass_context
def continue_cmd(ctx: click.Context, session_id: str):
    """Continue the conversation by one turn (answering, or writing as the user)."""
    runtime = _runtime(ctx)
    _session_or_exit(runtime.store, session_id)
    outcome = _run_generation(runtime, session_id, runtime.orchestrator.continue_flow(session_id))
    _report(runtime, session_id, outcome)


@cli.command()
@click.argument("session_id")
@click.argument("message_id")
@click.pass_context
def regenerate(ctx: click.Context, session_id: str, message_id: str):
    """Regenerate an AI message (or the reply to a user message)."""
    runtime = _runtime(ctx)
    session = _session_or_exit(runtime.store, session_id)
    target = session.get_message(message_id)
    if target is not None and target.role == "user":
        aw = runtime.orchestrator.regenerate_following_user_message(session_id, message_id)
    else:
        aw = runtime.orchestrator.regenerate_message(session_id, message_id)
    outcome = _run_generation(runtime, session_id, aw)
    _report(runtime, session_id, outcome)


@cli.command()
@click.argument("session_id")
@click.argument("message_id")
@click.argument("text")
@click.option(
    "--action",
    "-a",
    type=click.Choice(["save", "submit", "continue"]),
    default="save",
    show_default=True,
    help="Save only, save and regenerate from here, or continue from the edited text",
)
@click.pass_context
def edit(ctx: click.Context, session_id: str, message_id: str, text: str, action: str):
    """Edit a message."""
    runtime = _runtime(ctx)
    session = _session_or_exit(runtime.store, session_id)
    msg = session.get_message(message_id)
    if msg is None:
        console_err.print(f"[red]Error:[/red] Message '{message_id}' not found.")
        sys.exit(1)

    controller = EditResubmitController(runtime.orchestrator, runtime.store, runtime.telemetry)
    details = EditDetails(
        session_id=session_id,
        message_id=message_id,
        role=msg.role,
        original_content=msg.content,
        attachments=msg.attachments,
    )
    edit_action = {
        "save": EditAction.SAVE_LOCALLY,
        "submit": EditAction.SAVE_AND_SUBMIT,
        "continue": EditAction.CONTINUE_PREFIX,
    }[action]

    if edit_action == EditAction.SAVE_LOCALLY:
        asyncio.run(controller.submit(edit_action, text, details))
        console.print(f"[green]✓[/green] Saved {message_id}")
        return

    outcome = _run_generation(runtime, session_id, controller.submit(edit_action, text, details))
    _report(runtime, session_id, outcome)


@cli.command()
@click.argument("session_id")
@click.argument("text", required=False, default="")
@click.option("--times", "-n", type=int, required=True, help="Number of repetitions")
@click.option("--persona", "-p", default=None, help="Persona id to answer every round")
@click.pass_context
def autosend(ctx: click.Context, session_id: str, text: str, times: int, persona: str | None):
    """Send the same message several times, retrying failed rounds."""
    runtime = _runtime(ctx)
    session = _session_or_exit(runtime.store, session_id)
    sequencer = AutoSendSequencer(runtime.orchestrator, runtime.store, runtime.config.auto_send)

    async def _main() -> bool:
        if not await sequencer.start(session_id, text, times, persona_id=persona):
            return False
        try:
            if sequencer.state.is_preparing:
                chosen = await questionary.select(
                    "Who answers?",
                    choices=[Choice(c.name, value=c.id) for c in session.meta.ai_characters],
                    style=PROMPT_STYLE,
                ).ask_async()
                if chosen is None or not await sequencer.select_persona(chosen):
                    await sequencer.stop()
                    return False
            with console.status("Auto-sending...") as status:
                while sequencer.is_running:
                    state = sequencer.state
                    if state.is_waiting_for_error_retry:
                        status.update(
                            f"[yellow]Error detected. Regenerating in "
                            f"{state.retry_countdown_seconds}s...[/yellow]"
                        )
                    else:
                        status.update(f"Auto-sending... ({state.remaining} left)")
                    await asyncio.sleep(0.2)
            await sequencer.wait()
        except asyncio.CancelledError:
            await sequencer.close()
            raise
        return True

    try:
        started = asyncio.run(_main())
    except KeyboardInterrupt:
        console.print("[yellow]Auto-send stopped[/yellow]")
        sys.exit(130)

    if not started:
        console_err.print(
            f"[red]Error:[/red] Could not start auto-send. Repetitions must be "
            f"1-{runtime.config.auto_send.max_repetitions} and the prompt must not be empty."
        )
        sys.exit(1)

    final = runtime.store.require_session(session_id)
    console.print(f"[green]✓[/green] Done. Session has {len(final.messages)} messages.")


# =============================================================================
# Persona Commands
# =============================================================================


@cli.group()
def persona():
    """Manage the personas of a session."""
    pass


@persona.command("add")
@click.argument("session_id")
@click.argument("name")
@click.option("--instruction", "-i", required=True, help="Persona system instruction")
@click.option("--info", default=None, help="Text the persona says when prompted with nothing")
@click.pass_context
def persona_add(ctx: click.Context, session_id: str, name: str, instruction: str, info: str | None):
    """Add a persona to a session."""
    store = SessionStore(_app_config(ctx).sessions.base_dir)
    _session_or_exit(store, session_id)
    character = AICharacter(name=name, system_instruction=instruction, contextual_info=info)

    def _mutate(session: Session) -> Session:
        session.meta.ai_characters.append(character)
        return session

    asyncio.run(store.update_session(session_id, _mutate))
    console.print(f"[green]✓[/green] Added {name} ([cyan]{character.id}[/cyan])")


@persona.command("list")
@click.argument("session_id")
@click.pass_context
def persona_list(ctx: click.Context, session_id: str):
    """List a session's personas."""
    store = SessionStore(_app_config(ctx).sessions.base_dir)
    session = _session_or_exit(store, session_id)
    if not session.meta.ai_characters:
        console.print("[dim]No personas[/dim]")
        return

    mode = "on" if session.meta.is_character_mode_active else "off"
    table = Table(title=f"Personas (character mode {mode})")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Instruction", style="dim")
    for character in session.meta.ai_characters:
        table.add_row(character.id, character.name, character.system_instruction[:60])
    console.print(table)


@persona.command("mode")
@click.argument("session_id")
@click.argument("state", type=click.Choice(["on", "off"]))
@click.pass_context
def persona_mode(ctx: click.Context, session_id: str, state: str):
    """Turn character mode on or off."""
    store = SessionStore(_app_config(ctx).sessions.base_dir)
    _session_or_exit(store, session_id)

    def _mutate(session: Session) -> Session:
        session.meta.is_character_mode_active = state == "on"
        return session

    asyncio.run(store.update_session(session_id, _mutate))
    console.print(f"[green]✓[/green] Character mode {state}")


# =============================================================================
# Config Commands
# =============================================================================


@cli.group()
def config():
    """Manage API keys."""
    pass


@config.command("set")
@click.argument("key_name")
@click.option(
    "--value",
    "-v",
    help="Set value directly (use with caution - visible in shell history)",
)
def config_set(key_name: str, value: str | None):
    """
    Store an API key.

    \b
    Examples:
        convoctl config set GEMINI_API_KEY
        convoctl config set MY_KEY -v "value"
    """
    if not value:
        value = click.prompt(f"Value for {key_name}", hide_input=True, default="", show_default=False)
    if not value:
        console.print("[dim]Cancelled[/dim]")
        return
    ConfigManager().set(key_name, value)
    console.print(f"[green]✓[/green] Saved {key_name}")


@config.command("list")
def config_list():
    """List stored API keys."""
    ConfigManager().show_status()


@config.command("delete")
@click.argument("key_name")
def config_delete(key_name: str):
    """Delete a stored API key."""
    if ConfigManager().delete(key_name):
        console.print(f"[green]✓[/green] Deleted {key_name}")
    else:
        console.print(f"[yellow]Key not found:[/yellow] {key_name}")


@config.command("import")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
def config_import(file_path: str):
    """Import API keys from a .env file."""
    count = ConfigManager().set_from_file(file_path)
    console.print(f"[green]✓[/green] Imported {count} key(s)")


if __name__ == "__main__":
    cli()
