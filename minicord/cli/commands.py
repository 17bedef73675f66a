"""CLI commands for minicord."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from prompt_toolkit.patch_stdout import patch_stdout

from minicord import __version__, __logo__
from minicord.config.schema import Config
from minicord.sync.events import Message

app = typer.Typer(
    name="minicord",
    help=f"{__logo__} minicord - chat client with live message sync",
    no_args_is_help=True,
)

console = Console()
EXIT_COMMANDS = {"exit", "quit", "/exit", "/quit", ":q"}
OLDER_COMMANDS = {"/older", "/more"}
RETRY_COMMANDS = {"/retry", "/reload"}

# ---------------------------------------------------------------------------
# CLI input: prompt_toolkit for editing, history, and display
# ---------------------------------------------------------------------------

_PROMPT_SESSION: PromptSession | None = None


def _init_prompt_session() -> None:
    """Create the prompt_toolkit session with persistent file history."""
    global _PROMPT_SESSION
    from minicord.config.loader import get_data_dir

    history_file = get_data_dir() / "history" / "chat_history"
    history_file.parent.mkdir(parents=True, exist_ok=True)

    _PROMPT_SESSION = PromptSession(
        history=FileHistory(str(history_file)),
        enable_open_in_editor=False,
        multiline=False,
    )


async def _read_interactive_input_async() -> str:
    if _PROMPT_SESSION is None:
        raise RuntimeError("Call _init_prompt_session() first")
    try:
        with patch_stdout():
            return await _PROMPT_SESSION.prompt_async(HTML("<b fg='ansiblue'>&gt;</b> "))
    except EOFError as exc:
        raise KeyboardInterrupt from exc


def _format_message(message: Message) -> str:
    who = message.user_name or f"User {message.user_id}"
    stamp = message.created_at.strftime("%H:%M")
    return f"[dim]{stamp}[/dim] [bold cyan]{who}[/bold cyan]: {message.content}"


class _Transcript:
    """Prints store updates; messages older than what is on screen go in a marked block."""

    def __init__(self, out: Console):
        self.out = out
        self.printed: set = set()
        self.newest: tuple | None = None

    def __call__(self, store) -> None:
        fresh = [m for m in store if m.id not in self.printed]
        if not fresh:
            return
        newest = self.newest
        earlier = [m for m in fresh if newest is not None and m.sort_key < newest]
        later = [m for m in fresh if newest is None or m.sort_key >= newest]

        if earlier:
            self.out.rule("earlier messages", style="dim")
            for m in earlier:
                self.out.print(_format_message(m))
            self.out.rule(style="dim")
        for m in later:
            self.out.print(_format_message(m))

        self.printed.update(m.id for m in fresh)
        last = fresh[-1].sort_key
        self.newest = last if newest is None else max(newest, last)


def _is_exit_command(command: str) -> bool:
    """Return True when input should end interactive chat."""
    return command.lower() in EXIT_COMMANDS


def _require_token(config: Config) -> str:
    if not config.server.token:
        console.print("[red]Error: No token configured.[/red]")
        console.print("Set server.token in ~/.minicord/config.json")
        raise typer.Exit(1)
    return config.server.token


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} minicord v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """minicord - chat client with live message sync."""
    pass


# ============================================================================
# Onboard / Status
# ============================================================================


@app.command()
def onboard():
    """Initialize minicord configuration."""
    from minicord.config.loader import get_config_path, load_config, save_config

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        console.print("  [bold]y[/bold] = overwrite with defaults (existing values will be lost)")
        console.print("  [bold]N[/bold] = refresh config, keeping existing values and adding new fields")
        if typer.confirm("Overwrite?"):
            save_config(Config())
            console.print(f"[green]✓[/green] Config reset to defaults at {config_path}")
        else:
            save_config(load_config())
            console.print(f"[green]✓[/green] Config refreshed at {config_path} (existing values preserved)")
    else:
        save_config(Config())
        console.print(f"[green]✓[/green] Created config at {config_path}")

    console.print(f"\n{__logo__} minicord is ready!")
    console.print("\nNext steps:")
    console.print("  1. Put your login token in [cyan]~/.minicord/config.json[/cyan] (server.token)")
    console.print("  2. Chat: [cyan]minicord chat <channel-id> --server <server-id>[/cyan]")


@app.command()
def status():
    """Show minicord status."""
    from minicord.config.loader import get_config_path, load_config
    from minicord.utils.helpers import mask_secret

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} minicord Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"API: {config.server.api_url}")
    console.print(f"Push: {config.server.ws_url}")
    token = mask_secret(config.server.token)
    console.print(f"Token: {'[green]' + token + '[/green]' if token else '[dim]not set[/dim]'}")
    console.print(f"Page size: {config.sync.page_size}")


# ============================================================================
# History
# ============================================================================


@app.command()
def history(
    channel: str = typer.Argument(..., help="Channel ID"),
    limit: int = typer.Option(None, "--limit", "-n", help="Page size (1-100)"),
    all_pages: bool = typer.Option(False, "--all", "-a", help="Page back until history is exhausted"),
):
    """Print a channel's message history."""
    from minicord.config.loader import load_config
    from minicord.sync.errors import SyncError
    from minicord.sync.history import HistoryFetcher
    from minicord.sync.store import MessageStore

    config = load_config()
    token = _require_token(config)
    page_size = HistoryFetcher.clamp_limit(limit or config.sync.page_size)

    async def run() -> MessageStore:
        store = MessageStore(channel)
        async with HistoryFetcher(config.server.api_url, token, timeout=config.sync.request_timeout_s) as fetcher:
            before = None
            while True:
                page = await fetcher.fetch_page(channel, before, page_size)
                store.merge_older(page)
                if not all_pages or page.received < page_size or not page:
                    return store
                before = store.oldest.id

    try:
        store = asyncio.run(run())
    except SyncError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    if not len(store):
        console.print("No messages.")
        return

    table = Table(title=f"Channel {channel}")
    table.add_column("Time", style="dim")
    table.add_column("User", style="cyan")
    table.add_column("Message")
    for m in store:
        table.add_row(m.created_at.strftime("%Y-%m-%d %H:%M:%S"), m.user_name or str(m.user_id), m.content)
    console.print(table)


# ============================================================================
# Interactive chat
# ============================================================================


@app.command()
def chat(
    channel: str = typer.Argument(..., help="Channel ID"),
    server: str = typer.Option(None, "--server", "-s", help="Server ID the channel belongs to"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show minicord runtime logs during chat"),
):
    """Join a channel: stream live messages and send what you type."""
    from loguru import logger

    from minicord.config.loader import load_config
    from minicord.sync.connection import ConnectionManager
    from minicord.sync.coordinator import SyncCoordinator, SyncState
    from minicord.sync.errors import NotConnected, TransportError
    from minicord.sync.events import ConnectionState
    from minicord.sync.history import HistoryFetcher

    config = load_config()
    token = _require_token(config)

    if logs:
        logger.enable("minicord")
    else:
        logger.disable("minicord")

    channel_id: int | str = int(channel) if channel.isdigit() else channel
    server_id: int | str | None = int(server) if server and server.isdigit() else server

    connection = ConnectionManager(
        reconnect_delay_s=config.sync.reconnect_delay_ms / 1000.0,
        max_reconnect_delay_s=config.sync.max_reconnect_delay_ms / 1000.0,
        backoff_factor=config.sync.backoff_factor,
        connect_timeout_s=config.sync.connect_timeout_ms / 1000.0,
    )
    fetcher = HistoryFetcher(config.server.api_url, token, timeout=config.sync.request_timeout_s)
    coordinator = SyncCoordinator(connection, fetcher, page_size=config.sync.page_size)

    transcript = _Transcript(console)

    def _show_state(state: ConnectionState) -> None:
        if state is ConnectionState.RECONNECTING:
            console.print("[yellow]Connection lost, reconnecting...[/yellow]")
        elif state is ConnectionState.OPEN and transcript.printed:
            console.print("[green]Reconnected[/green]")

    async def _retry_history() -> None:
        if coordinator.state is SyncState.READY:
            console.print("[dim]History already loaded.[/dim]")
        elif await coordinator.retry():
            console.print("[green]History loaded.[/green]")
        else:
            console.print(f"[red]Could not load history: {coordinator.last_error}[/red] (type [bold]/retry[/bold] to try again)")

    async def run_interactive():
        coordinator.subscribe(transcript)
        connection.on("state", _show_state)
        try:
            await connection.connect(config.server.ws_url, token, channel_id)
        except TransportError as e:
            console.print(f"[red]Could not connect: {e}[/red]")
            await fetcher.aclose()
            return

        _init_prompt_session()
        try:
            if not await coordinator.activate(channel_id, server_id):
                console.print(f"[red]Could not load history: {coordinator.last_error}[/red] (type [bold]/retry[/bold] to try again)")
            console.print(f"{__logo__} #{channel_id} (type [bold]/older[/bold] for earlier messages, [bold]exit[/bold] to quit)\n")

            while True:
                try:
                    line = (await _read_interactive_input_async()).strip()
                except KeyboardInterrupt:
                    break
                if not line:
                    continue
                if _is_exit_command(line):
                    break
                if line in RETRY_COMMANDS or (line in OLDER_COMMANDS and coordinator.state is SyncState.LOADING):
                    await _retry_history()
                    continue
                if line in OLDER_COMMANDS:
                    if not await coordinator.load_older() and not coordinator.has_more:
                        console.print("[dim]Beginning of channel.[/dim]")
                    continue
                try:
                    await coordinator.send(line)
                except NotConnected as e:
                    console.print(f"[red]Not sent: {e}[/red]")
        finally:
            console.print("\nGoodbye!")
            coordinator.deactivate()
            await connection.close()
            await fetcher.aclose()

    asyncio.run(run_interactive())


if __name__ == "__main__":
    app()
