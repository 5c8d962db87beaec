"""CLI interface for the DECONFIG sync client."""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click
from click.core import ParameterSource

from .api import DeconfigClient
from .auth import require_api_key
from .cli_progress import TransferProgressDisplay
from .config import DEFAULT_DEBOUNCE_SECONDS, ENV_API_KEY, ENV_WORKSPACE, config
from .exceptions import (
    DeconfigAuthenticationError,
    DeconfigError,
    DeconfigNotFoundError,
)
from .models import WatchEvent
from .output import OutputFormatter
from .sync.clone import CloneEngine
from .sync.engine import SyncEngine
from .sync.push import PushEngine
from .sync.state import HeadRecord, HeadStateManager
from .sync.watch import WatchEngine, apply_event_to_directory
from .utils import format_size, to_remote_path

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Helpers
# =============================================================================


def _make_client(ctx: Any) -> DeconfigClient:
    """Build a client from the global options, exiting on missing settings."""
    out: OutputFormatter = ctx.obj["out"]
    api_key = require_api_key(ctx, out)
    workspace = ctx.obj.get("workspace") or config.workspace
    local = ctx.obj.get("local", False)
    head: Optional[HeadRecord] = ctx.obj.get("head")
    if head is not None:
        # The directory stays bound to the workspace it was cloned from
        if not ctx.obj.get("workspace_explicit"):
            workspace = head.workspace
        elif workspace != head.workspace:
            out.warning(
                f"{head.path} was cloned from workspace {head.workspace}, "
                f"using {workspace} as given"
            )
        local = local or head.local
    if not workspace:
        out.error("Workspace not configured.")
        out.info("Pass --workspace or run 'pydeconfig init --workspace <slug>'")
        ctx.exit(1)
    return DeconfigClient(
        workspace=workspace,
        api_key=api_key,
        api_url=config.resolve_api_url(local=local),
    )


def _resolve_branch(
    ctx: Any, branch: Optional[str], local_path: Path
) -> tuple[str, Optional[str]]:
    """Return (branch, head path filter), falling back to the head record."""
    if branch:
        return branch, None

    out: OutputFormatter = ctx.obj["out"]
    record = HeadStateManager().load(local_path)
    if record is None:
        out.error(f"No branch given and no head record for {local_path}")
        out.info("Pass --branch or clone a branch into this directory first")
        ctx.exit(1)
    logger.debug(f"Using head record {record.workspace}/{record.branch}")
    ctx.obj["head"] = record
    return record.branch, record.path_filter


async def _run_cancellable(func: Callable[[asyncio.Event], Awaitable[T]]) -> T:
    """Run ``func`` with an event that SIGINT/SIGTERM set."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
        except (NotImplementedError, RuntimeError):
            # Unsupported on this platform or outside the main thread
            continue
        installed.append(sig)
    try:
        return await func(cancel_event)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def _auth_failed(out: OutputFormatter, e: DeconfigAuthenticationError) -> None:
    out.error(f"Authentication failed: {e}")
    out.info("Run 'pydeconfig init' to configure a valid API key")


def _print_event(out: OutputFormatter, event: WatchEvent) -> None:
    if out.json_output:
        out.output_json(event.to_dict())
        return
    out.print(f"[{event.ctime}] {event.type.value:<6} {event.path}")


# =============================================================================
# Commands
# =============================================================================


@click.group()
@click.option("--api-key", "-k", envvar=ENV_API_KEY, help="DECONFIG API key")
@click.option("--workspace", "-w", envvar=ENV_WORKSPACE, help="Workspace slug")
@click.option(
    "--local", is_flag=True, help="Target the local development server"
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(package_name="pydeconfig")
@click.pass_context
def main(
    ctx: Any,
    api_key: Optional[str],
    workspace: Optional[str],
    local: bool,
    quiet: bool,
    json: bool,
    verbose: bool,
) -> None:
    """PyDeconfig - Sync local directories with DECONFIG branches."""
    ctx.ensure_object(dict)
    ctx.obj["api_key"] = api_key
    ctx.obj["workspace"] = workspace
    ctx.obj["workspace_explicit"] = (
        ctx.get_parameter_source("workspace") == ParameterSource.COMMANDLINE
    )
    ctx.obj["local"] = local
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["verbose"] = verbose

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("pydeconfig").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


@main.command()
@click.option(
    "--api-key",
    "-k",
    prompt="Enter your DECONFIG API key",
    hide_input=True,
    help="DECONFIG API key",
)
@click.option("--workspace", "-w", help="Default workspace slug")
@click.option("--api-url", help="API base URL (default: https://api.decocms.com)")
@click.pass_context
def init(
    ctx: Any, api_key: str, workspace: Optional[str], api_url: Optional[str]
) -> None:
    """Initialize pydeconfig configuration.

    Stores your API key and defaults in ~/.config/pydeconfig/config.json.
    """
    out: OutputFormatter = ctx.obj["out"]

    try:
        config_path = config.save(
            api_key=api_key,
            workspace=workspace or ctx.obj.get("workspace"),
            api_url=api_url,
        )
    except (OSError, DeconfigError) as e:
        out.error(f"Initialization failed: {e}")
        ctx.exit(1)

    if out.json_output:
        out.output_json({"config_file": str(config_path)})
        return
    out.print_summary(
        "Initialization Complete",
        [
            ("Status", "Configuration saved"),
            ("Config file", str(config_path)),
            ("Workspace", config.workspace or "(not set)"),
        ],
    )


@main.command()
@click.argument("branch")
@click.argument("path", type=click.Path(file_okay=False, path_type=Path), default=".")
@click.option("--path-filter", "-p", help="Only clone paths under this prefix")
@click.option("--dry-run", is_flag=True, help="List files without writing them")
@click.option(
    "--respect-ignore",
    is_flag=True,
    help="Skip remote files excluded by the local .deconfigignore",
)
@click.option(
    "--workers", "-j", type=int, default=1, help="Parallel downloads (default: 1)"
)
@click.option("--no-progress", is_flag=True, help="Disable progress display")
@click.pass_context
def clone(
    ctx: Any,
    branch: str,
    path: Path,
    path_filter: Optional[str],
    dry_run: bool,
    respect_ignore: bool,
    workers: int,
    no_progress: bool,
) -> None:
    """Clone BRANCH into PATH (default: current directory)."""
    out: OutputFormatter = ctx.obj["out"]
    client = _make_client(ctx)
    show_progress = not (no_progress or dry_run or out.quiet or out.json_output)

    async def run() -> Any:
        async with client:
            if not show_progress:
                return await CloneEngine(client, max_workers=workers).clone(
                    branch,
                    path,
                    path_filter=path_filter,
                    dry_run=dry_run,
                    respect_ignore=respect_ignore,
                )
            with TransferProgressDisplay(f"Cloning {branch}") as display:
                engine = CloneEngine(
                    client, max_workers=workers, on_entry=display.handle_entry
                )
                return await engine.clone(
                    branch,
                    path,
                    path_filter=path_filter,
                    respect_ignore=respect_ignore,
                )

    try:
        result = asyncio.run(run())
    except KeyboardInterrupt:
        out.warning("\nClone cancelled by user")
        ctx.exit(130)
    except DeconfigAuthenticationError as e:
        _auth_failed(out, e)
        ctx.exit(1)
    except DeconfigError as e:
        out.error(str(e))
        ctx.exit(1)

    if not dry_run:
        HeadStateManager().save(
            HeadRecord(
                workspace=client.workspace,
                branch=branch,
                path=str(path),
                path_filter=path_filter,
                local=ctx.obj.get("local", False),
            )
        )

    if out.json_output:
        out.output_json(result.to_dict())
    else:
        if dry_run:
            for entry in result.entries:
                out.print(f"Would write {entry.local_path} ({format_size(entry.size)})")
        for entry in result.failures:
            out.warning(f"Failed: {entry.remote_path}: {entry.error}")
        out.print_summary(
            "Clone Dry Run" if dry_run else "Clone Complete",
            [
                ("Branch", branch),
                ("Directory", str(path)),
                ("Files", str(result.count)),
                ("Failed", str(len(result.failures))),
            ],
        )

    if not result.success:
        ctx.exit(1)


@main.command()
@click.argument(
    "path",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
)
@click.option("--branch", "-b", help="Target branch (default: head record)")
@click.option("--path-filter", "-p", help="Only push paths under this prefix")
@click.option("--dry-run", is_flag=True, help="Show what would be pushed")
@click.option("--watch", is_flag=True, help="Keep pushing local edits afterwards")
@click.option(
    "--workers", "-j", type=int, default=1, help="Parallel uploads (default: 1)"
)
@click.option("--no-progress", is_flag=True, help="Disable progress display")
@click.pass_context
def push(
    ctx: Any,
    path: Path,
    branch: Optional[str],
    path_filter: Optional[str],
    dry_run: bool,
    watch: bool,
    workers: int,
    no_progress: bool,
) -> None:
    """Push the files under PATH (default: current directory) to a branch."""
    out: OutputFormatter = ctx.obj["out"]
    branch, head_filter = _resolve_branch(ctx, branch, path)
    path_filter = path_filter or head_filter
    client = _make_client(ctx)
    show_progress = not (no_progress or dry_run or out.quiet or out.json_output)

    async def run(cancel_event: asyncio.Event) -> Any:
        async with client:
            if show_progress:
                with TransferProgressDisplay(f"Pushing to {branch}") as display:
                    engine = PushEngine(
                        client, max_workers=workers, on_entry=display.handle_entry
                    )
                    result = await engine.push(path, branch, path_filter=path_filter)
            else:
                result = await PushEngine(client, max_workers=workers).push(
                    path, branch, path_filter=path_filter, dry_run=dry_run
                )

            if watch and not dry_run and not cancel_event.is_set():
                out.info(f"Watching {path} for changes (Ctrl+C to stop)...")
                await SyncEngine(client).sync(
                    path, branch, path_filter=path_filter, cancel_event=cancel_event
                )
            return result

    try:
        result = asyncio.run(_run_cancellable(run))
    except KeyboardInterrupt:
        out.warning("\nPush cancelled by user")
        ctx.exit(130)
    except DeconfigAuthenticationError as e:
        _auth_failed(out, e)
        ctx.exit(1)
    except DeconfigError as e:
        out.error(str(e))
        ctx.exit(1)

    if out.json_output:
        out.output_json(result.to_dict())
    else:
        if dry_run:
            for entry in result.entries:
                out.print(f"Would push {entry.remote_path} ({format_size(entry.size)})")
        for entry in result.entries:
            if entry.error:
                out.warning(f"Failed: {entry.remote_path}: {entry.error}")
        out.print_summary(
            "Push Dry Run" if dry_run else "Push Complete",
            [
                ("Branch", branch),
                ("Attempted", str(result.attempted)),
                ("Succeeded", str(result.succeeded)),
                ("Failed", str(result.failed)),
            ],
        )

    if not result.success:
        ctx.exit(1)


@main.command()
@click.argument("remote_path")
@click.option("--branch", "-b", help="Branch to read (default: head record)")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write to this file instead of stdout",
)
@click.pass_context
def get(
    ctx: Any, remote_path: str, branch: Optional[str], output: Optional[Path]
) -> None:
    """Print (or save) the content of REMOTE_PATH."""
    out: OutputFormatter = ctx.obj["out"]
    branch, _ = _resolve_branch(ctx, branch, Path.cwd())
    client = _make_client(ctx)
    remote_path = to_remote_path(remote_path)

    async def run() -> bytes:
        async with client:
            return await client.read_file(branch, remote_path)

    try:
        content = asyncio.run(run())
    except DeconfigAuthenticationError as e:
        _auth_failed(out, e)
        ctx.exit(1)
    except DeconfigNotFoundError:
        out.error(f"File not found: {remote_path} on {branch}")
        ctx.exit(1)
    except DeconfigError as e:
        out.error(str(e))
        ctx.exit(1)

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(content)
        out.success(f"Saved {remote_path} to {output} ({format_size(len(content))})")
        return

    stream = click.get_binary_stream("stdout")
    stream.write(content)
    stream.flush()


@main.command()
@click.argument("remote_path")
@click.option("--branch", "-b", help="Branch to modify (default: head record)")
@click.pass_context
def delete(ctx: Any, remote_path: str, branch: Optional[str]) -> None:
    """Delete REMOTE_PATH from a branch."""
    out: OutputFormatter = ctx.obj["out"]
    branch, _ = _resolve_branch(ctx, branch, Path.cwd())
    client = _make_client(ctx)
    remote_path = to_remote_path(remote_path)

    async def run() -> bool:
        async with client:
            return await client.delete_file(branch, remote_path)

    try:
        deleted = asyncio.run(run())
    except DeconfigAuthenticationError as e:
        _auth_failed(out, e)
        ctx.exit(1)
    except DeconfigError as e:
        out.error(str(e))
        ctx.exit(1)

    if out.json_output:
        out.output_json({"path": remote_path, "deleted": deleted})
    elif deleted:
        out.success(f"Deleted {remote_path} from {branch}")

    if not deleted:
        out.error(f"File not found: {remote_path} on {branch}")
        ctx.exit(1)


@main.command(name="ls")
@click.option("--branch", "-b", help="Branch to list (default: head record)")
@click.option("--prefix", "-p", help="Only list paths under this prefix")
@click.pass_context
def ls(ctx: Any, branch: Optional[str], prefix: Optional[str]) -> None:
    """List the files of a branch."""
    out: OutputFormatter = ctx.obj["out"]
    branch, head_filter = _resolve_branch(ctx, branch, Path.cwd())
    client = _make_client(ctx)
    prefix = prefix or head_filter

    async def run() -> Any:
        async with client:
            return await client.list_files(
                branch, to_remote_path(prefix) if prefix else None
            )

    try:
        listing = asyncio.run(run())
    except DeconfigAuthenticationError as e:
        _auth_failed(out, e)
        ctx.exit(1)
    except DeconfigError as e:
        out.error(str(e))
        ctx.exit(1)

    if out.json_output:
        out.output_json(listing.to_dict())
        return

    for remote_path in sorted(listing.files):
        record = listing.files[remote_path]
        out.print(f"{format_size(record.size):>10}  {remote_path}")
    out.info(f"{listing.count} file(s)")


@main.command()
@click.option("--branch", "-b", help="Branch to watch (default: head record)")
@click.option("--path-filter", "-p", help="Only report paths under this prefix")
@click.option(
    "--from-ctime",
    type=int,
    default=None,
    help="Start from this ctime (default: beginning of history)",
)
@click.option(
    "--output",
    "-o",
    "output_dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Mirror the changes into this directory",
)
@click.pass_context
def watch(
    ctx: Any,
    branch: Optional[str],
    path_filter: Optional[str],
    from_ctime: Optional[int],
    output_dir: Optional[Path],
) -> None:
    """Stream remote changes of a branch until interrupted."""
    out: OutputFormatter = ctx.obj["out"]
    branch, head_filter = _resolve_branch(ctx, branch, output_dir or Path.cwd())
    path_filter = path_filter or head_filter
    client = _make_client(ctx)
    engine = WatchEngine(client, fetch_content=output_dir is not None)

    def on_event(event: WatchEvent) -> None:
        _print_event(out, event)
        if output_dir is None:
            return
        try:
            apply_event_to_directory(event, output_dir)
        except (DeconfigError, OSError) as e:
            logger.error(f"Could not mirror {event.path}: {e}")
            out.warning(f"Skipped {event.path}: {e}")

    async def run(cancel_event: asyncio.Event) -> int:
        async with client:
            return await engine.watch(
                branch,
                on_event,
                path_filter=path_filter,
                from_ctime=from_ctime,
                cancel_event=cancel_event,
            )

    out.info(f"Watching {branch} (Ctrl+C to stop)...")
    try:
        delivered = asyncio.run(_run_cancellable(run))
    except KeyboardInterrupt:
        ctx.exit(130)
    except DeconfigAuthenticationError as e:
        _auth_failed(out, e)
        ctx.exit(1)
    except DeconfigError as e:
        out.error(str(e))
        ctx.exit(1)

    out.info(f"Stopped after {delivered} event(s) at ctime {engine.cursor}")


@main.command()
@click.argument(
    "path",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
)
@click.option("--branch", "-b", help="Target branch (default: head record)")
@click.option("--path-filter", "-p", help="Only sync paths under this prefix")
@click.option(
    "--no-initial-push",
    is_flag=True,
    help="Only push files changed after startup",
)
@click.option(
    "--debounce",
    type=float,
    default=DEFAULT_DEBOUNCE_SECONDS,
    help="Seconds a file must be quiet before it is pushed (default: 0.5)",
)
@click.pass_context
def sync(
    ctx: Any,
    path: Path,
    branch: Optional[str],
    path_filter: Optional[str],
    no_initial_push: bool,
    debounce: float,
) -> None:
    """Continuously push local edits under PATH to a branch."""
    out: OutputFormatter = ctx.obj["out"]
    branch, head_filter = _resolve_branch(ctx, branch, path)
    path_filter = path_filter or head_filter
    client = _make_client(ctx)
    engine = SyncEngine(client, debounce=debounce, initial_push=not no_initial_push)

    async def run(cancel_event: asyncio.Event) -> None:
        async with client:
            await engine.sync(
                path, branch, path_filter=path_filter, cancel_event=cancel_event
            )

    out.info(f"Syncing {path} to {branch} (Ctrl+C to stop)...")
    try:
        asyncio.run(_run_cancellable(run))
    except KeyboardInterrupt:
        ctx.exit(130)
    except DeconfigAuthenticationError as e:
        _auth_failed(out, e)
        ctx.exit(1)
    except DeconfigError as e:
        out.error(str(e))
        ctx.exit(1)

    if out.json_output:
        out.output_json({"pushed": engine.pushed, "failed": engine.failed})
    else:
        out.print_summary(
            "Sync Stopped",
            [("Pushed", str(engine.pushed)), ("Failed", str(engine.failed))],
        )


@main.command()
@click.argument("path", type=click.Path(file_okay=False, path_type=Path), default=".")
@click.option("--clear", is_flag=True, help="Forget the head record")
@click.pass_context
def head(ctx: Any, path: Path, clear: bool) -> None:
    """Show the branch bound to PATH (default: current directory)."""
    out: OutputFormatter = ctx.obj["out"]
    manager = HeadStateManager()

    if clear:
        if manager.clear(path):
            out.success(f"Cleared head record for {path}")
        else:
            out.warning(f"No head record for {path}")
        return

    record = manager.load(path)
    if record is None:
        out.error(f"No head record for {path}")
        ctx.exit(1)

    if out.json_output:
        out.output_json(record.to_dict())
        return
    out.print_summary(
        "Head",
        [
            ("Workspace", record.workspace),
            ("Branch", record.branch),
            ("Path", record.path),
            ("Path filter", record.path_filter or "(none)"),
            ("Target", "local" if record.local else "remote"),
        ],
    )


if __name__ == "__main__":
    main()
