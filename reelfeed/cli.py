from __future__ import annotations

import sys
import logging

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn

from .auth import AuthSession, ProfileService
from .comments.thread import CommentThread
from .config import load_config, get_feed_config, get_upload_config, get_comment_config
from .errors import (
    AuthError,
    PersistenceError,
    ReelfeedError,
    RetryExhausted,
    ValidationError,
)
from .feed.engagement import estimate_engagement_score
from .feed.synchronizer import FeedSynchronizer
from .models import FeedTab
from .store.document_store import SQLiteDocumentStore
from .store.object_store import LocalObjectStore
from .upload.pipeline import UploadPipeline
from .utils.logging_config import setup_logging

console = Console()
logger = logging.getLogger(__name__)


def _build_stores(config: dict) -> tuple:
    """Construct the local document and object stores from config."""
    store = SQLiteDocumentStore(config["db_path"])
    objects = LocalObjectStore(
        config["storage_dir"],
        public_base_url=config.get("public_base_url"),
        chunk_size=get_upload_config(config)["chunk_size"],
    )
    return store, objects


def _session(user: str | None) -> AuthSession:
    session = AuthSession()
    if user:
        session.sign_in(user)
    return session


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx, verbose):
    """reelfeed - drive the feed, comments and upload engines against local stores."""
    ctx.ensure_object(dict)
    if "config" not in ctx.obj:
        ctx.obj["config"] = load_config()
    config = ctx.obj["config"]
    if verbose:
        config["log_level"] = "DEBUG"
    setup_logging(config.get("log_file"), config.get("log_level", "INFO"))


@cli.command()
@click.option("--pages", "-p", type=int, default=1, help="Number of pages to load")
@click.option(
    "--tab",
    type=click.Choice(["for-you", "following"]),
    default="for-you",
    help="Feed tab",
)
@click.pass_context
def feed(ctx, pages, tab):
    """Show the ranked video feed.

    \b
    Examples:
        reelfeed feed
        reelfeed feed --pages 3
    """
    config = ctx.obj["config"]
    store, _ = _build_stores(config)
    feed_cfg = get_feed_config(config)
    sync = FeedSynchronizer(
        store,
        page_size=feed_cfg["page_size"],
        sort_field=feed_cfg["sort_field"],
        visible_statuses=feed_cfg["visible_statuses"],
    )

    try:
        if tab == "following":
            sync.set_filter(FeedTab.FOLLOWING)
        else:
            sync.load_initial()
        for _ in range(pages - 1):
            sync.load_more()
        state = sync.snapshot()
    finally:
        sync.close()
        store.close()

    if state.last_error is not None:
        console.print(f"[red]Error:[/red] {state.last_error}")
        sys.exit(1)

    if not state.items:
        console.print("[yellow]No videos in the feed yet.[/yellow]")
        console.print("Upload one with: [bold]reelfeed upload FILE --user ID[/bold]")
        return

    table = Table(title=f"Feed ({feed_cfg['sort_field']})")
    table.add_column("#", justify="right")
    table.add_column("Video")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Likes", justify="right")
    table.add_column("Comments", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Est.", justify="right")

    for i, v in enumerate(state.items, 1):
        table.add_row(
            str(i),
            v.id[:8],
            v.title[:40],
            v.status.value,
            str(v.like_count),
            str(v.comment_count),
            f"{v.engagement_score:.3f}",
            f"{estimate_engagement_score(v):.3f}",
        )

    console.print(table)
    if state.exhausted:
        console.print("[dim]End of feed.[/dim]")


@cli.command()
@click.argument("file", type=click.Path(dir_okay=False))
@click.option("--user", "-u", required=True, help="Uploader user id")
@click.option("--caption", "-c", default=None, help="Video caption")
@click.pass_context
def upload(ctx, file, user, caption):
    """Upload a video file and publish it to the feed.

    \b
    Examples:
        reelfeed upload clip.mp4 --user alice --caption "First post"
    """
    config = ctx.obj["config"]
    store, objects = _build_stores(config)

    try:
        pipeline = UploadPipeline.from_config(
            get_upload_config(config), store, objects, _session(user)
        )
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
        ) as progress:
            task = progress.add_task(f"Uploading {click.format_filename(file)}", total=1.0)
            url = pipeline.upload(
                file,
                caption=caption,
                on_progress=lambda fraction: progress.update(task, completed=fraction),
            )
    except AuthError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except ValidationError as e:
        console.print(f"[red]Invalid video:[/red] {e}")
        sys.exit(1)
    except RetryExhausted as e:
        console.print(f"[red]Upload failed:[/red] {e}")
        sys.exit(1)
    except PersistenceError as e:
        console.print(f"[red]Uploaded but not published:[/red] {e}")
        console.print(f"  Stored object: {e.storage_key}")
        sys.exit(1)
    except ReelfeedError as e:
        console.print(f"[red]Error:[/red] Upload failed: {e}")
        logger.exception("Upload failed")
        sys.exit(1)
    finally:
        store.close()

    console.print(f"[green]Published:[/green] {url}")


@cli.command()
@click.argument("video_id")
@click.pass_context
def comments(ctx, video_id):
    """List comments on a video, newest first."""
    config = ctx.obj["config"]
    store, _ = _build_stores(config)
    thread = CommentThread(video_id, store, AuthSession(), **get_comment_config(config))
    profiles = ProfileService(store)

    try:
        thread.start()
        items = thread.comments
        names = {c.author_id: profiles.display_name(c.author_id) for c in items}
    finally:
        thread.close()
        store.close()

    if not items:
        console.print(f"[yellow]No comments on {video_id}.[/yellow]")
        return

    for c in items:
        edited = " [dim](edited)[/dim]" if c.edited else ""
        console.print(
            f"[bold]{names[c.author_id]}[/bold] [dim]{c.created_at:%Y-%m-%d %H:%M}[/dim]"
            f"{edited}  [red]{c.like_count} likes[/red]"
        )
        console.print(f"  {c.text}")


@cli.command()
@click.argument("video_id")
@click.argument("text")
@click.option("--user", "-u", required=True, help="Commenting user id")
@click.pass_context
def comment(ctx, video_id, text, user):
    """Add a comment to a video."""
    config = ctx.obj["config"]
    store, _ = _build_stores(config)
    thread = CommentThread(video_id, store, _session(user), **get_comment_config(config))

    try:
        created = thread.add_comment(text)
    except (ValidationError, AuthError) as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except ReelfeedError as e:
        console.print(f"[red]Error:[/red] Failed to add comment: {e}")
        logger.exception("Failed to add comment")
        sys.exit(1)
    finally:
        store.close()

    console.print(f"[green]Comment added:[/green] {created.id}")


@cli.command()
@click.argument("video_id")
@click.option("--user", "-u", required=True, help="Liking user id")
@click.pass_context
def like(ctx, video_id, user):
    """Toggle the user's like on a video."""
    config = ctx.obj["config"]
    store, _ = _build_stores(config)
    sync = FeedSynchronizer(store, session=_session(user))

    try:
        liked = sync.toggle_like(video_id)
    except ReelfeedError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    finally:
        store.close()

    console.print(f"[green]{'Liked' if liked else 'Unliked'}[/green] {video_id}")


@cli.command()
@click.argument("user_id")
@click.option("--username", default=None, help="Create the profile with this username")
@click.option("--email", default=None, help="Email for a new profile")
@click.pass_context
def profile(ctx, user_id, username, email):
    """Show a user profile, or create it with --username and --email."""
    config = ctx.obj["config"]
    store, _ = _build_stores(config)
    profiles = ProfileService(store)

    try:
        if username or email:
            profiles.create_profile(user_id, username, email)
        found = profiles.get_profile(user_id)
    except ReelfeedError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    finally:
        store.close()

    if found is None:
        console.print(f"[yellow]No profile for {user_id}.[/yellow]")
        return

    table = Table(title=f"Profile: {found.username}")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("User ID", found.user_id)
    table.add_row("Email", found.email)
    table.add_row("Role", found.role)
    table.add_row("Bio", found.bio or "")
    table.add_row("Registered", f"{found.registered_at:%Y-%m-%d}")
    console.print(table)


if __name__ == "__main__":
    cli()
