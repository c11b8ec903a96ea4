"""CLI for FaceSense.

Commands:
    ingest <file-id> <json>  - Ingest detector output for one file
    match                    - Match faceless markers against all faces
    name-marker <id> <name>  - Name a marker manually
    show-marker <id>         - Show marker details
    show-face <id>           - Show face details
    init-db                  - Create tables
    reset-db                 - Drop and recreate tables
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated

import typer
from pydantic import TypeAdapter, ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from sqlalchemy import func, select

from face_sense.db import async_session_factory, engine, init_db
from face_sense.errors import FaceSenseError
from face_sense.models import Face, Marker, Src
from face_sense.resolution import FaceService, MarkerResolver
from face_sense.schemas import DetectedFace, MarkerForm, new_face_marker

app = typer.Typer(
    name="face-sense",
    help="FaceSense: identity resolution and deduplication for face markers",
    no_args_is_help=True,
)
console = Console()

_detections_adapter = TypeAdapter(list[DetectedFace])


def run_async(coro):
    """Run an async coroutine in sync context."""
    return asyncio.run(coro)


@app.callback()
def configure(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Show debug logging")
    ] = False,
):
    """Configure logging for all commands."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("ingest")
def ingest(
    file_id: Annotated[int, typer.Argument(help="ID of the file the detections belong to")],
    path: Annotated[Path, typer.Argument(help="JSON list of detected faces")],
):
    """Ingest detector output: deduplicate markers, then match them to faces."""
    try:
        detections = _detections_adapter.validate_json(path.read_bytes())
    except FileNotFoundError:
        console.print(f"[red]Error:[/red] File not found: {path}")
        raise typer.Exit(1) from None
    except ValidationError as e:
        console.print(f"[red]Error:[/red] Invalid detections: {e}")
        raise typer.Exit(1) from None

    async def _ingest():
        await init_db()

        async with async_session_factory() as session, session.begin():
            resolver = MarkerResolver(session)

            table = Table(title=f"File {file_id}")
            table.add_column("Marker", justify="right")
            table.add_column("Position")
            table.add_column("Face")
            table.add_column("Subject")

            for detected in detections:
                marker = await resolver.update_or_create_marker(new_face_marker(detected, file_id))

                await resolver.match_marker(marker)

                table.add_row(
                    str(marker.id),
                    f"{marker.x:.3f}, {marker.y:.3f}",
                    marker.face_id or "-",
                    marker.subject_uid or "-",
                )

        console.print(table)

    try:
        run_async(_ingest())
    except FaceSenseError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


@app.command("match")
def match(
    all_markers: Annotated[
        bool, typer.Option("--all", help="Also re-check markers that already have a face")
    ] = False,
):
    """Match markers against every known face."""
    async def _match():
        await init_db()

        async with async_session_factory() as session, session.begin():
            resolver = MarkerResolver(session)
            faces = (await session.execute(select(Face).order_by(Face.id))).scalars().all()

            total = 0
            for face in faces:
                total += await resolver.match_markers(face, faceless_only=not all_markers)

        console.print(f"[bold]Summary:[/bold] {len(faces)} faces, {total} markers updated")

    try:
        run_async(_match())
    except FaceSenseError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


@app.command("name-marker")
def name_marker(
    marker_id: Annotated[int, typer.Argument(help="Marker ID")],
    name: Annotated[str, typer.Argument(help="Name of the person shown")],
):
    """Name a marker manually and propagate the subject."""
    async def _name():
        await init_db()

        async with async_session_factory() as session, session.begin():
            resolver = MarkerResolver(session)
            marker = await resolver.find_marker(marker_id)

            if not marker:
                console.print(f"[red]Error:[/red] Marker not found: {marker_id}")
                raise typer.Exit(1)

            form = MarkerForm(marker_name=name, subject_src=Src.MANUAL)
            await resolver.save_form(marker, form)

            console.print(f"[green]Marker {marker.id} is now {marker.marker_name} ({marker.subject_uid})[/green]")

    try:
        run_async(_name())
    except FaceSenseError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


@app.command("show-marker")
def show_marker(
    marker_id: Annotated[int, typer.Argument(help="Marker ID")],
):
    """Show details for a specific marker."""
    async def _show():
        await init_db()

        async with async_session_factory() as session:
            marker = await MarkerResolver(session).find_marker(marker_id)

            if not marker:
                console.print(f"[red]Error:[/red] Marker not found: {marker_id}")
                raise typer.Exit(1)

            panel_content = []
            panel_content.append(f"[bold]ID:[/bold] {marker.id} (file {marker.file_id})")
            panel_content.append(f"[bold]Type:[/bold] {marker.marker_type.value or 'unknown'}")
            panel_content.append(f"[bold]Source:[/bold] {marker.marker_src.value or 'default'}")
            panel_content.append(
                f"[bold]Position:[/bold] x={marker.x:.3f} y={marker.y:.3f} w={marker.w:.3f} h={marker.h:.3f}"
            )
            panel_content.append(f"[bold]Size / Score:[/bold] {marker.size} / {marker.score}")
            panel_content.append(f"[bold]Embeddings:[/bold] {len(marker.embeddings)}")

            if marker.marker_name:
                panel_content.append(f"[bold]Name:[/bold] {marker.marker_name}")

            panel_content.append(
                f"[bold]Subject:[/bold] {marker.subject_uid or '-'} ({marker.subject_src.value or 'default'})"
            )
            panel_content.append(f"[bold]Face:[/bold] {marker.face_id or '-'} (dist {marker.face_dist:.4f})")
            panel_content.append(f"[bold]Matched:[/bold] {marker.matched_at or 'never'}")

            if marker.marker_invalid:
                panel_content.append("[yellow]Marked invalid[/yellow]")

            console.print(Panel("\n".join(panel_content), title="Marker Details"))

    run_async(_show())


@app.command("show-face")
def show_face(
    face_id: Annotated[str, typer.Argument(help="Face ID")],
):
    """Show details for a specific face."""
    async def _show():
        await init_db()

        async with async_session_factory() as session:
            face = await FaceService(session).find(face_id)

            if not face:
                console.print(f"[red]Error:[/red] Face not found: {face_id}")
                raise typer.Exit(1)

            marker_count = await session.scalar(
                select(func.count()).select_from(Marker).where(Marker.face_id == face.id)
            )

            panel_content = []
            panel_content.append(f"[bold]ID:[/bold] {face.id}")
            panel_content.append(f"[bold]Source:[/bold] {face.face_src.value or 'default'}")
            panel_content.append(f"[bold]Subject:[/bold] {face.subject_uid or '-'}")
            panel_content.append(f"[bold]Samples:[/bold] {face.samples} (radius {face.sample_radius:.4f})")
            panel_content.append(
                f"[bold]Collisions:[/bold] {face.collisions} (radius {face.collision_radius:.4f})"
            )
            panel_content.append(f"[bold]Markers:[/bold] {marker_count}")
            panel_content.append(f"[bold]Matched:[/bold] {face.matched_at or 'never'}")

            console.print(Panel("\n".join(panel_content), title="Face Details"))

    run_async(_show())


@app.command("init-db")
def init_database():
    """Initialize the database schema (creates tables if they don't exist)."""
    async def _init():
        await init_db()
        console.print("[green]Database initialized successfully.[/green]")

    run_async(_init())


@app.command("reset-db")
def reset_database(
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Skip confirmation prompt")
    ] = False,
):
    """Drop all tables and recreate them.

    WARNING: This destroys all data!
    """
    if not force:
        confirm = typer.confirm(
            "This will DELETE ALL DATA. Are you sure?",
            default=False,
        )
        if not confirm:
            console.print("[yellow]Aborted.[/yellow]")
            raise typer.Exit(0)

    async def _reset():
        from face_sense.models import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        console.print("[green]Database reset successfully.[/green]")

    run_async(_reset())


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
