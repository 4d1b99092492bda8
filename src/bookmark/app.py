# /bookmark/app.py
"""
Terminal front end for the Bookmark reading companion.
Handles book import, model preparation, text and voice conversations and notes.
"""
import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path

from rich.markdown import Markdown
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.prompt import Prompt
from rich.table import Table, box

from .backends import SoundDeviceMicrophone, SoundDevicePlayer, default_catalogue
from .capabilities import ModelSpec
from .chunker import TextChunker
from .config import (
    CACHE_DIR,
    CHUNK_OVERLAP,
    CHUNK_SIZE,
    EMBEDDING_MODEL_NAME,
    GENERATION_MODEL_NAME,
    INDEX_DIR,
    LIBRARY_DIR,
    METRICS_ENABLED,
    MODELS_DIR,
    SYNTHESIS_MODEL_NAME,
    TRANSCRIPTION_MODEL_NAME,
    console,
)
from .conversation import ConversationState
from .engine import RetrievalAugmentedEngine
from .errors import BookmarkError, IndexCorrupt, RecordingPermissionDenied
from .library import BookLibrary
from .metrics import TurnMetrics
from .model_lifecycle import ModelLifecycleManager
from .notes import NoteService
from .observability import get_logger
from .records import Book, ConversationSession, ProgressEvent
from .storage import LibraryStore
from .voice_pipeline import VoicePipeline, VoiceState

logger = get_logger(__name__)


@dataclass
class BookmarkApp:
    store: LibraryStore
    models: ModelLifecycleManager
    library: BookLibrary
    conversation: ConversationState
    notes: NoteService
    engine: RetrievalAugmentedEngine
    metrics: TurnMetrics

    async def close(self):
        await self.models.shutdown()
        self.store.close()


def build_app(
    db_path: str | Path | None = None,
    *,
    catalogue: list[ModelSpec] | None = None,
    models_dir: str | Path = MODELS_DIR,
    index_dir: str | Path = INDEX_DIR,
    library_dir: str | Path = LIBRARY_DIR,
    metrics_dir: str | Path = CACHE_DIR,
    downloader=None,
) -> BookmarkApp:
    """Wires the store, model manager and services together."""
    store = LibraryStore(db_path)
    models = ModelLifecycleManager(
        catalogue if catalogue is not None else default_catalogue(),
        models_dir=models_dir,
        downloader=downloader,
    )
    library = BookLibrary(store, library_dir)
    conversation = ConversationState(store, models)
    metrics = TurnMetrics(metrics_dir, enabled=METRICS_ENABLED)
    engine = RetrievalAugmentedEngine(
        store,
        models,
        conversation,
        library=library,
        chunker=TextChunker(CHUNK_SIZE, CHUNK_OVERLAP),
        metrics=metrics,
        index_dir=index_dir,
    )
    return BookmarkApp(
        store=store,
        models=models,
        library=library,
        conversation=conversation,
        notes=NoteService(store, models),
        engine=engine,
        metrics=metrics,
    )


# --- UI & Formatting Functions ---

def display_welcome_banner():
    console.print(Panel(
        "[bold magenta]Bookmark - Offline Reading Companion[/bold magenta]",
        subtitle="[cyan]Talk with your books, fully on-device[/cyan]",
        expand=False,
    ))


def render_books(books: list[Book]):
    if not books:
        console.print("[yellow]No books imported yet.[/yellow]")
        return
    table = Table(title="Library", border_style="blue", header_style="bold", box=box.SQUARE)
    table.add_column("ID", style="cyan")
    table.add_column("Title", style="magenta")
    table.add_column("Author", style="white")
    table.add_column("Words", style="yellow")
    table.add_column("Chunks", style="green")
    for book in books:
        table.add_row(book.id, book.title, book.author, str(book.metadata.word_count), str(len(book.chunk_ids)))
    console.print(table)


async def ask(prompt: str, **kwargs) -> str:
    return await asyncio.to_thread(Prompt.ask, prompt, **kwargs)


async def prepare_models(app: BookmarkApp, names: list[str]) -> bool:
    """Brings models to ready with a progress bar; returns False when any fails."""
    with Progress(
        TextColumn("[bold cyan]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console,
    ) as progress:
        bars = {name: progress.add_task(name, total=1.0) for name in names}

        def _on_progress(event: ProgressEvent):
            progress.update(bars[event.name], completed=event.fraction, description=f"{event.name} ({event.state.value})")

        results = await asyncio.gather(
            *(app.models.ensure_ready(name, _on_progress) for name in names),
            return_exceptions=True,
        )
    failed = [(name, result) for name, result in zip(names, results) if isinstance(result, BaseException)]
    for name, error in failed:
        console.print(f"[bold red]{name} failed: {error}[/bold red] [dim](choose the option again to retry)[/dim]")
    if failed:
        for name, result in zip(names, results):
            if not isinstance(result, BaseException):
                app.models.release(name)
    return not failed


# --- Flows ---

async def handle_book_import(app: BookmarkApp):
    raw_path = (await ask("Enter the full path to your book (.txt, .md, .pdf)")).strip().strip('"').strip("'")
    if not raw_path:
        console.print("[bold red]Error: Empty path provided.[/bold red]")
        return
    path = Path(raw_path).expanduser()
    title = await ask("Enter a title (optional)", default=path.stem)
    author = await ask("Enter the author (optional)", default="Unknown")
    try:
        app.library.import_file(path, title=title, author=author)
    except (BookmarkError, OSError) as exc:
        console.print(f"[bold red]Error: {exc}[/bold red]")


async def choose_book(app: BookmarkApp) -> Book | None:
    books = app.library.list_books()
    render_books(books)
    if not books:
        return None
    book_id = await ask("Book ID", choices=[book.id for book in books])
    return app.library.get(book_id)


async def ensure_ingested(app: BookmarkApp, book: Book) -> bool:
    try:
        index = app.engine.open_index(book.id)
    except IndexCorrupt as exc:
        console.print(f"[yellow]Index is damaged, rebuilding: {exc}[/yellow]")
        index = None
    if index is not None and book.chunk_ids and index.size() >= len(book.chunk_ids):
        return True
    with Progress(TextColumn("[bold cyan]Indexing"), BarColumn(), TextColumn("{task.completed}/{task.total}"), console=console) as progress:
        bar = progress.add_task("ingest", total=None)

        def _on_progress(done: int, total: int):
            progress.update(bar, completed=done, total=total)

        try:
            report = await app.engine.ingest(book, _on_progress)
        except Exception as exc:
            console.print(f"[bold red]Indexing stopped: {exc}[/bold red]")
            return False
    console.print(f"[green]OK Indexed {report.added} new chunk(s) of {report.total_chunks}.[/green]")
    return True


async def run_voice_mode(app: BookmarkApp, session: ConversationSession):
    if not await prepare_models(app, [TRANSCRIPTION_MODEL_NAME, SYNTHESIS_MODEL_NAME]):
        return
    pipeline = VoicePipeline.connect(
        SoundDeviceMicrophone(),
        SoundDevicePlayer(),
        app.models,
        app.engine,
        session,
        on_state_change=lambda old, new: console.print(f"[dim]voice: {new.value}[/dim]"),
        on_transcript=lambda text: console.print(f"[bold cyan]You:[/bold cyan] {text}"),
        on_response=lambda text: console.print(Panel(Markdown(text), title="Answer", border_style="blue")),
        on_error=lambda exc: console.print(f"[bold red]Voice turn failed: {exc}[/bold red]"),
    )
    console.print("[green]Voice mode.[/green] [italic]Press Enter to talk (or to interrupt), 'q' to leave.[/italic]")
    try:
        while True:
            command = (await ask("", default="")).strip().lower()
            if command == "q":
                break
            try:
                pipeline.start_listening()
            except RecordingPermissionDenied as exc:
                console.print(f"[bold red]{exc}[/bold red]")
                break
    finally:
        if pipeline.state is not VoiceState.IDLE:
            pipeline.stop_listening()
        app.models.release(TRANSCRIPTION_MODEL_NAME)
        app.models.release(SYNTHESIS_MODEL_NAME)


async def handle_conversation(app: BookmarkApp):
    book = await choose_book(app)
    if book is None:
        return
    if not await prepare_models(app, [EMBEDDING_MODEL_NAME, GENERATION_MODEL_NAME]):
        return
    try:
        if not await ensure_ingested(app, book):
            return
        session = app.conversation.start_session(book.id)
        last_answer = None
        console.print(
            "\n[bold green]Conversation started.[/bold green] "
            "[italic]Commands: 'back', 'voice', 'note <text>', 'extract'.[/italic]"
        )
        while True:
            query = (await ask("[bold cyan]Ask about the book[/bold cyan]")).strip()
            if not query:
                continue
            lowered = query.lower()
            if lowered == "back":
                break
            if lowered == "voice":
                await run_voice_mode(app, session)
                continue
            if lowered.startswith("note "):
                app.notes.create_note(query[5:], session.id, book.id, type="highlight")
                console.print("[green]OK Note saved.[/green]")
                continue
            if lowered == "extract":
                if last_answer is None:
                    console.print("[yellow]Ask something first.[/yellow]")
                    continue
                try:
                    extracted = await app.notes.extract_notes(last_answer, session)
                except Exception as exc:
                    logger.error("extract_failed", session_id=session.id, error=str(exc))
                    console.print(f"[bold red]Could not extract notes: {exc}[/bold red]")
                    continue
                console.print(f"[green]OK Extracted {len(extracted)} note(s).[/green]")
                continue
            try:
                with console.status("[bold cyan]Thinking...[/bold cyan]", spinner="dots"):
                    last_answer = await app.engine.answer(query, session)
            except Exception as exc:
                console.print(f"[bold red]Could not answer: {exc}[/bold red]")
                continue
            console.print(Panel(Markdown(last_answer.content or "_(empty reply)_"), title="Answer", border_style="blue"))

        ended = await app.engine.end_session()
        if ended.summary:
            console.print(Panel(ended.summary, title="Session Summary", border_style="green"))
    finally:
        app.models.release(EMBEDDING_MODEL_NAME)
        app.models.release(GENERATION_MODEL_NAME)


async def handle_notes(app: BookmarkApp):
    book = await choose_book(app)
    if book is None:
        return
    notes = app.notes.get_notes(book_id=book.id)
    if not notes:
        console.print("[yellow]No notes for this book yet.[/yellow]")
        return
    table = Table(title=f"Notes - {book.title}", border_style="blue", header_style="bold", box=box.SQUARE)
    table.add_column("When", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Note", style="white")
    for note in notes:
        table.add_row(note.timestamp.strftime("%Y-%m-%d %H:%M"), note.type, note.content)
    console.print(table)


async def handle_delete(app: BookmarkApp):
    book = await choose_book(app)
    if book is None:
        return
    confirm = await ask(f"Delete '{book.title}' with its sessions and notes?", choices=["y", "n"], default="n")
    if confirm == "y":
        app.engine.delete_book(book.id)
        console.print("[green]OK Book deleted.[/green]")


async def run(app: BookmarkApp):
    display_welcome_banner()
    handlers = {
        "1": handle_book_import,
        "3": handle_conversation,
        "4": handle_notes,
        "5": handle_delete,
    }
    while True:
        console.print("\n[bold]Main Menu:[/bold]")
        console.print("[green]1. Import Book[/green]")
        console.print("[cyan]2. List Books[/cyan]")
        console.print("[blue]3. Talk About a Book[/blue]")
        console.print("[magenta]4. Show Notes[/magenta]")
        console.print("[yellow]5. Delete Book[/yellow]")
        console.print("[red]6. Exit[/red]")
        choice = await ask("Choose an option", choices=["1", "2", "3", "4", "5", "6"])
        if choice == "6":
            break
        if choice == "2":
            render_books(app.library.list_books())
            continue
        await handlers[choice](app)


def main():
    """Main application loop."""
    app = build_app()

    async def _run():
        try:
            await run(app)
        finally:
            await app.close()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass
    console.print("\n[bold magenta]Goodbye! Happy reading.[/bold magenta]")
    sys.exit(0)


if __name__ == "__main__":
    main()
