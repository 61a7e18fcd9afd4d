import typer
from rich.console import Console
from rich.table import Table
from typing import Optional
from datetime import datetime
import asyncio

from mastery_engine.config import configure_logging
from mastery_engine.database import SessionLocal, init_db
from mastery_engine.crud import create_book, create_concept, get_book
from mastery_engine.exceptions import MasteryEngineError
from mastery_engine.generator import get_generator
from mastery_engine.practice import PracticeSessionManager
from mastery_engine.progress import concept_progress, daily_summary, pending_review_count, session_view
from mastery_engine.schemas import BookCreate, ConceptCreate, Importance, SessionType
from mastery_engine.spaced_retrieval import SpacedRetrievalScheduler

app = typer.Typer(help="Mastery Engine CLI - retrieval practice and mastery tracking for books")
console = Console()


@app.callback()
def main(log_level: Optional[str] = typer.Option(None, help="Log level (DEBUG, INFO, WARNING)")):
    configure_logging(log_level)


def _manager(db, with_generator: bool = False) -> PracticeSessionManager:
    generator = get_generator() if with_generator else None
    return PracticeSessionManager(db, generator)


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


@app.command()
def init():
    """Initialize database tables"""
    init_db()
    console.print("[green]✓[/green] Database initialized successfully!")


@app.command()
def reset_db():
    """Delete all data and reinitialize database (WARNING: irreversible!)"""
    confirm = typer.confirm("⚠️  This will DELETE ALL DATA. Are you sure?")
    if not confirm:
        console.print("[yellow]Cancelled.[/yellow]")
        return

    from mastery_engine.database import engine, Base
    import mastery_engine.models  # noqa: F401
    console.print("[yellow]Dropping all tables...[/yellow]")
    Base.metadata.drop_all(bind=engine)
    console.print("[yellow]Recreating tables...[/yellow]")
    Base.metadata.create_all(bind=engine)
    console.print("[green]✓[/green] Database reset complete! All data deleted.")


@app.command()
def add_book(
    book_id: str = typer.Option(..., prompt="Book ID (e.g., b1)"),
    title: str = typer.Option(..., prompt="Title"),
    author: Optional[str] = typer.Option(None, help="Author")
):
    """Register a book"""
    db = SessionLocal()
    try:
        book = create_book(db, BookCreate(id=book_id, title=title, author=author))
        console.print(f"[green]✓[/green] Book added: {book.title} (ID: {book.id})")
    except MasteryEngineError as e:
        console.print(f"[red]✗[/red] {e.message}")
    finally:
        db.close()


@app.command()
def add_concept(
    book_id: str = typer.Option(..., prompt="Book ID"),
    concept_id: str = typer.Option(..., prompt="Concept ID (e.g., b1i1)"),
    title: str = typer.Option(..., prompt="Concept title"),
    description: str = typer.Option("", help="Concept description used for question generation"),
    importance: Optional[Importance] = typer.Option(None, help="foundation, building_block or enhancement")
):
    """Register a concept of a book"""
    db = SessionLocal()
    try:
        if not get_book(db, book_id):
            console.print(f"[red]✗[/red] Book {book_id} not found")
            return
        concept = create_concept(db, ConceptCreate(
            id=concept_id,
            book_id=book_id,
            title=title,
            description=description,
            importance=importance
        ))
        console.print(f"[green]✓[/green] Concept added: {concept.title} (ID: {concept.id})")
    except MasteryEngineError as e:
        console.print(f"[red]✗[/red] {e.message}")
    finally:
        db.close()


@app.command()
def start(
    book_id: str = typer.Option(..., prompt="Book ID"),
    concept_id: Optional[str] = typer.Option(None, help="Concept to practice; omit for a review-only session"),
    retry_errors: bool = typer.Option(False, help="Regenerate a session that previously failed")
):
    """Start or resume a practice session"""
    db = SessionLocal()
    try:
        manager = _manager(db, with_generator=True)
        session_type = SessionType.LESSON_PRACTICE if concept_id else SessionType.REVIEW_PRACTICE
        console.print("[yellow]Preparing session (this may take a moment)...[/yellow]")
        session = asyncio.run(manager.start_or_resume(
            concept_id or "",
            book_id,
            session_type=session_type,
            error_policy="retry" if retry_errors else "surface"
        ))
        if session is None:
            console.print("[yellow]Nothing due for review today.[/yellow]")
            return
        console.print(f"[green]✓[/green] Session {session.id} is {session.status}")
        _print_session(db, session.id)
    except MasteryEngineError as e:
        console.print(f"[red]✗[/red] {e.message}")
    finally:
        db.close()


@app.command()
def answer(
    session_id: str = typer.Option(..., prompt="Session ID"),
    question_number: int = typer.Option(..., prompt="Question number (1-based)"),
    correct: bool = typer.Option(..., prompt="Answered correctly?"),
    latency: Optional[float] = typer.Option(None, help="Seconds spent on the question"),
    hint: bool = typer.Option(False, help="Primer or hint was used"),
    changes: int = typer.Option(0, help="Number of times the answer was changed")
):
    """Record an answer to a session question"""
    db = SessionLocal()
    try:
        view = session_view(db, session_id)
        if question_number < 1 or question_number > len(view.questions):
            console.print(f"[red]✗[/red] Question number must be between 1 and {len(view.questions)}")
            return
        question = view.questions[question_number - 1]
        _manager(db).record_answer(
            session_id,
            question.id,
            correct,
            latency_seconds=latency,
            hint_used=hint,
            answer_changes=changes
        )
        console.print(f"[green]✓[/green] Answer recorded for Q{question_number}")
    except MasteryEngineError as e:
        console.print(f"[red]✗[/red] {e.message}")
    finally:
        db.close()


@app.command()
def pause(session_id: str):
    """Pause an in-progress session"""
    db = SessionLocal()
    try:
        _manager(db).pause(session_id)
        console.print("[green]✓[/green] Session paused")
    except MasteryEngineError as e:
        console.print(f"[red]✗[/red] {e.message}")
    finally:
        db.close()


@app.command()
def resume(session_id: str):
    """Resume a paused session"""
    db = SessionLocal()
    try:
        _manager(db).resume(session_id)
        console.print("[green]✓[/green] Session resumed")
    except MasteryEngineError as e:
        console.print(f"[red]✗[/red] {e.message}")
    finally:
        db.close()


@app.command()
def complete(session_id: str):
    """Complete a session and update coverage, review queue and daily stats"""
    db = SessionLocal()
    try:
        outcome = _manager(db).complete(session_id)
        console.print("\n[green]✓[/green] [bold]Session complete![/bold]\n")
        console.print(f"  Score: {outcome.correct}/{outcome.total} ({outcome.accuracy_percent}%)")
        console.print(f"  Brain calories: {outcome.brain_calories} BCal")
        console.print(f"  New review items: {outcome.new_review_items}")
        for concept_id in outcome.celebration_queue:
            console.print(f"  [bold magenta]★ Mastered {concept_id}![/bold magenta]")
    except MasteryEngineError as e:
        console.print(f"[red]✗[/red] {e.message}")
    finally:
        db.close()


def _print_session(db, session_id: str):
    view = session_view(db, session_id)
    answered = set(view.answered_question_ids)

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Type", style="green")
    table.add_column("Category", style="yellow")
    table.add_column("Difficulty", style="blue")
    table.add_column("Question")
    table.add_column("Done", justify="center")

    for number, question in enumerate(view.questions, start=1):
        tag = ""
        if question.is_curveball:
            tag = "[CURVEBALL] "
        elif question.is_spaced_follow_up:
            tag = "[FOLLOW-UP] "
        elif question.is_review:
            tag = "[REVIEW] "
        text = tag + question.text
        if question.options:
            text += "\n" + "\n".join(f"  {i + 1}. {o}" for i, o in enumerate(question.options))
        table.add_row(
            str(number),
            question.question_type.value,
            question.category.value,
            question.difficulty.value,
            text,
            "✓" if question.id in answered else ""
        )

    console.print(f"\n[bold]Session {view.id}[/bold] ({view.session_type.value}, {view.status.value})")
    if view.error_message:
        console.print(f"[red]Error: {view.error_message}[/red]")
    console.print(table)


@app.command()
def view_session(session_id: str):
    """View session questions and answered state"""
    db = SessionLocal()
    try:
        _print_session(db, session_id)
    except MasteryEngineError as e:
        console.print(f"[red]✗[/red] {e.message}")
    finally:
        db.close()


@app.command()
def view_progress(book_id: str):
    """View coverage and mastery of every concept in a book"""
    db = SessionLocal()
    try:
        book = get_book(db, book_id)
        if not book:
            console.print(f"[red]✗[/red] Book {book_id} not found")
            return

        console.print(f"\n[bold]Progress - {book.title}[/bold]\n")

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Concept", style="cyan")
        table.add_column("Title", style="green")
        table.add_column("Coverage", justify="right")
        table.add_column("Accuracy", justify="right")
        table.add_column("Follow-up due", style="yellow")
        table.add_column("Curveball due", style="yellow")
        table.add_column("Mastered", justify="center")

        for item in concept_progress(db, book_id):
            table.add_row(
                item.concept_id,
                item.title[:40],
                f"{item.coverage_percentage:.0f}%",
                f"{item.current_accuracy:.0f}%",
                _format_date(item.spaced_follow_up_due_date),
                _format_date(item.curveball_due_date),
                "★" if item.is_mastered else ""
            )

        console.print(table)
        console.print(f"\n[cyan]Pending review items:[/cyan] {pending_review_count(db, book_id)}")
    finally:
        db.close()


@app.command()
def today():
    """View today's brain calories, accuracy and attention"""
    db = SessionLocal()
    try:
        summary = daily_summary(db)
        console.print(f"\n[bold]Today ({summary.day})[/bold]")
        console.print(f"  Brain calories: {summary.bcal_total} BCal")
        console.print(f"  Accuracy: {summary.accuracy_percent}% ({summary.correct_count}/{summary.answered_count})")
        console.print(f"  Attention: {summary.attention_percent}% ({summary.attention_pauses} pause(s))")
        console.print(f"  Sessions completed: {summary.sessions_completed}")
    finally:
        db.close()


@app.command()
def force_due(book_id: str):
    """Make every pending follow-up and curveball of a book due now (testing/support)"""
    db = SessionLocal()
    try:
        queued = SpacedRetrievalScheduler().force_all_due(db, book_id)
        console.print(f"[green]✓[/green] {len(queued)} check(s) queued")
    except MasteryEngineError as e:
        console.print(f"[red]✗[/red] {e.message}")
    finally:
        db.close()


@app.command()
def requeue_curveball(
    book_id: str = typer.Option(..., prompt="Book ID"),
    concept_id: str = typer.Option(..., prompt="Concept ID"),
    delay_days: int = typer.Option(0, help="Days until the new curveball is due")
):
    """Grant another curveball to a concept that failed its curveball"""
    db = SessionLocal()
    try:
        coverage = SpacedRetrievalScheduler().requeue_curveball(db, concept_id, book_id, delay_days)
        if coverage is None:
            console.print(f"[yellow]No pending curveball for {concept_id}[/yellow]")
            return
        console.print(f"[green]✓[/green] Curveball due {_format_date(coverage.curveball_due_date)}")
    except MasteryEngineError as e:
        console.print(f"[red]✗[/red] {e.message}")
    finally:
        db.close()


if __name__ == "__main__":
    app()
