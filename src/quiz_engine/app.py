"""Interactive CLI application."""
import logging
import os

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from quiz_engine.adaptive import build_adaptive_quiz, due_questions, record_review
from quiz_engine.config import DEFAULT_DB_PATH, get_setting, load_settings
from quiz_engine.db import init_db
from quiz_engine.errors import IncompleteQuiz, QuizEngineError
from quiz_engine.models import QuizResult
from quiz_engine.notifier import LoggingNotifier, send_streak_reminders
from quiz_engine.questions import get_questions
from quiz_engine.scoring import answers_match
from quiz_engine.seed import is_seeded, seed_all
from quiz_engine.selector import cleanup_old_quizzes, current_daily_quiz, generate_upcoming_quizzes
from quiz_engine.sessions import (
    complete_session, expire_stale_sessions, get_user_quiz_status, record_answer,
    session_progress, start_session,
)
from quiz_engine.spaced_repetition import outcome_for_answer
from quiz_engine.streaks import streak_summary
from quiz_engine.timeutil import date_key_for, utcnow

console = Console()
logger = logging.getLogger(__name__)

LEVEL_COLORS = {
    "excellent": "green",
    "good": "cyan",
    "fair": "yellow",
    "needs_improvement": "red",
}


class SessionExitRequested(Exception):
    """User asked to leave a quiz midway; the session stays resumable."""


def session_prompt(prompt: str, **kwargs) -> str:
    answer = Prompt.ask(prompt, **kwargs)
    if answer.strip().lower() in ("q", "menu"):
        raise SessionExitRequested()
    return answer


def configure_logging(level: str = "WARNING") -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def current_user(db_path: str) -> tuple[str, str]:
    user_id = os.environ.get("QUIZ_USER") or get_setting(db_path, "user_id", "local")
    timezone = os.environ.get("QUIZ_TIMEZONE") or load_settings(db_path).default_timezone
    return user_id, timezone


def show_welcome():
    console.print(Panel(
        "[bold]Daily Quiz[/bold]\n[dim]One quiz a day. Keep the streak alive.[/dim]",
        title="Welcome", border_style="blue",
    ))


def show_menu():
    console.print("\n[bold]Commands:[/bold]")
    commands = [
        ("today", "Start or resume today's quiz"),
        ("status", "Today's progress"),
        ("streak", "Streak and 30-day calendar"),
        ("reviews", "Questions due for review"),
        ("practice", "Adaptive practice quiz"),
        ("generate", "Publish upcoming quizzes and clean up"),
        ("quit", "Exit"),
    ]
    for cmd, desc in commands:
        console.print(f"  [cyan]{cmd:<14}[/cyan] {desc}")


def ask_question(number: int, total: int, question) -> str:
    console.print(f"[bold]Q{number}/{total}.[/bold] {question.prompt}\n")
    if question.choices:
        letters = "abcdefgh"[: len(question.choices)]
        for letter, choice in zip(letters, question.choices):
            console.print(f"  [cyan]{letter})[/cyan] {choice}")
        pick = session_prompt("\nYour answer (q to pause)", choices=list(letters) + ["q", "menu"])
        return question.choices[letters.index(pick)]
    return session_prompt("\nYour answer (q to pause)")


def show_result(result: QuizResult) -> None:
    level = result.performance_level.value
    color = LEVEL_COLORS[level]
    console.print(Panel(
        f"Score: [bold]{result.score}%[/bold] ({result.correct_answers}/{result.total_questions})\n"
        f"Level: [{color}]{level.replace('_', ' ')}[/{color}]\n"
        f"Time: {result.time_spent_ms // 1000}s"
        + ("\n[green]Streak extended![/green]" if result.streak_updated else ""),
        title="Results", border_style=color,
    ))
    table = Table(title="Breakdown")
    table.add_column("Q", justify="right")
    table.add_column("Your answer")
    table.add_column("Result")
    for i, answer in enumerate(result.answers, 1):
        mark = "[green]correct[/green]" if answer.is_correct else "[red]wrong[/red]"
        table.add_row(str(i), answer.selected_answer or "[dim]-[/dim]", mark)
    console.print(table)


def run_daily_quiz(db_path: str, user_id: str, timezone: str) -> QuizResult | None:
    quiz = current_daily_quiz(db_path, timezone)
    session = start_session(db_path, user_id, quiz.id, timezone)
    for warning in session.warnings:
        console.print(f"[yellow]{warning}[/yellow]")
    questions = get_questions(db_path, quiz.question_ids)
    console.print(f"\n[bold]Daily Quiz {quiz.date_key}[/bold]: {quiz.total_questions} questions\n")
    for i, question in enumerate(questions):
        if question.id in session.answers:
            continue
        answer = ask_question(i + 1, quiz.total_questions, question)
        session = record_answer(db_path, session.id, user_id, question.id, answer)
        console.print()
    result = complete_session(db_path, session.id, user_id, notifier=LoggingNotifier())
    show_result(result)
    return result


def cmd_today(db_path: str):
    user_id, timezone = current_user(db_path)
    try:
        run_daily_quiz(db_path, user_id, timezone)
    except SessionExitRequested:
        console.print("[dim]Quiz paused. Run 'today' again to resume.[/dim]")
    except IncompleteQuiz as e:
        console.print(f"[yellow]{e}[/yellow]")


def cmd_status(db_path: str):
    user_id, timezone = current_user(db_path)
    status = get_user_quiz_status(db_path, user_id, timezone)
    quiz = status["quiz"]
    lines = [f"Quiz for [bold]{quiz.date_key}[/bold] ({timezone})"]
    if status["has_completed_today"]:
        lines.append("[green]Completed today[/green]")
    elif status["active_session"]:
        progress = session_progress(status["active_session"], quiz)
        lines.append(f"In progress: {progress['answered']}/{progress['total']} answered")
        lines.extend(f"[yellow]{w}[/yellow]" for w in status["active_session"].warnings)
    else:
        lines.append("[cyan]Not started[/cyan]")
    lines.append(f"Streak: {status['streak']['current']} (longest {status['streak']['longest']})")
    console.print(Panel("\n".join(lines), title="Status", border_style="blue"))


def cmd_streak(db_path: str):
    user_id, timezone = current_user(db_path)
    summary = streak_summary(db_path, user_id, date_key_for(utcnow(), timezone))
    console.print(f"\n  Current streak: [bold]{summary['current']}[/bold]  |  "
                  f"Longest: [bold]{summary['longest']}[/bold]  |  "
                  f"Consistency: [bold]{summary['consistency_rate']}%[/bold]")
    if summary["next_milestone"]:
        console.print(f"  Next milestone: {summary['next_milestone']} days "
                      f"({summary['days_until_next_milestone']} to go)")
    if summary["is_at_risk"]:
        console.print("  [yellow]Streak at risk! Complete today's quiz to keep it.[/yellow]")
    cells = "".join("█" if day["completed"] else "░" for day in summary["calendar"])
    console.print(f"\n  Last 30 days: [green]{cells}[/green]")


def cmd_reviews(db_path: str):
    user_id, _ = current_user(db_path)
    due = due_questions(db_path, user_id, limit=20)
    if not due:
        console.print("[green]Nothing due for review.[/green]")
        return
    table = Table(title="Due for review")
    table.add_column("ID", justify="right")
    table.add_column("Question")
    table.add_column("Difficulty")
    for q in get_questions(db_path, due):
        table.add_row(str(q.id), q.prompt, q.difficulty)
    console.print(table)


def cmd_practice(db_path: str):
    user_id, _ = current_user(db_path)
    questions = build_adaptive_quiz(db_path, user_id, count=5)
    if not questions:
        console.print("[yellow]No questions available![/yellow]")
        return
    correct = 0
    try:
        for i, question in enumerate(questions, 1):
            answer = ask_question(i, len(questions), question)
            is_correct = answers_match(answer, question.answer)
            correct += is_correct
            record_review(db_path, user_id, question.id, outcome_for_answer(is_correct))
            if is_correct:
                console.print("[green]Correct![/green]\n")
            else:
                console.print(f"[red]Incorrect.[/red] Answer: [green]{question.answer}[/green]\n")
    except SessionExitRequested:
        console.print("[dim]Practice stopped.[/dim]")
    console.print(f"[bold]Practice score: {correct}/{len(questions)}[/bold]")


def cmd_generate(db_path: str):
    expired = expire_stale_sessions(db_path)
    summary = generate_upcoming_quizzes(db_path)
    for item in summary["results"]:
        console.print(f"[green]{item['date']}[/green]: quiz {item['quiz_id']} ({item['questions']} questions)")
    for item in summary["errors"]:
        console.print(f"[red]{item['date']}: {item['error']}[/red]")
    cleaned = cleanup_old_quizzes(db_path)
    reminders = send_streak_reminders(db_path, LoggingNotifier())
    console.print(f"[dim]Expired {expired} sessions, removed {cleaned['quizzes_removed']} old quizzes, "
                  f"sent {reminders} reminders.[/dim]")


COMMANDS = {
    "today": cmd_today,
    "status": cmd_status,
    "streak": cmd_streak,
    "reviews": cmd_reviews,
    "practice": cmd_practice,
    "generate": cmd_generate,
}


def main():
    configure_logging(os.environ.get("QUIZ_LOG_LEVEL", "WARNING"))
    db_path = DEFAULT_DB_PATH
    init_db(db_path)
    first_run = not is_seeded(db_path)
    if first_run:
        console.print("[dim]Setting up for first use...[/dim]")
    seed_all(db_path)
    if first_run:
        console.print("[green]Ready![/green]\n")

    show_welcome()

    while True:
        show_menu()
        choice = Prompt.ask("\n[bold]>[/bold]", default="today").strip().lower()
        if choice in ("quit", "exit", "q"):
            console.print("[dim]See you tomorrow![/dim]")
            break
        command = COMMANDS.get(choice)
        if command is None:
            console.print("[red]Unknown command. Try again.[/red]")
            continue
        try:
            command(db_path)
        except KeyboardInterrupt:
            console.print("\n[dim]Use 'quit' to exit.[/dim]")
        except QuizEngineError as e:
            console.print(f"[red]Error: {e}[/red]")


if __name__ == "__main__":
    main()
