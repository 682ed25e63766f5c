"""Engine settings: defaults, stored overrides, database location."""
import json
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

DEFAULT_DB_PATH = os.environ.get(
    "QUIZ_ENGINE_DB", str(Path.home() / ".quiz_engine" / "quiz.db")
)

DIFFICULTIES = ("easy", "medium", "hard")


@dataclass(frozen=True)
class EngineSettings:
    questions_per_quiz: int = 5
    difficulty_mix: dict = field(
        default_factory=lambda: {"easy": 0.4, "medium": 0.4, "hard": 0.2}
    )
    repeat_lookback_days: int = 3
    session_timeout_hours: int = 24
    inactivity_warning_minutes: int = 60
    quiz_retention_days: int = 7
    session_retention_days: int = 30
    default_timezone: str = "UTC"


def get_setting(db_path: str, key: str, default: str = None) -> str | None:
    from quiz_engine.db import get_connection

    conn = get_connection(db_path)
    row = conn.execute("SELECT value FROM engine_settings WHERE key = ?", (key,)).fetchone()
    conn.close()
    return row["value"] if row else default


def set_setting(db_path: str, key: str, value: str) -> None:
    from quiz_engine.db import get_connection

    conn = get_connection(db_path)
    conn.execute(
        "INSERT INTO engine_settings (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value=?",
        (key, value, value),
    )
    conn.commit()
    conn.close()


def load_settings(db_path: str) -> EngineSettings:
    """Defaults overlaid with any overrides stored in engine_settings.

    Integer settings are stored as plain strings; difficulty_mix as JSON.
    """
    settings = EngineSettings()
    overrides = {}
    for f in fields(EngineSettings):
        raw = get_setting(db_path, f.name)
        if raw is None:
            continue
        if f.name == "difficulty_mix":
            overrides[f.name] = json.loads(raw)
        elif f.name == "default_timezone":
            overrides[f.name] = raw
        else:
            overrides[f.name] = int(raw)
    return replace(settings, **overrides) if overrides else settings
