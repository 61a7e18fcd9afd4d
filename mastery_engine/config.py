from pydantic_settings import BaseSettings
from rich.logging import RichHandler
from typing import Optional
from pathlib import Path
import logging

# Get the project root directory (parent of mastery_engine folder)
PROJECT_ROOT = Path(__file__).parent.parent

class Settings(BaseSettings):
    """Engine configuration loaded from environment variables"""
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'mastery.db'}"

    # AI Provider Configuration
    ai_provider: str = "ollama"  # "ollama" or "claude"

    # Ollama settings (for local development)
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2:latest"

    # Claude API settings (for production)
    claude_api_key: str = ""
    claude_model: str = "claude-3-5-sonnet-20241022"

    # Spaced retrieval delays (days)
    base_delay_days: int = 3
    retry_delay_days: int = 2
    curveball_after_pass_days: int = 5
    curveball_retry_days: Optional[int] = None  # None: failed curveballs are not rescheduled

    # Daily review ceiling
    daily_review_mcq_cap: int = 3
    daily_review_open_cap: int = 1

    # Practice session lifecycle
    stale_session_seconds: int = 300
    session_poll_attempts: int = 40
    session_poll_interval_seconds: float = 1.0
    min_lesson_questions: int = 8

    # Question generation
    generation_max_attempts: int = 2
    option_length_ratio_limit: float = 3.0

    log_level: str = "INFO"

    class Config:
        env_file = str(PROJECT_ROOT / ".env")

settings = Settings()


def configure_logging(level: Optional[str] = None):
    """Route engine logs through rich on the root logger"""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True
    )
