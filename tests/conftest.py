"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.db.engine import Database  # noqa: E402


@pytest.fixture(autouse=True)
def clean_provider_env(monkeypatch):
    """Keep real credentials and Quill overrides out of every test."""
    for var in (
        "OPENAI_API_KEY",
        "ANTHROPIC_API_KEY",
        "GEMINI_API_KEY",
        "GOOGLE_API_KEY",
        "PERPLEXITY_API_KEY",
        "QUILL_OPENAI_API_KEY",
        "QUILL_ANTHROPIC_API_KEY",
        "QUILL_GEMINI_API_KEY",
        "QUILL_PERPLEXITY_API_KEY",
        "QUILL_DATABASE_URL",
        "QUILL_LOG_LEVEL",
        "QUILL_LOG_FORMAT",
    ):
        monkeypatch.delenv(var, raising=False)
    from src.settings import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def database(tmp_path):
    """Fresh SQLite database file with the schema created."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'quill-test.db'}")
    await db.create_schema()
    yield db
    await db.dispose()
