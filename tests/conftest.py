import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from narrator.config import Settings  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the developer's environment and `.env`."""

    return Settings(
        _env_file=None,
        openai_api_key="sk-test",
        google_ai_api_key=None,
        enable_wikipedia_integration=False,
        enable_holiday_lookup=False,
        enable_spatial_redaction=False,
        request_timeout=10,
    )
