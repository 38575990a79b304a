import sys
from pathlib import Path
import pytest

# Ensure project root is on sys.path so tests can import the `daily_set` package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def reset_shared_state():
	# Clear in-memory rate limiter and cache between tests to avoid cross-test flakiness
	from daily_set import main as app_main
	from daily_set.cache import get_cache
	app_main._RATE_LIMIT_STORE.clear()
	get_cache().clear()
	yield
