import sys
from pathlib import Path

import pytest


# Ensure local src/ package imports work without editable install.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow-running (use --run-slow to include)"
    )


def pytest_addoption(parser):
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run slow tests"
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-slow", default=False):
        return
    skip_slow = pytest.mark.skip(reason="Slow test skipped. Use --run-slow to run.")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def clean_config():
    """Reset config state between tests."""
    from hypermnemo.core.config import reset_config
    reset_config()
    yield
    reset_config()


@pytest.fixture
def small_config():
    """
    Small-dimension config with no automatic thresholds, so tests control
    exactly when consolidation and compression happen.
    """
    from hypermnemo.core.config import HyperMnemoConfig, IndexConfig, TierPolicy, TIER_NAMES

    return HyperMnemoConfig(
        index=IndexConfig(dimension=16),
        tiers={name: TierPolicy() for name in TIER_NAMES},
    )


@pytest.fixture
def storage():
    from tests.mocks import MockStorage
    return MockStorage()


@pytest.fixture
def security_gate():
    from tests.mocks import MockSecurityGate
    return MockSecurityGate()


@pytest.fixture
def engine(small_config, storage, security_gate):
    from hypermnemo.core.engine import HyperMnemoEngine
    return HyperMnemoEngine(config=small_config, storage=storage, security_gate=security_gate)
