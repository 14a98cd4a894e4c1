from pathlib import Path
import sys

import pytest

# Ensure the backend modules are importable for tests
BACKEND = Path(__file__).resolve().parents[1] / "backend"
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from drain import DrainPipeline  # noqa: E402
from memory_cluster import InMemoryCluster  # noqa: E402


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, secs: float) -> None:
        self.now += secs


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cluster() -> InMemoryCluster:
    return InMemoryCluster()


@pytest.fixture
def pipeline(cluster, clock) -> DrainPipeline:
    return DrainPipeline(
        cluster,
        grace_period_secs=10,
        force_delete_timeout_secs=6,
        poll_interval_secs=2,
        clock=clock,
        sleep=clock.sleep,
    )
