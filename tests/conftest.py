import pytest

from fakes import FakeAggregator, FakeClock, build_quote, build_stack
from zestswap.config import Settings


@pytest.fixture
def config():
    return Settings(_env_file=None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def aggregator():
    return FakeAggregator()


@pytest.fixture
def stack(config, clock, aggregator):
    return build_stack(config, clock, aggregator)


@pytest.fixture
def make_quote(clock):
    """Factory for processed quotes stamped with the fake clock."""

    def _make(**kwargs):
        kwargs.setdefault("created_at", clock())
        return build_quote(**kwargs)

    return _make
