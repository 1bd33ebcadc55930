# tests/conftest.py
import numpy as np
import pytest

from opsguard.core.events.adapter import EventAdapter
from opsguard.core.events.aggregator import SignalAggregator
from opsguard.core.roi import ZoneResolver, load_zone_map
from opsguard.core.transform import CoordinateTransform, load_reference_points
from opsguard.ingest import FeedNormalizer

NOW_S = 1739168800.0
NOW_MS = int(NOW_S * 1000)


def fixed_clock():
    return NOW_S


@pytest.fixture(scope="session")
def zone_map():
    return load_zone_map()


@pytest.fixture(scope="session")
def transform(zone_map):
    return CoordinateTransform(load_reference_points(), world_offset_m=zone_map.world_offset_m)


@pytest.fixture(scope="session")
def resolver(zone_map):
    return ZoneResolver(zone_map)


@pytest.fixture
def adapter(transform, resolver):
    return EventAdapter(transform, resolver, clock=fixed_clock)


@pytest.fixture
def signals(adapter):
    return SignalAggregator(adapter, clock=fixed_clock)


@pytest.fixture
def normalizer(adapter, signals):
    return FeedNormalizer(adapter, signals)


@pytest.fixture
def rng():
    return np.random.default_rng(7)


@pytest.fixture
def now_ms():
    return NOW_MS
