"""Unit tests for distance helpers."""
import pytest

from processor.distance import calculate_distance, distance_or_none


def test_calculate_distance_zurich_bern():
    """Test a known city pair."""
    assert calculate_distance(47.3769, 8.5417, 46.9480, 7.4474) == pytest.approx(95.5, abs=1.0)


def test_calculate_distance_same_point():
    """Test identical points."""
    assert calculate_distance(47.0, 8.0, 47.0, 8.0) == 0.0


def test_distance_or_none():
    """Test missing coordinates yield None."""
    assert distance_or_none(47.0, 8.0, None, 8.0) is None
    assert distance_or_none(47.3769, 8.5417, 46.9480, 7.4474) == pytest.approx(95.5, abs=1.0)
