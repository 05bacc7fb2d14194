"""Shared pytest fixtures for all tests."""
import pytest

from builders import Recorder, calibration_table as build_calibration_table

from obs_sequence import CalibrationTable, InMemoryEventStore


@pytest.fixture
def store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def recorder(store: InMemoryEventStore) -> Recorder:
    return Recorder(store)


@pytest.fixture
def calibration_table() -> CalibrationTable:
    return build_calibration_table()
