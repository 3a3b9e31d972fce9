"""Fixtures shared by the step definitions."""
import pytest

from sbus_source import EnvironmentConfigParser
from tests.resources.fakes import QUEUE_RESOURCE_ID


@pytest.fixture
def environ() -> dict:
    """A minimal, valid configuration for a queue."""
    return {
        'SERVICEBUS_ENTITY_RESOURCE_ID': QUEUE_RESOURCE_ID,
        'K_SINK': 'http://sink.example.com/'
    }


@pytest.fixture
def config(environ: dict) -> EnvironmentConfigParser:
    return EnvironmentConfigParser(environ)


@pytest.fixture
def context() -> dict:
    """Results passed from When steps to Then steps."""
    return {}
