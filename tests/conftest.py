"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for gce_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from disk_manager.config import Config  # noqa: E402
from gce_mock import MockComputeProvider, MockComputeState  # noqa: E402

TEST_ANNOTATION = "bio.terra/snapshot-policy"
TEST_PROJECT = "test-project"
TEST_ZONE = "us-central1-a"
TEST_REGION = "us-central1"


@pytest.fixture
def config() -> Config:
    return Config(
        target_annotation=TEST_ANNOTATION,
        google_project=TEST_PROJECT,
        zone=TEST_ZONE,
        region=TEST_REGION,
    )


@pytest.fixture
def state() -> MockComputeState:
    return MockComputeState(project=TEST_PROJECT)


@pytest.fixture
def provider(state: MockComputeState) -> MockComputeProvider:
    return MockComputeProvider(state)
