"""Shared fixtures for engine tests.

Provides:
- clock: FrozenClock that only moves when a test advances it
- service: PipelineService wired with in-memory adapters and the clock
- pipeline: an active Lead -> Qualified -> Won pipeline
"""

from __future__ import annotations

import pytest
import pytest_asyncio

from src.stageflow.config import ExitCriteriaPolicy, Settings
from src.stageflow.service import PipelineService
from tests.factories import FrozenClock, lead_qualified_won, make_settings


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings(EXIT_CRITERIA_POLICY=ExitCriteriaPolicy.advisory)


@pytest.fixture
def service(settings: Settings, clock: FrozenClock) -> PipelineService:
    """PipelineService with in-memory repository and dispatcher."""
    return PipelineService(settings, clock=clock)


@pytest_asyncio.fixture
async def pipeline(service: PipelineService):
    """Active Lead -> Qualified -> Won pipeline for the default tenant."""
    return await service.create_pipeline("default", lead_qualified_won())
