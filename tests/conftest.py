"""Root test configuration."""

import logging

import pytest
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from afu9.db.models import Base
from afu9.lawbook.repository import LawbookRepository
from afu9.lawbook.schema import parse_lawbook


def pytest_configure(config):
    """Configure structlog for tests to suppress debug/info output."""
    logging.basicConfig(level=logging.WARNING, force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


@pytest.fixture
async def session():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with factory() as session:
        yield session

    await engine.dispose()


def lawbook_document(**overrides):
    document = {
        "lawbookId": "AFU9-LAWBOOK",
        "lawbookVersion": "2025-01-01.1",
        "automationPolicy": {
            "actions": [
                {
                    "actionType": "ecs_force_new_deployment",
                    "allowedEnvs": ["staging", "production"],
                    "cooldownSeconds": 0,
                    "idempotencyKeyTemplate": ["cluster", "service", "env"],
                }
            ]
        },
        "remediation": {
            "enabled": True,
            "allowedPlaybooks": ["service-health-reset", "rerun-post-deploy-verification"],
            "allowedActions": [
                "SNAPSHOT_SERVICE_STATE",
                "FORCE_NEW_DEPLOYMENT",
                "POLL_SERVICE_HEALTH",
                "RUN_VERIFICATION",
                "UPDATE_INCIDENT_STATUS",
            ],
        },
    }
    document.update(overrides)
    return document


@pytest.fixture
def make_lawbook():
    def factory(**overrides):
        return parse_lawbook(lawbook_document(**overrides))

    return factory


@pytest.fixture
def activate_lawbook(session):
    async def activate(lawbook):
        repo = LawbookRepository(session)
        record, _ = await repo.create_version(lawbook)
        await repo.activate(record.id)
        return record

    return activate


@pytest.fixture
def lawbook_doc():
    return lawbook_document
