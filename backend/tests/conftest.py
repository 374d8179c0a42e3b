import sys
from pathlib import Path

# Ensure repository root is on sys.path so 'import backend' works
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Force pytest-anyio to use asyncio backend (avoid requiring 'trio')
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.app.config import ModerationConfig
from backend.app.db.base import init_db
from backend.app.orchestration.pipeline import ModerationPipeline
from backend.app.policies.escalation import EscalationPolicy
from backend.app.services.history_store import SafetyHistoryStore
from backend.app.services.safety import SafetyService
from backend.tests.fakes import FakeClassifier, FakeClock


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def moderation_config():
    return ModerationConfig(
        rule_based_categories=["profanity", "drug", "weapon", "spam", "violence"],
        ml_models=["general"],
        ml_confidence_threshold=0.7,
        classifier_timeout_s=1.0,
    )


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return SafetyHistoryStore(session_factory)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rule_classifier():
    return FakeClassifier("rule-based")


@pytest.fixture
def ml_classifier():
    return FakeClassifier("ml-based")


@pytest.fixture
def service(store, rule_classifier, ml_classifier, moderation_config, clock):
    pipeline = ModerationPipeline(rule_classifier=rule_classifier, ml_classifier=ml_classifier)
    return SafetyService(
        store=store,
        pipeline=pipeline,
        config=moderation_config,
        policy=EscalationPolicy(),
        clock=clock,
    )
