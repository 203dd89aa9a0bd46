import os
import tempfile

# Configure the application for tests before it is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["GEMINI_API_KEY"] = ""
os.environ["LOG_FILE"] = os.path.join(tempfile.gettempdir(), "renewal_tracker_tests.log")

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from renewal_tracker import models  # noqa: F401  register mappers
from renewal_tracker.config import PipelineConfig
from renewal_tracker.database import Base
from renewal_tracker.models.analysis import ExtractionMethod, ExtractionResult, SemanticAnalysis
from renewal_tracker.services.pipeline import ContractPipeline

FIXED_NOW = datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)

SAMPLE_CONTRACT_FR = """CONTRAT D'ABONNEMENT

Article 1 - Durée
Le présent contrat prend effet le 01/01/2025 et se termine le 31/12/2025.
Il est renouvelé par tacite reconduction, à défaut de dénonciation par l'une des parties.

Article 2 - Prix
Le montant mensuel : 50,00 € TTC.
Soit un montant annuel : 600,00 €.

Article 3 - Résiliation
Chaque partie peut résilier le contrat par lettre recommandée avec accusé de réception,
moyennant un préavis de 2 mois avant l’échéance.
"""

SAMPLE_CONTRACT_EN = """SERVICE AGREEMENT

Start Date: 2024-06-01
End Date: 2025-05-31
This agreement renews automatically for successive periods of one year unless terminated by either party.
Monthly fee: $120.00
Cancellation notice days: 30
"""


class FakeClock:
    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeExtractor:
    def __init__(self, text: str = SAMPLE_CONTRACT_FR, confidence: float = 85.0, error: Exception = None,
                 delay: float = 0.0):
        self.text = text
        self.confidence = confidence
        self.error = error
        self.delay = delay
        self.calls = []

    def extract(self, file_path: str) -> ExtractionResult:
        self.calls.append(file_path)
        if self.delay:
            import time
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return ExtractionResult(
            text=self.text,
            confidence=self.confidence,
            method=ExtractionMethod.NATIVE_TEXT,
            metadata={"file_name": os.path.basename(file_path)},
        )


class FakeEngine:
    """Returns (or raises) the queued results in order; the last one repeats."""

    def __init__(self, *results, configured: bool = True):
        self.results = list(results) or [SemanticAnalysis(confidence_score=0.9)]
        self.configured = configured
        self.calls = 0

    def analyze(self, text: str) -> SemanticAnalysis:
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def config():
    return PipelineConfig(ai_retry_base_delay=0.0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_pipeline(session_factory, config, clock, tmp_path):
    def _make(extractor=None, semantic_engine=None, pipeline_config=None):
        return ContractPipeline(
            extractor=extractor or FakeExtractor(),
            engine=semantic_engine or FakeEngine(),
            session_factory=session_factory,
            config=pipeline_config or config,
            clock=clock,
            contracts_dir=tmp_path,
        )
    return _make
