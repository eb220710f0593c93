import pytest

from listing_pipeline.core.exceptions import CircuitBreaker
from listing_pipeline.core.storage import StorageFactory
from listing_pipeline.pipeline.executor import EnhancementExecutor
from listing_pipeline.pipeline.orchestrator import PipelineConfig, PipelineOrchestrator
from listing_pipeline.pipeline.retry import RetryConfig
from tests.fakes import (
    FakeEnhancementProvider,
    InMemoryCheckpointStore,
    InMemoryMetadataStore,
    InMemoryStorage,
)


@pytest.fixture
def store() -> InMemoryMetadataStore:
    store = InMemoryMetadataStore()
    store.add_listing("listing-1", "owner-1")
    return store


@pytest.fixture
def checkpoints() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def provider() -> FakeEnhancementProvider:
    return FakeEnhancementProvider()


@pytest.fixture
def fast_config() -> PipelineConfig:
    """Production thresholds without backoff or throttle delays."""
    return PipelineConfig(retry_backoff_seconds=0.0, tool_call_delay_ms=0)


@pytest.fixture
def circuit() -> CircuitBreaker:
    return CircuitBreaker("test", failure_threshold=100)


@pytest.fixture
def make_orchestrator(store, checkpoints, storage, provider, fast_config):
    """Build an orchestrator around the in-memory fakes for a given vision provider."""
    def _make(vision, provider_override=None, config=None, validator=None) -> PipelineOrchestrator:
        executor = EnhancementExecutor(
            storage=storage,
            provider=provider_override or provider,
            retry_config=RetryConfig(attempts=3, backoff_seconds=0.0)
        )
        return PipelineOrchestrator(
            store=store,
            checkpoints=checkpoints,
            storage=storage,
            vision=vision,
            executor=executor,
            config=config or fast_config,
            validator=validator
        )
    return _make


@pytest.fixture(autouse=True)
def reset_storage_factory():
    yield
    StorageFactory.reset()
