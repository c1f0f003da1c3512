"""Pytest configuration and fixtures."""

import asyncio
import uuid

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from autolister.models import Base, Product
from autolister.schemas.generation import GeneratedListing
from autolister.services.ai.base import ListingGenerator
from autolister.services.ai.service import GenerationService
from autolister.services.collaborators import ImageRef
from autolister.services.events import EventBus
from autolister.services.generation.field_merge import FieldMergeEngine
from autolister.services.generation.orchestrator import EnrichmentOrchestrator
from autolister.services.generation.undo import FieldUndoManager


# 테스트용 메모리 SQLite 엔진
TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,  # 세션 간 같은 메모리 DB 공유
    echo=False,
)

TestSessionLocal = sessionmaker(
    bind=test_engine,
    autoflush=False,
    expire_on_commit=False,
)


@pytest.fixture(scope="function")
def test_session() -> Session:
    """
    테스트용 데이터베이스 세션 fixture.
    각 테스트마다 테이블을 새로 만들고 종료 시 삭제.
    """
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def session_factory(tmp_path):
    """
    호출마다 세션을 여는 코드(ProductStore 등)용 팩토리.
    스레드에서 실행되므로 연결을 공유하지 않는 파일 SQLite 를 사용합니다.
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'store.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_session: Session):
    """test_session alias."""
    yield test_session


# ----------------------------------------------------------------------
# In-memory collaborators
# ----------------------------------------------------------------------


class InMemoryImageStore:
    def __init__(self):
        self.images = {}
        self.calls = []
        self.errors = {}

    def add(self, item_id, *urls):
        self.images[item_id] = [
            ImageRef(id=uuid.uuid4(), url=url, position=i) for i, url in enumerate(urls)
        ]

    async def fetch_images(self, item_id):
        self.calls.append(item_id)
        if item_id in self.errors:
            raise self.errors[item_id]
        return list(self.images.get(item_id, []))


class InMemoryPersistence:
    def __init__(self):
        self.updates = []
        self.reject_ids = set()
        self.raise_ids = {}

    async def update(self, item_id, fields):
        if item_id in self.raise_ids:
            raise self.raise_ids[item_id]
        self.updates.append((item_id, dict(fields)))
        return item_id not in self.reject_ids

    def updates_for(self, item_id):
        return [fields for pid, fields in self.updates if pid == item_id]


class ScriptedGenerator(ListingGenerator):
    """
    item_id 별로 응답/예외를 지정할 수 있는 생성기.
    동시 실행 수를 기록합니다.
    """

    def __init__(self, payload=None, delay=0.01):
        self.payload = payload or {"title": "Vintage Nike Windbreaker", "description_style_a": "A great jacket"}
        self.delay = delay
        self.errors = {}
        self.payloads = {}
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate(self, request):
        self.calls.append(request.item_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if request.item_id in self.errors:
                raise self.errors[request.item_id]
            return GeneratedListing.model_validate(self.payloads.get(request.item_id, self.payload))
        finally:
            self.in_flight -= 1


async def no_sleep(_seconds):
    return None


@pytest.fixture
def image_store():
    return InMemoryImageStore()


@pytest.fixture
def persistence():
    return InMemoryPersistence()


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def make_product(image_store):
    """상품 생성 헬퍼. 기본으로 이미지 1장을 함께 등록합니다."""

    def _make(images=1, **fields):
        fields.setdefault("status", "new")
        fields.setdefault("currency", "GBP")
        product = Product(id=uuid.uuid4(), **fields)
        if images:
            image_store.add(product.id, *[f"https://cdn.example.com/{product.id}/{i}.jpg" for i in range(images)])
        return product

    return _make


@pytest.fixture
def orchestrator(generator, persistence, image_store, event_bus):
    return EnrichmentOrchestrator(
        generation=GenerationService(generator=generator, max_image_urls=9),
        merger=FieldMergeEngine(),
        persistence=persistence,
        image_store=image_store,
        event_bus=event_bus,
        undo=FieldUndoManager(persistence, ttl_seconds=300),
        batch_size=20,
        concurrency_width=3,
        chunk_delay=0.5,
        sleep=no_sleep,
    )


# 테스트 마커 정의
def pytest_configure(config):
    """Pytest 마커 등록."""
    config.addinivalue_line("markers", "unit: 단위 테스트 (DB 불필요)")
    config.addinivalue_line("markers", "integration: 통합 테스트 (실제 DB/API 필요)")
    config.addinivalue_line("markers", "slow: 느린 테스트 (> 1분)")
