"""Pytest fixtures for content pipeline tests."""

import asyncio
import copy
import random
from types import SimpleNamespace
from typing import Any, Callable, Dict, Iterable, List, Optional
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from src.models.job import utcnow
from src.models.pipeline import (
    TextOverlayConfig,
    TextOverlayStep,
    VideoGenConfig,
    VideoGenerationStep,
)
from src.services.database import DatabaseService
from src.services.executors import StepContext, StepOutcome
from src.services.job_processor import JobProcessor
from src.services.orchestrator import JobOrchestrator
from src.services.pipeline_runner import PipelineRunner
from src.services.posting import PostingService
from src.services.signed_url_cache import SignedUrlCache
from src.services.storage import StorageService
from src.services.task_queue import TaskQueue
from src.utils.errors import GenerationError, SourceVideoError

SUPABASE_URL = "https://test-project.supabase.co"
BUCKET = "media"
PUBLIC_PREFIX = f"{SUPABASE_URL}/storage/v1/object/public/{BUCKET}/"
TIKTOK_URL = "https://tiktok.com/@x/video/123"


# ==================== Mock Supabase Client ====================


class MockSupabaseResponse:
    """Mock response from Supabase operations."""

    def __init__(self, data: Any = None) -> None:
        self.data = data if data is not None else []


class MockSupabaseQuery:
    """Chainable query against one in-memory table."""

    def __init__(self, client: "MockSupabaseClient", table: str) -> None:
        self.client = client
        self.table = table
        self._op = "select"
        self._payload: Optional[Dict[str, Any]] = None
        self._filters: List[Callable[[Dict[str, Any]], bool]] = []
        self._order: Optional[tuple] = None
        self._limit: Optional[int] = None

    def select(self, columns: str = "*") -> "MockSupabaseQuery":
        self._op = "select"
        return self

    def insert(self, data: Dict[str, Any]) -> "MockSupabaseQuery":
        self._op = "insert"
        self._payload = data
        return self

    def update(self, data: Dict[str, Any]) -> "MockSupabaseQuery":
        self._op = "update"
        self._payload = data
        return self

    def delete(self) -> "MockSupabaseQuery":
        self._op = "delete"
        return self

    def eq(self, field: str, value: Any) -> "MockSupabaseQuery":
        self._filters.append(lambda row: row.get(field) == value)
        return self

    def in_(self, field: str, values: Iterable[Any]) -> "MockSupabaseQuery":
        allowed = list(values)
        self._filters.append(lambda row: row.get(field) in allowed)
        return self

    def lt(self, field: str, value: Any) -> "MockSupabaseQuery":
        self._filters.append(lambda row: row.get(field) is not None and row.get(field) < value)
        return self

    def order(self, column: str, desc: bool = False) -> "MockSupabaseQuery":
        self._order = (column, desc)
        return self

    def limit(self, count: int) -> "MockSupabaseQuery":
        self._limit = count
        return self

    def execute(self) -> MockSupabaseResponse:
        rows = self.client.tables.setdefault(self.table, {})

        if self._op == "insert":
            if self.table in self.client.failing_tables:
                raise RuntimeError(f"insert into {self.table} rejected")
            row = copy.deepcopy(self._payload)
            row.setdefault("id", str(uuid4()))
            rows[row["id"]] = row
            return MockSupabaseResponse([copy.deepcopy(row)])

        matched = [row for row in rows.values() if all(f(row) for f in self._filters)]

        if self._op == "update":
            for row in matched:
                row.update(copy.deepcopy(self._payload))
                self.client.updates.append((self.table, row["id"], copy.deepcopy(self._payload)))
            return MockSupabaseResponse([copy.deepcopy(row) for row in matched])

        if self._op == "delete":
            for row in matched:
                del rows[row["id"]]
            return MockSupabaseResponse(matched)

        if self._order:
            column, desc = self._order
            matched.sort(key=lambda row: str(row.get(column) or ""), reverse=desc)
        if self._limit is not None:
            matched = matched[: self._limit]
        return MockSupabaseResponse([copy.deepcopy(row) for row in matched])


class MockRpcCall:
    """Mock of ``increment_batch_counters`` (one atomic UPDATE ... RETURNING)."""

    def __init__(self, client: "MockSupabaseClient", name: str, params: Dict[str, Any]) -> None:
        self.client = client
        self.name = name
        self.params = params

    def execute(self) -> MockSupabaseResponse:
        if self.name != "increment_batch_counters":
            raise RuntimeError(f"Unknown function {self.name}")
        self.client.rpc_calls.append(dict(self.params))
        row = self.client.tables.get(self.params["p_table"], {}).get(self.params["p_batch_id"])
        if row is None:
            return MockSupabaseResponse([])
        row["completed_jobs"] += self.params["p_completed"]
        row["failed_jobs"] += self.params["p_failed"]
        row["total_jobs"] += self.params["p_total"]
        return MockSupabaseResponse([copy.deepcopy(row)])


class MockStorageBucket:
    """Mock Supabase Storage bucket."""

    def __init__(self, storage: "MockStorage", name: str) -> None:
        self.storage = storage
        self.name = name

    def upload(self, path: str, file: bytes, file_options: Optional[dict] = None) -> dict:
        self.storage.objects[path] = file
        return {"path": path}

    def get_public_url(self, path: str) -> str:
        return f"{SUPABASE_URL}/storage/v1/object/public/{self.name}/{path}?"

    def create_signed_url(self, path: str, expires_in: int) -> dict:
        self.storage.sign_calls.append(path)
        if self.storage.fail_signing:
            raise RuntimeError("signing unavailable")
        token = len(self.storage.sign_calls)
        return {"signedURL": f"{SUPABASE_URL}/storage/v1/object/sign/{self.name}/{path}?token=t{token}"}

    def download(self, path: str) -> bytes:
        if path not in self.storage.objects:
            raise RuntimeError(f"Object not found: {path}")
        return self.storage.objects[path]


class MockStorage:
    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.sign_calls: List[str] = []
        self.fail_signing = False

    def from_(self, bucket: str) -> MockStorageBucket:
        return MockStorageBucket(self, bucket)


class MockSupabaseClient:
    """Mock Supabase client for testing."""

    def __init__(self) -> None:
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.updates: List[tuple] = []
        self.rpc_calls: List[Dict[str, Any]] = []
        self.failing_tables: set = set()
        self.storage = MockStorage()

    def table(self, name: str) -> MockSupabaseQuery:
        return MockSupabaseQuery(self, name)

    def rpc(self, name: str, params: Dict[str, Any]) -> MockRpcCall:
        return MockRpcCall(self, name, params)

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return list(self.tables.get(table, {}).values())

    def status_history(self, table: str, row_id: str) -> List[str]:
        """Every status written to a row, in order."""
        return [
            fields["status"]
            for name, rid, fields in self.updates
            if name == table and rid == row_id and "status" in fields
        ]


def seed_persona(
    supabase: MockSupabaseClient, model_id: str, name: str, image_count: int = 2
) -> List[str]:
    """Insert a persona with ``image_count`` images; returns their URLs."""
    supabase.tables.setdefault("models", {})[model_id] = {
        "id": model_id,
        "name": name,
        "created_at": utcnow().isoformat(),
    }
    urls = []
    images = supabase.tables.setdefault("model_images", {})
    for index in range(image_count):
        image_id = f"{model_id}-img-{index}"
        url = f"{PUBLIC_PREFIX}models/{model_id}/{index}.png"
        images[image_id] = {
            "id": image_id,
            "model_id": model_id,
            "gcs_url": url,
            "filename": f"{index}.png",
            "is_primary": index == 0,
            "created_at": f"2026-01-01T00:00:0{index}+00:00",
        }
        urls.append(url)
    return urls


# ==================== Fake collaborators ====================


async def _ignore_progress(label: str) -> None:
    return None


class FakeGenerator:
    """Stands in for VideoGenerator; fails for chosen sources or images."""

    def __init__(self, fail_sources: Iterable[str] = (), fail_images: Iterable[str] = ()) -> None:
        self.fail_sources = set(fail_sources)
        self.fail_images = set(fail_images)
        self.prepare_calls: List[str] = []
        self.generate_calls: List[VideoGenConfig] = []

    async def prepare_source(self, source_url: str, max_seconds: int, on_progress=_ignore_progress) -> str:
        self.prepare_calls.append(source_url)
        await on_progress("Preparing video...")
        if source_url in self.fail_sources:
            raise SourceVideoError(f"Failed to get TikTok download URL for {source_url}")
        return f"{SUPABASE_URL}/storage/v1/object/sign/{BUCKET}/sources/{uuid4().hex}.mp4?token=x"

    async def generate(
        self, config: VideoGenConfig, context: StepContext, video_url=None, on_progress=_ignore_progress
    ) -> str:
        self.generate_calls.append(config)
        await on_progress("AI is generating your video...")
        await asyncio.sleep(0)
        if config.image_url in self.fail_images:
            raise GenerationError("fal.ai error 500: upstream exploded")
        return f"{PUBLIC_PREFIX}outputs/{context.job_id}-{len(self.generate_calls)}.mp4"


class ScriptedExecutor:
    """Stands in for StepExecutor; records calls and fails or hangs on chosen step or job ids."""

    def __init__(self, fail_on: Iterable[str] = (), hang_on: Iterable[str] = ()) -> None:
        self.fail_on = set(fail_on)
        self.hang_on = set(hang_on)
        self.fail_jobs: set = set()
        self.calls: List[tuple] = []

    async def execute(self, step, context: StepContext) -> StepOutcome:
        self.calls.append((step.id, context.input_url))
        await context.on_progress("working")
        if step.id in self.hang_on:
            await asyncio.sleep(3600)
        if step.id in self.fail_on or context.job_id in self.fail_jobs:
            raise GenerationError(f"{step.id} exploded")
        return StepOutcome(output_url=f"{PUBLIC_PREFIX}edits/{context.job_id}-{step.id}.mp4")


def overlay_step(step_id: str, enabled: bool = True) -> TextOverlayStep:
    return TextOverlayStep(id=step_id, enabled=enabled, config=TextOverlayConfig(text=f"caption {step_id}"))


def generation_step(step_id: str = "gen", mode: str = "motion-control") -> VideoGenerationStep:
    return VideoGenerationStep(
        id=step_id,
        config=VideoGenConfig(mode=mode, image_url=f"{PUBLIC_PREFIX}models/default.png"),
    )


def build_harness(
    supabase: Optional[MockSupabaseClient] = None,
    generator: Optional[FakeGenerator] = None,
    executor: Optional[ScriptedExecutor] = None,
    step_timeout: Optional[float] = None,
) -> SimpleNamespace:
    """Wire real database/storage/cache/queue/runner around fake external capabilities."""
    supabase = supabase or MockSupabaseClient()
    generator = generator or FakeGenerator()
    executor = executor or ScriptedExecutor()
    db = DatabaseService(supabase)
    storage = StorageService(supabase, BUCKET, SUPABASE_URL)
    cache = SignedUrlCache(storage.sign, ttl_seconds=3600)
    queue = TaskQueue(max_concurrency=4)
    posting = MagicMock(spec=PostingService)
    posting.create_post = AsyncMock(return_value={"_id": "post-1"})
    runner = PipelineRunner(db, executor, step_timeout=step_timeout)
    processor = JobProcessor(db, generator)
    orchestrator = JobOrchestrator(
        db=db,
        storage=storage,
        url_cache=cache,
        runner=runner,
        processor=processor,
        posting=posting,
        task_queue=queue,
        rng=random.Random(7),
    )
    return SimpleNamespace(
        supabase=supabase,
        db=db,
        storage=storage,
        cache=cache,
        queue=queue,
        posting=posting,
        runner=runner,
        processor=processor,
        orchestrator=orchestrator,
        generator=generator,
        executor=executor,
    )


# ==================== Fixtures ====================


@pytest.fixture
def supabase() -> MockSupabaseClient:
    return MockSupabaseClient()


@pytest.fixture
def db(supabase: MockSupabaseClient) -> DatabaseService:
    return DatabaseService(supabase)


@pytest.fixture
def storage(supabase: MockSupabaseClient) -> StorageService:
    return StorageService(supabase, BUCKET, SUPABASE_URL)


@pytest.fixture
def harness(supabase: MockSupabaseClient) -> SimpleNamespace:
    return build_harness(supabase)
