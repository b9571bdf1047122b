import pytest

from ugc_pipeline import config
from ugc_pipeline.db import init_db
from ugc_pipeline.generation import GenerationState, GenerationStatus
from ugc_pipeline.jobs import JobStore
from ugc_pipeline.ledger import CreditLedger
from ugc_pipeline.orchestrator import PipelineOptions, PipelineOrchestrator
from ugc_pipeline.storage import AssetStoreError, StoredAsset

VIDEO_URL = "https://files.example/generated/video.mp4"


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.setattr(config.settings, "database_path", str(tmp_path / "videos.db"))
    monkeypatch.setattr(config.settings, "admin_api_token", "test-admin-token")
    monkeypatch.setattr(config.settings, "kie_api_key", "test-kie-key")

    init_db()
    yield


class FakeGeneration:
    """Scripted stand-in for the video service.

    ``polls`` is consumed one item per poll; the last item repeats. Items may
    be exceptions, which are raised.
    """

    def __init__(self) -> None:
        self.polls: list = [GenerationStatus(state=GenerationState.DONE, asset_url=VIDEO_URL)]
        self.submit_errors: list[Exception] = []
        self.fetch_error: Exception | None = None
        self.submitted: list[tuple[str, str | None]] = []
        self.polled: list[str] = []
        self.fetched: list[str] = []

    async def submit(self, prompt, reference_image_url=None):
        self.submitted.append((prompt, reference_image_url))
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        return f"task-{len(self.submitted)}"

    async def poll(self, external_job_id):
        self.polled.append(external_job_id)
        item = self.polls.pop(0) if len(self.polls) > 1 else self.polls[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def fetch(self, asset_url):
        self.fetched.append(asset_url)
        if self.fetch_error:
            raise self.fetch_error
        return b"\x00\x00\x00\x18ftypmp42"


class FakeAssets:
    def __init__(self) -> None:
        self.uploads: list[dict] = []
        self.fail = False

    def upload(self, data, folder, asset_id, thumbnail=None):
        if self.fail:
            raise AssetStoreError("Failed to upload video: bucket unreachable")
        key = f"{folder}/{asset_id}.mp4"
        self.uploads.append({"key": key, "size": len(data), "thumbnail": thumbnail})
        return StoredAsset(
            public_id=key,
            secure_url=f"https://assets.example/{key}",
            thumbnail_url=f"https://assets.example/{folder}/{asset_id}.jpg" if thumbnail else None,
        )

    def signed_url(self, public_id, ttl_seconds):
        return f"https://assets.example/{public_id}?expires={ttl_seconds}&sig=test"


@pytest.fixture
def generation() -> FakeGeneration:
    return FakeGeneration()


@pytest.fixture
def assets() -> FakeAssets:
    return FakeAssets()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def ledger() -> CreditLedger:
    return CreditLedger()


@pytest.fixture
def store() -> JobStore:
    return JobStore()


@pytest.fixture
def terminal_events() -> list:
    return []


@pytest.fixture
def orchestrator(store, ledger, generation, assets, sleeps, terminal_events) -> PipelineOrchestrator:
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return PipelineOrchestrator(
        store=store,
        ledger=ledger,
        generation=generation,
        assets=assets,
        options=PipelineOptions(),
        sleep=_sleep,
        on_terminal=terminal_events.append,
    )
