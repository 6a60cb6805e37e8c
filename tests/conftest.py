import pathlib
import sys
from typing import Callable, List, Optional

import pytest

# Ensure the repository root is on the path for direct test runs.
REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.append(str(REPO_ROOT))

from card_pipeline.utils.types import ImageBlob, UploadedFile
from card_pipeline.workflow.images import ImageSource
from card_pipeline.workflow.llm import LLMClient
from card_pipeline.workflow.quota import QuotaDecision, QuotaGate
from card_pipeline.workflow.retry import RetryExecutor


def _resolve(result):
    if isinstance(result, BaseException):
        raise result
    return result


class FakeLLMClient(LLMClient):
    """Scriptable LLM: handlers return a string (or an exception to raise)."""

    model = "fake-model"

    def __init__(
        self,
        generate: Optional[Callable[[str], object]] = None,
        generate_with_files: Optional[Callable[[str, list], object]] = None,
        upload: Optional[Callable[[ImageBlob], object]] = None,
        supports_files: bool = True,
    ) -> None:
        self._generate = generate or (lambda prompt: "[]")
        self._generate_with_files = generate_with_files or (lambda prompt, files: "[]")
        self._upload = upload
        self._supports_files = supports_files
        self.prompts: List[str] = []
        self.file_calls: List[tuple] = []
        self.uploads: List[ImageBlob] = []

    @property
    def supports_files(self) -> bool:
        return self._supports_files

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return _resolve(self._generate(prompt))

    async def upload_file(self, blob: ImageBlob) -> UploadedFile:
        self.uploads.append(blob)
        if self._upload is not None:
            return _resolve(self._upload(blob))
        return UploadedFile(uri=f"file-{blob.data.decode()}", mime_type=blob.mime_type)

    async def generate_with_files(self, prompt: str, files) -> str:
        self.file_calls.append((prompt, list(files)))
        return _resolve(self._generate_with_files(prompt, list(files)))


class FakeQuotaGate(QuotaGate):
    def __init__(self, can_process: bool = True, message: str = "ok", suggestion: Optional[str] = None) -> None:
        self.decision = QuotaDecision(can_process=can_process, message=message, suggestion=suggestion)
        self.validated: List[int] = []
        self.recorded: List[int] = []

    def validate(self, item_count: int) -> QuotaDecision:
        self.validated.append(item_count)
        return self.decision

    def record(self, request_count: int = 1) -> None:
        self.recorded.append(request_count)


class FakeImageSource(ImageSource):
    """Returns ``page-<n>`` bytes for every page; pages in ``failing`` raise."""

    def __init__(self, failing=()) -> None:
        self.failing = set(failing)

    async def load(self, ref):
        if ref.image is not None:
            return ref.image
        if ref.page_number in self.failing:
            raise RuntimeError(f"cannot fetch page {ref.page_number}")
        return ImageBlob(data=f"page-{ref.page_number}".encode(), mime_type="image/png")


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeAsyncRedis:
    def __init__(self) -> None:
        self.hashes: dict = {}
        self.published: List[tuple] = []

    async def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update(mapping)

    async def publish(self, channel, message):
        self.published.append((channel, message))

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def executor(sleeper):
    return RetryExecutor(max_retries=3, base_delay_ms=1000, sleep=sleeper)


@pytest.fixture
def quota_gate():
    return FakeQuotaGate()


@pytest.fixture
def image_source():
    return FakeImageSource()
