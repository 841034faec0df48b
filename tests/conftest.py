"""Shared fakes: providers, assets, shot downloads and a manual clock."""

import os

import pytest
from PIL import Image

from stefna.config import CreditPolicy, PollingPolicy
from stefna.errors import UploadFailed
from stefna.metrics import Metrics
from stefna.pipeline.compositor import Compositor
from stefna.pipeline.credits import InMemoryCreditLedger
from stefna.pipeline.job_store import InMemoryJobStore
from stefna.pipeline.models import JobKind
from stefna.pipeline.orchestrator import GenerationService
from stefna.pipeline.storage import AssetHandle, output_key
from stefna.providers.base import PollResult, PollState, ProviderChain, ProviderHandle


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeStrategy:
    """
    Scripted provider tier.

    Sync tiers hand back a result URL per call; async tiers hand back a job
    id and replay `polls` (the last entry repeats).
    """

    def __init__(self, name, asynchronous=False, polls=None, fail_on=(), error=None):
        self.name = name
        self.params = {"strength": 0.5, "guidance": 7.0}
        self.asynchronous = asynchronous
        self.polls = list(polls or [])
        self.fail_on = set(fail_on)
        self.error = error
        self.calls = 0
        self.poll_calls = 0
        self.requests = []

    def generate(self, request):
        self.calls += 1
        self.requests.append(request)
        if self.error is not None or self.calls in self.fail_on:
            raise self.error or RuntimeError(f"{self.name} call {self.calls} rejected")
        if self.asynchronous:
            return ProviderHandle(strategy=self.name, provider_job_id=f"{self.name}-job-{self.calls}")
        return ProviderHandle(strategy=self.name, result_url=f"https://cdn.test/{self.name}/{self.calls}.png")

    def poll(self, provider_job_id):
        self.poll_calls += 1
        item = self.polls.pop(0) if len(self.polls) > 1 else self.polls[0]
        if isinstance(item, Exception):
            raise item
        return item


def running():
    return PollResult(PollState.RUNNING)


def succeeded(url="https://cdn.test/async/result.mp4"):
    return PollResult(PollState.SUCCEEDED, result_url=url)


class FakeAssets:
    def __init__(self, fail=False):
        self.fail = fail
        self.uploads = []

    def upload(self, source, meta):
        self.uploads.append({"source": source, "meta": meta, "exists": os.path.exists(source)
                             if not source.startswith("http") else True})
        if self.fail:
            raise UploadFailed(f"Upload failed for job {meta.job_id}: bucket unavailable")
        ext = os.path.splitext(source)[1] or ".png"
        key = output_key(meta, ext)
        return AssetHandle(public_handle=key, public_url=f"https://assets.test/{key}")


class FakeDownloads:
    """Writes a small still wherever a shot is downloaded to."""

    def __init__(self):
        self.paths = []

    def __call__(self, url, path):
        Image.new("RGB", (16, 16), (200, 120, 40)).save(path, "PNG")
        self.paths.append(path)
        return path


def write_output(stream):
    """Stand-in for running ffmpeg: the output file is the last argument."""
    with open(stream.get_args()[-1], "wb") as f:
        f.write(b"\x00\x00\x00\x18ftypmp42")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def ledger():
    return InMemoryCreditLedger(CreditPolicy(starter_grant=30, generation_cost=2, daily_cap=30))


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return str(path)


@pytest.fixture
def make_service(store, ledger, clock, work_dir):
    def _make(strategies=None, assets=None, chains=None, polling=None, credits=None, runner=write_output, **kw):
        strategies = strategies if strategies is not None else [FakeStrategy("primary")]
        if chains is None:
            chains = {kind: ProviderChain(strategies) for kind in JobKind}
        return GenerationService(
            kw.pop("store", store),
            kw.pop("ledger", ledger),
            chains,
            assets or FakeAssets(),
            Compositor(runner=runner, temp_root=work_dir),
            download=kw.pop("download", FakeDownloads()),
            credits=credits or CreditPolicy(starter_grant=30, generation_cost=2, daily_cap=30),
            polling=polling or PollingPolicy(
                interval_seconds=3, image_ceiling_seconds=90, shot_ceiling_seconds=90,
                video_ceiling_seconds=420, stale_after_seconds=600,
            ),
            metrics=kw.pop("metrics", Metrics()),
            work_dir=work_dir,
            clock=clock,
            sleep=clock.sleep,
            **kw,
        )

    return _make
