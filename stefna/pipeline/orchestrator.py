"""
GenerationService: the job state machine.

  submit:  validate → preset → run_id lookup → reserve credits → create (queued)
  process: queued → processing → generate (+ poll) → upload → completed
                                       └──── any failure ───→ failed + refund

Story jobs generate one still per shot, compose them into a video in a
scoped workspace, then upload the video.  The workspace is removed whether
the job succeeds or fails.

Failures after a job exists are recorded on the job, never raised to
callers of `projection`.
"""

import logging
import os
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from ..config import CreditPolicy, PollingPolicy
from ..errors import (
    DuplicateRunError,
    ErrorCode,
    JobNotFound,
    ProviderError,
    StefnaError,
    StoreUnavailable,
    ValidationFailed,
    truncate_error,
)
from ..metrics import Metrics
from ..presets import get_preset
from ..providers.base import GenerationRequest, PollState, ProviderChain, ProviderHandle
from .compositor import Compositor
from .models import (
    KIND_ACTIONS,
    Job,
    JobKind,
    JobProjection,
    JobStatus,
    SubmitRequest,
    can_transition,
    utcnow,
)
from .poller import PollTask
from .storage import AssetMetadata

logger = logging.getLogger(__name__)

# Story progress: shots fill 0..80, compositing + upload the rest.
STORY_SHOTS_PROGRESS = 80
# Single / v2v progress while waiting on the provider never passes this.
POLL_PROGRESS_CAP = 90


@dataclass
class SubmitOutcome:
    job: Job
    duplicate: bool = False


class GenerationService:
    """
    Production pipeline orchestrator.

    Usage:
        service = GenerationService(store, ledger, chains, assets, compositor, download)

        outcome = service.submit(request)          # reserve + create, returns fast
        if not outcome.duplicate:
            service.process(outcome.job.id)        # on a worker thread
        service.projection(outcome.job.id)
    """

    def __init__(
        self,
        store,
        ledger,
        chains: dict,
        assets,
        compositor: Compositor,
        download: Callable[[str, str], str],
        credits: Optional[CreditPolicy] = None,
        polling: Optional[PollingPolicy] = None,
        metrics: Optional[Metrics] = None,
        work_dir: Optional[str] = None,
        now: Callable[[], datetime] = utcnow,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self._store = store
        self._ledger = ledger
        self._chains = chains
        self._assets = assets
        self._compositor = compositor
        self._download = download
        self._credits = credits or CreditPolicy()
        self._polling = polling or PollingPolicy()
        self._metrics = metrics or Metrics()
        self._work_dir = work_dir or None
        self._now = now
        self._clock = clock
        self._sleep = sleep

    # ── Submission ───────────────────────────────────────────────────────

    def _resolve(self, request: SubmitRequest) -> tuple[str, str, SubmitRequest]:
        """Expand the preset into prompt / negative / strength."""
        prompt = request.prompt.strip()
        negative = request.params.negative
        if request.preset_key:
            preset = get_preset(request.preset_key)
            if preset is None:
                raise ValidationFailed(f"Unknown preset: {request.preset_key}")
            prompt = f"{prompt}, {preset.prompt}" if prompt else preset.prompt
            negative = ", ".join(n for n in (negative, preset.negative) if n)
            if preset.strength is not None and "strength" not in request.params.model_fields_set:
                request = request.model_copy(
                    update={"params": request.params.model_copy(update={"strength": preset.strength})}
                )
        if not prompt:
            raise ValidationFailed("Prompt is empty after preset resolution")
        if request.kind == JobKind.STORY_MULTI_SHOT and not request.shots:
            raise ValidationFailed("Story jobs need at least one shot")
        if request.kind not in self._chains:
            raise ValidationFailed(f"No providers configured for {request.kind.value} jobs")
        return prompt, negative, request

    def _is_stale(self, job: Job) -> bool:
        age = (self._now() - job.updated_at).total_seconds()
        return age > self._polling.stale_after_seconds

    def submit(self, request: SubmitRequest) -> SubmitOutcome:
        prompt, negative, request = self._resolve(request)

        existing = self._store.get_by_run_id(request.run_id)
        if existing is not None:
            if existing.user_id != request.user_id:
                raise ValidationFailed(f"run_id {request.run_id} belongs to another user")
            if existing.status == JobStatus.COMPLETED:
                logger.info(f"[{existing.id}] run {request.run_id} already completed, replaying")
                self._metrics.inc_counter("jobs.duplicate")
                return SubmitOutcome(existing, duplicate=True)
            if not existing.status.is_terminal and not self._is_stale(existing):
                logger.info(f"[{existing.id}] run {request.run_id} still {existing.status.value}, replaying")
                self._metrics.inc_counter("jobs.duplicate")
                return SubmitOutcome(existing, duplicate=True)
            logger.info(
                f"[{existing.id}] superseding {existing.status.value} record for run {request.run_id}"
            )
            self._store.delete(existing.id)

        cost = self._credits.generation_cost
        reservation = self._ledger.reserve(
            request.user_id, request.run_id, KIND_ACTIONS[request.kind], cost
        )
        logger.info(
            f"Reserved {cost} credits for run {request.run_id} "
            f"(balance={reservation.balance}, replayed={reservation.replayed})"
        )

        job = Job(
            run_id=request.run_id,
            user_id=request.user_id,
            kind=request.kind,
            source_url=request.source_url,
            prompt=prompt,
            negative_prompt=negative,
            preset_key=request.preset_key,
            params=request.params,
            shots=request.shots,
            width=request.width,
            height=request.height,
            fps=request.fps,
            cost=cost,
        )
        try:
            created = self._store.create(job)
        except DuplicateRunError:
            winner = self._store.get_by_run_id(request.run_id)
            if winner is None:
                raise StoreUnavailable(f"run {request.run_id} collided but no record is readable")
            logger.info(f"[{winner.id}] concurrent submit for run {request.run_id} lost the race")
            self._metrics.inc_counter("jobs.duplicate")
            return SubmitOutcome(winner, duplicate=True)
        except StoreUnavailable:
            self._ledger.refund(request.run_id, request.user_id, reason="job create failed")
            raise

        logger.info(f"[{created.id}] queued {created.kind.value} job for run {created.run_id}")
        self._metrics.inc_counter("jobs.submitted")
        return SubmitOutcome(created)

    # ── Processing ───────────────────────────────────────────────────────

    def _transition(self, job: Job, target: JobStatus, **fields) -> Job:
        if not can_transition(job.status, target):
            raise StefnaError(
                f"Illegal transition {job.status.value} → {target.value} for job {job.id}"
            )
        updated = self._store.update(job.id, status=target, **fields)
        logger.info(f"[{job.id}] {job.status.value} → {target.value} ({updated.progress}%)")
        return updated

    def _advance(self, job: Job, progress: int) -> Job:
        """Move progress forward; never backwards."""
        progress = min(100, progress)
        if progress <= job.progress:
            return job
        return self._store.update(job.id, progress=progress)

    def _request_for(self, job: Job, prompt: Optional[str] = None) -> GenerationRequest:
        params = job.params
        return GenerationRequest(
            prompt=prompt or job.prompt,
            source_url=job.source_url,
            negative_prompt=job.negative_prompt,
            strength=params.strength,
            steps=params.steps,
            guidance=params.guidance,
            seed=params.seed,
            width=job.width,
            height=job.height,
            extra=dict(params.extra),
        )

    def _await_result(
        self,
        chain: ProviderChain,
        handle: ProviderHandle,
        ceiling: float,
        label: str,
        on_tick: Optional[Callable[[float], None]] = None,
    ) -> str:
        if handle.is_final:
            self._metrics.inc_counter(f"provider.{handle.strategy}.ok")
            return handle.result_url

        task = PollTask(
            lambda: chain.poll(handle),
            interval=self._polling.interval_seconds,
            ceiling=ceiling,
            label=label,
            on_tick=on_tick,
            clock=self._clock,
            sleep=self._sleep,
        )
        result = task.run()
        if result.state == PollState.FAILED or not result.result_url:
            self._metrics.inc_counter(f"provider.{handle.strategy}.fail")
            raise ProviderError(
                truncate_error(result.error or f"{handle.strategy} finished without an asset")
            )
        self._metrics.inc_counter(f"provider.{handle.strategy}.ok")
        return result.result_url

    def _generate_single(self, job: Job) -> str:
        chain = self._chains[job.kind]
        ceiling = (
            self._polling.video_ceiling_seconds
            if job.kind == JobKind.VIDEO_TO_VIDEO
            else self._polling.image_ceiling_seconds
        )

        handle = chain.generate(self._request_for(job))
        job = self._store.update(
            job.id,
            provider=handle.strategy,
            provider_params=handle.params,
            provider_job_id=handle.provider_job_id,
        )
        logger.info(f"[{job.id}] dispatched to {handle.strategy} (provider job {handle.provider_job_id})")

        def on_tick(elapsed: float) -> None:
            nonlocal job
            target = 1 + int(elapsed / ceiling * (POLL_PROGRESS_CAP - 1))
            job = self._advance(job, min(target, POLL_PROGRESS_CAP))

        result_url = self._await_result(chain, handle, ceiling, f"job {job.id}", on_tick)
        asset = self._assets.upload(result_url, AssetMetadata(job.id, job.user_id, job.kind.value))
        return asset.public_url

    def _generate_story(self, job: Job) -> str:
        chain = self._chains[job.kind]
        shots = job.shots
        total = len(shots)
        shot_log = []

        with tempfile.TemporaryDirectory(prefix=f"story_{job.id}_", dir=self._work_dir) as workspace:
            shot_paths = []
            for i, shot in enumerate(shots):
                prompt = f"{job.prompt}, {shot.add}" if shot.add else job.prompt
                handle = chain.generate(self._request_for(job, prompt))
                shot_log.append({"shot": shot.name, "strategy": handle.strategy, **handle.params})
                job = self._store.update(
                    job.id,
                    provider=handle.strategy,
                    provider_params={"shots": shot_log},
                    provider_job_id=handle.provider_job_id,
                )

                url = self._await_result(
                    chain, handle, self._polling.shot_ceiling_seconds,
                    f"shot {i + 1}/{total} of job {job.id}",
                )
                path = os.path.join(workspace, f"shot_{i + 1:02d}.png")
                self._download(url, path)
                shot_paths.append(path)

                job = self._advance(job, round((i + 1) / total * STORY_SHOTS_PROGRESS))
                logger.info(f"[{job.id}] shot {i + 1}/{total} ({shot.name}) ready → {job.progress}%")

            video_path = os.path.join(workspace, f"{job.id}.mp4")
            self._compositor.compose(
                shot_paths, job.width, job.height, job.fps, video_path, expected_shots=total,
            )
            job = self._advance(job, 90)
            asset = self._assets.upload(video_path, AssetMetadata(job.id, job.user_id, job.kind.value))
        return asset.public_url

    def _complete(self, job: Job, result_url: str) -> Job:
        job = self._transition(job, JobStatus.COMPLETED, result_url=result_url, progress=100)
        self._ledger.finalize(job.run_id, job.user_id)
        self._metrics.inc_counter("jobs.completed")
        logger.info(f"[{job.id}] completed: {result_url}")
        return job

    def _fail(self, job: Job, code: ErrorCode, message: str) -> Job:
        error = truncate_error(message)
        job = self._transition(job, JobStatus.FAILED, error=error, error_code=code.value)
        refunded = self._ledger.refund(job.run_id, job.user_id, reason=f"{code.value}: {error[:200]}")
        self._metrics.inc_counter("jobs.failed")
        self._metrics.inc_counter(f"errors.{code.value}")
        self._metrics.record_error("process", code.value, error, job_id=job.id)
        logger.warning(f"[{job.id}] failed with {code.value} (refunded={refunded}): {error}")
        return job

    def process(self, job_id: str) -> Job:
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        if job.status != JobStatus.QUEUED:
            logger.info(f"[{job.id}] is {job.status.value}, nothing to process")
            return job

        started = self._clock()
        job = self._transition(job, JobStatus.PROCESSING, progress=max(job.progress, 1))
        try:
            if job.kind == JobKind.STORY_MULTI_SHOT:
                result_url = self._generate_story(job)
            else:
                result_url = self._generate_single(job)
        except StefnaError as e:
            return self._fail(self._store.get(job.id) or job, e.code, e.message)
        except Exception as e:
            logger.exception(f"[{job.id}] unexpected failure")
            return self._fail(self._store.get(job.id) or job, ErrorCode.INTERNAL_ERROR, str(e))

        job = self._complete(self._store.get(job.id) or job, result_url)
        self._metrics.record_latency(f"job.{job.kind.value}", (self._clock() - started) * 1000)
        return job

    def run(self, request: SubmitRequest) -> Job:
        """Submit and process inline; duplicates come back as they are."""
        outcome = self.submit(request)
        if outcome.duplicate:
            return outcome.job
        return self.process(outcome.job.id)

    # ── Reads ────────────────────────────────────────────────────────────

    def projection(self, job_id: str) -> JobProjection:
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return JobProjection.of(job)

    def projection_by_run(self, run_id: str) -> JobProjection:
        job = self._store.get_by_run_id(run_id)
        if job is None:
            raise JobNotFound(f"No job for run {run_id}")
        return JobProjection.of(job)
