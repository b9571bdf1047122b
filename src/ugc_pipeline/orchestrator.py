import asyncio
import inspect
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from uuid import uuid4

from ugc_pipeline.config import settings
from ugc_pipeline.db import now, transaction
from ugc_pipeline.generation import (
    AssetUnavailable,
    GenerationClient,
    GenerationFailed,
    GenerationJobNotFound,
    GenerationState,
    GenerationStatus,
    ServiceUnavailable,
    SubmissionRejected,
)
from ugc_pipeline.jobs import JobError, JobStore, VideoJob
from ugc_pipeline.ledger import CreditLedger, DuplicateRefund
from ugc_pipeline.prompts import VideoStyle, compose_prompt
from ugc_pipeline.states import TERMINAL, InvalidTransition, JobStatus
from ugc_pipeline.storage import AssetStore, AssetStoreError

logger = logging.getLogger(__name__)


class PollBudgetExhausted(RuntimeError):
    pass


class InvalidRequest(ValueError):
    pass


class JobNotFound(LookupError):
    pass


class JobAccessDenied(PermissionError):
    pass


class DownloadNotReady(RuntimeError):
    pass


class DownloadExpired(RuntimeError):
    pass


REFUND_NOTE = " Your credit has been refunded."

FAILURE_MESSAGES = {
    "GENERATION_TIMEOUT": "Video generation timed out.",
    "SERVICE_UNAVAILABLE": "Video service temporarily unavailable.",
    "GENERATION_INCOMPLETE": "Video generation failed to complete.",
    "SUBMISSION_REJECTED": "Video generation failed.",
    "GENERATION_FAILED": "Video generation failed.",
}


def _failure_code(exc: BaseException) -> str:
    if isinstance(exc, (PollBudgetExhausted, TimeoutError)):
        return "GENERATION_TIMEOUT"
    if isinstance(exc, SubmissionRejected):
        return "SUBMISSION_REJECTED"
    if isinstance(exc, (ServiceUnavailable, AssetStoreError)):
        return "SERVICE_UNAVAILABLE"
    if isinstance(exc, (GenerationFailed, AssetUnavailable, GenerationJobNotFound)):
        return "GENERATION_INCOMPLETE"
    txt = str(exc).lower()
    if "timed out" in txt or "timeout" in txt:
        return "GENERATION_TIMEOUT"
    if "500" in txt or "upstream" in txt or "service" in txt:
        return "SERVICE_UNAVAILABLE"
    if "no video url" in txt or "no results" in txt:
        return "GENERATION_INCOMPLETE"
    return "GENERATION_FAILED"


def classify_failure(exc: BaseException, refunded: bool = True) -> JobError:
    code = _failure_code(exc)
    message = FAILURE_MESSAGES[code] + (REFUND_NOTE if refunded else "")
    return JobError(code=code, message=message)


@dataclass(frozen=True)
class PipelineOptions:
    credits_per_video: int = 1
    submit_max_attempts: int = 3
    submit_backoff_base_sec: float = 2.0
    poll_interval_sec: float = 10.0
    poll_max_attempts: int = 120
    download_ttl_sec: int = 7 * 24 * 3600
    stale_after_sec: int = 120
    heartbeat_interval_sec: float = 30.0
    asset_folder: str = "ugc-videos"

    @classmethod
    def from_settings(cls) -> "PipelineOptions":
        return cls(
            credits_per_video=settings.credits_per_video,
            submit_max_attempts=settings.submit_max_attempts,
            submit_backoff_base_sec=settings.submit_backoff_base_sec,
            poll_interval_sec=settings.poll_interval_sec,
            poll_max_attempts=settings.poll_max_attempts,
            download_ttl_sec=settings.download_ttl_sec,
            stale_after_sec=settings.stale_after_sec,
            heartbeat_interval_sec=settings.heartbeat_interval_sec,
            asset_folder=settings.asset_folder,
        )




TerminalHook = Callable[[VideoJob], Awaitable[None] | None]


class PipelineOrchestrator:
    """Drives each video job from QUEUED to a terminal state.

    The job row is the source of truth: every step is a compare-and-swap on
    the stored status. A worker must also hold the job's lease (``worker_id``
    plus ``lease_expires_at``) and renews it while it works, so a sweeper in
    another process only takes over once the owner has stopped renewing.
    Pipeline writes are fenced on the lease, which means a worker that lost
    its job cannot complete or fail it. Ledger and job store must point at
    the same database; confirmation debits and inserts the job in one
    transaction. Blocking sqlite and boto3 calls made from job tasks run in
    worker threads.
    """

    def __init__(
        self,
        store: JobStore,
        ledger: CreditLedger,
        generation: GenerationClient,
        assets: AssetStore,
        options: PipelineOptions | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_terminal: TerminalHook | None = None,
        worker_id: str | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.generation = generation
        self.assets = assets
        self.options = options or PipelineOptions.from_settings()
        self.worker_id = worker_id or uuid4().hex
        self._sleep = sleep
        self._on_terminal = on_terminal
        self._tasks: dict[str, asyncio.Task] = {}

    # intake

    def confirm(
        self,
        user_id: str,
        script: str,
        style: VideoStyle | str,
        visual_summary: str | None = None,
        reference_image_url: str | None = None,
        retry_of: str | None = None,
    ) -> VideoJob:
        try:
            style = VideoStyle(style)
            prompt = compose_prompt(style, script, visual_summary)
        except ValueError as exc:
            raise InvalidRequest(str(exc)) from exc

        job_id = str(uuid4())
        amount = self.options.credits_per_video
        with transaction(self.store.database_path) as conn:
            self.ledger.ensure_account(user_id, conn=conn)
            self.ledger.debit(
                user_id,
                amount,
                job_id,
                description="Video retry" if retry_of else "Video generation",
                conn=conn,
            )
            self.store.create(
                job_id=job_id,
                user_id=user_id,
                style=style,
                script=script.strip(),
                prompt=prompt,
                credits_used=amount,
                visual_summary=visual_summary,
                reference_image_url=reference_image_url,
                retry_of=retry_of,
                worker_id=self.worker_id,
                lease_sec=self.options.stale_after_sec,
                conn=conn,
            )
        logger.info("Job %s queued for user %s (style=%s, retry_of=%s)", job_id, user_id, style.value, retry_of)
        return self.store.get(job_id)

    def launch(self, job_id: str) -> asyncio.Task:
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            return task
        task = asyncio.get_running_loop().create_task(self.run(job_id), name=f"video-job-{job_id}")
        self._tasks[job_id] = task

        def _forget(t: asyncio.Task) -> None:
            if self._tasks.get(job_id) is t:
                del self._tasks[job_id]

        task.add_done_callback(_forget)
        return task

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await self.drain()

    # pipeline

    async def run(self, job_id: str) -> VideoJob | None:
        job = await asyncio.to_thread(self.store.get, job_id)
        if job is None:
            logger.warning("Job %s not found; nothing to run", job_id)
            return None
        if job.status in TERMINAL:
            logger.info("Job %s already %s; skipping", job_id, job.status.value)
            return job

        job = await asyncio.to_thread(self.store.claim, job_id, self.worker_id, self.options.stale_after_sec)
        if job is None:
            logger.warning("Job %s is held by another live worker; not running it here", job_id)
            return await asyncio.to_thread(self.store.get, job_id)

        lease = asyncio.create_task(self._keep_lease(job_id, asyncio.current_task()), name=f"video-lease-{job_id}")
        try:
            return await self._drive(job)
        finally:
            lease.cancel()

    async def _drive(self, job: VideoJob) -> VideoJob | None:
        job_id = job.id
        try:
            if job.status is JobStatus.QUEUED:
                job = await self._submit(job)
            if job.status is JobStatus.GENERATING:
                result = await self._await_result(job)
                job = await self._transition(job.id, JobStatus.GENERATING, JobStatus.PROCESSING)
            else:
                result = await self._recover_result(job)
            job = await self._materialize(job, result)
        except InvalidTransition as exc:
            logger.error("Job %s aborted, another worker owns its progression: %s", job_id, exc)
            return await asyncio.to_thread(self.store.get, job_id)
        except asyncio.CancelledError:
            logger.info("Job %s worker cancelled", job_id)
            raise
        except Exception as exc:
            logger.exception("Job %s failed", job_id)
            return await self._fail(job_id, exc)

        logger.info("Job %s completed", job_id)
        await self._notify(job)
        return job

    async def _keep_lease(self, job_id: str, owner: asyncio.Task | None) -> None:
        while True:
            await asyncio.sleep(self.options.heartbeat_interval_sec)
            try:
                renewed = await asyncio.to_thread(
                    self.store.renew_lease, job_id, self.worker_id, self.options.stale_after_sec
                )
            except Exception:
                logger.exception("Lease renewal failed for job %s; retrying", job_id)
                continue
            if not renewed:
                logger.error("Job %s was taken over by another worker; stopping here", job_id)
                if owner is not None:
                    owner.cancel()
                return

    async def _transition(self, job_id: str, expected: JobStatus, target: JobStatus, **fields) -> VideoJob:
        return await asyncio.to_thread(
            self.store.transition, job_id, expected, target, owner=self.worker_id, **fields
        )

    async def _submit(self, job: VideoJob) -> VideoJob:
        if job.external_job_id:
            logger.info("Job %s already submitted as %s; not re-submitting", job.id, job.external_job_id)
        else:
            external_id = await self._submit_with_retry(job)
            recorded = await asyncio.to_thread(self.store.record_external_job_id, job.id, external_id, self.worker_id)
            if not recorded:
                current = await asyncio.to_thread(self.store.get, job.id)
                logger.error("Job %s: external task %s orphaned, job changed during submission", job.id, external_id)
                raise InvalidTransition(job.id, current.status if current else job.status, JobStatus.GENERATING)
            logger.info("Job %s submitted as %s", job.id, external_id)
        return await self._transition(job.id, JobStatus.QUEUED, JobStatus.GENERATING, generation_started_at=now())

    async def _submit_with_retry(self, job: VideoJob) -> str:
        attempts = max(1, self.options.submit_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await self.generation.submit(job.prompt, job.reference_image_url)
            except ServiceUnavailable as exc:
                if attempt >= attempts:
                    raise
                delay = self.options.submit_backoff_base_sec * (2 ** (attempt - 1)) + random.uniform(0, 1)
                logger.warning(
                    "Job %s submit attempt %d/%d unavailable: %s; retrying in %.1fs",
                    job.id,
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")

    async def _await_result(self, job: VideoJob) -> GenerationStatus:
        budget = self.options.poll_max_attempts
        attempts = job.poll_attempts
        while attempts < budget:
            attempts = await asyncio.to_thread(self.store.record_poll, job.id)
            try:
                status = await self.generation.poll(job.external_job_id)
            except ServiceUnavailable as exc:
                logger.warning("Job %s poll %d/%d unavailable: %s", job.id, attempts, budget, exc)
            else:
                if status.state is GenerationState.DONE:
                    if not status.asset_url:
                        raise AssetUnavailable("No video URL returned from generation service")
                    return status
                if status.state is GenerationState.ERROR:
                    raise GenerationFailed(status.error or "Video generation failed")
                logger.debug("Job %s poll %d/%d: %s", job.id, attempts, budget, status.state.value)
            if attempts < budget:
                await self._sleep(self.options.poll_interval_sec)
        raise PollBudgetExhausted(f"Video generation timed out after {attempts} polls")

    async def _recover_result(self, job: VideoJob) -> GenerationStatus:
        # resumed in PROCESSING: the asset url was never persisted, ask again
        if not job.external_job_id:
            raise AssetUnavailable("No external job to recover the video from")
        status = await self.generation.poll(job.external_job_id)
        if status.state is not GenerationState.DONE or not status.asset_url:
            raise AssetUnavailable("No video URL available for resumed job")
        return status

    async def _materialize(self, job: VideoJob, result: GenerationStatus) -> VideoJob:
        data = await self.generation.fetch(result.asset_url)
        thumbnail = None
        if result.thumbnail_url:
            try:
                thumbnail = await self.generation.fetch(result.thumbnail_url)
            except AssetUnavailable as exc:
                logger.warning("Job %s thumbnail unavailable: %s", job.id, exc)

        stored = await asyncio.to_thread(
            self.assets.upload,
            data,
            self.options.asset_folder,
            f"video_{job.id}",
            thumbnail,
        )
        ttl = self.options.download_ttl_sec
        download_url = await asyncio.to_thread(self.assets.signed_url, stored.public_id, ttl)
        completed_at = now()
        return await self._transition(
            job.id,
            JobStatus.PROCESSING,
            JobStatus.COMPLETED,
            asset_public_id=stored.public_id,
            asset_secure_url=stored.secure_url,
            asset_thumbnail_url=stored.thumbnail_url,
            download_url=download_url,
            download_expires_at=completed_at + timedelta(seconds=ttl),
            completed_at=completed_at,
        )

    # failure and compensation

    async def _fail(self, job_id: str, exc: BaseException) -> VideoJob | None:
        job = await asyncio.to_thread(self.store.get, job_id)
        if job is None or job.status in TERMINAL:
            return job

        error = classify_failure(exc, refunded=job.credits_used > 0)
        try:
            job = await self._transition(
                job.id,
                job.status,
                JobStatus.FAILED,
                error_code=error.code,
                error_message=error.message,
            )
        except InvalidTransition as race:
            logger.error("Job %s could not be marked failed: %s", job_id, race)
            return await asyncio.to_thread(self.store.get, job_id)

        await asyncio.to_thread(self._compensate, job, "Video generation failed - automatic refund")
        await self._notify(job)
        return job

    def _compensate(self, job: VideoJob, reason: str) -> bool:
        if job.credits_used <= 0 or not self.ledger.has_debit(job.id) or self.ledger.has_refund(job.id):
            return False
        try:
            self.ledger.refund(job.user_id, job.credits_used, job.id, reason)
        except DuplicateRefund:
            logger.info("Job %s was refunded concurrently", job.id)
            return False
        except Exception:
            logger.exception("Refund failed for job %s; left for reconciliation", job.id)
            return False
        return True

    async def _notify(self, job: VideoJob) -> None:
        if self._on_terminal is None:
            return
        try:
            result = self._on_terminal(job)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Terminal hook failed for job %s", job.id)

    # user operations

    def get(self, user_id: str, job_id: str) -> VideoJob:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.user_id != user_id:
            raise JobAccessDenied(job_id)
        return job.observed()

    def list_jobs(self, user_id: str, page: int = 1, limit: int = 20) -> tuple[list[VideoJob], int]:
        jobs, total = self.store.list_for_user(user_id, page=page, limit=limit)
        return [j.observed() for j in jobs], total

    def download_url(self, user_id: str, job_id: str) -> str:
        job = self.get(user_id, job_id)
        if job.status is JobStatus.EXPIRED:
            raise DownloadExpired("Download link has expired")
        if job.status is not JobStatus.COMPLETED or not job.asset or not job.asset.download_url:
            raise DownloadNotReady("Video is not ready for download")
        return job.asset.download_url

    def cancel(self, user_id: str, job_id: str) -> VideoJob:
        job = self.get(user_id, job_id)
        if job.external_job_id:
            # already handed to the generation service
            raise InvalidTransition(job.id, job.status, JobStatus.CANCELLED)
        job = self.store.transition(job.id, job.status, JobStatus.CANCELLED, unsubmitted_only=True)
        task = self._tasks.get(job.id)
        if task is not None:
            # may be called from a worker thread
            task.get_loop().call_soon_threadsafe(task.cancel)
        self._compensate(job, "Video cancelled")
        logger.info("Job %s cancelled by %s", job.id, user_id)
        return job

    def retry(self, user_id: str, job_id: str) -> VideoJob:
        failed = self.get(user_id, job_id)
        if failed.status is not JobStatus.FAILED:
            raise InvalidRequest("Can only retry failed videos")
        return self.confirm(
            user_id,
            failed.script,
            failed.style,
            visual_summary=failed.visual_summary,
            reference_image_url=failed.reference_image_url,
            retry_of=failed.id,
        )

    # recovery

    def _stale_jobs(self) -> list[VideoJob]:
        at = now()
        return self.store.list_stale(at, at - timedelta(seconds=self.options.stale_after_sec))

    def _relaunch(self, jobs: list[VideoJob]) -> list[str]:
        launched = []
        for job in jobs:
            if self.is_running(job.id):
                continue
            logger.info("Resuming stale job %s (status=%s, external=%s)", job.id, job.status.value, job.external_job_id)
            self.launch(job.id)
            launched.append(job.id)
        return launched

    def resume_stale(self) -> list[str]:
        """Launch every active job whose owner stopped renewing its lease.

        The launched worker still has to claim the lease, so two sweepers
        racing for the same job end up with a single runner.
        """
        return self._relaunch(self._stale_jobs())

    def reconcile_refunds(self) -> int:
        refunded = 0
        for job in self.store.list_unrefunded():
            reason = "Video cancelled" if job.status is JobStatus.CANCELLED else "Video generation failed - automatic refund"
            if self._compensate(job, reason):
                logger.warning("Reconciled missing refund for job %s", job.id)
                refunded += 1
        return refunded

    async def run_sweeper(self, interval_sec: float) -> None:
        while True:
            try:
                self._relaunch(await asyncio.to_thread(self._stale_jobs))
                await asyncio.to_thread(self.reconcile_refunds)
            except Exception:
                logger.exception("Sweep failed")
            await self._sleep(interval_sec)
