import asyncio
import logging
import os
import posixpath
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable
from urllib.parse import unquote, urlparse

from .errors import (
    CleanupFailed,
    ConversionFailed,
    FetchFailed,
    JobBusy,
    JobCancelled,
    PersistFailed,
    PipelineError,
    ReadBackFailed,
    RequestMalformed,
    StageTimeout,
    UploadFailed,
)
from .events import Broadcaster, ProgressEvent
from .interfaces import ConverterGateway, FetchGateway, JobPaths, StorageGateway


logger = logging.getLogger(__name__)


class JobStatus:
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    CONVERTING = "converting"
    UPLOADING = "uploading"
    CLEANING = "cleaning"
    COMPLETE = "complete"


STEPS = {
    JobStatus.DOWNLOADING: 1,
    JobStatus.DOWNLOADED: 2,
    JobStatus.CONVERTING: 3,
    JobStatus.UPLOADING: 4,
    JobStatus.CLEANING: 5,
}


@dataclass
class Job:
    id: str
    url: str
    paths: JobPaths
    stage: str = "created"
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class JobResult:
    job_id: str
    remote_path: str
    size_bytes: int
    cleanup_errors: list[str] = field(default_factory=list)

    def to_response(self) -> dict[str, str]:
        return {"status": "success"}


class ConversionService:
    """Run download -> convert -> upload -> cleanup for one source URL at a time.

    Progress is published to the broadcaster before each stage. Failures in
    the first three stages abort the job and propagate to the caller as a
    `PipelineError`; cleanup runs regardless and never changes the outcome.
    """

    def __init__(
        self,
        fetcher: FetchGateway,
        converter: ConverterGateway,
        storage: StorageGateway,
        *,
        broadcaster: Broadcaster | None = None,
        scratch_dir: str = "./temp",
        source_ext: str = ".epub",
        target_ext: str = ".pdf",
        max_active_jobs: int = 1,
        fetch_timeout: float | None = None,
        convert_timeout: float | None = None,
        upload_timeout: float | None = None,
        file_mode: int = 0o644,
    ) -> None:
        self._fetcher = fetcher
        self._converter = converter
        self._storage = storage
        self._broadcaster = broadcaster or Broadcaster()
        self._scratch = Path(scratch_dir).resolve()
        self._source_ext = source_ext.lower()
        self._target_ext = target_ext
        self._max_active_jobs = max_active_jobs
        self._fetch_timeout = fetch_timeout
        self._convert_timeout = convert_timeout
        self._upload_timeout = upload_timeout
        self._file_mode = file_mode
        self._jobs: dict[str, Job] = {}

    @property
    def broadcaster(self) -> Broadcaster:
        return self._broadcaster

    @property
    def scratch_dir(self) -> Path:
        return self._scratch

    @property
    def active_jobs(self) -> list[Job]:
        return list(self._jobs.values())

    def prepare(self) -> None:
        logger.info("Creating scratch directory: %s", self._scratch)
        self._scratch.mkdir(parents=True, exist_ok=True)

    def cancel(self) -> int:
        """Signal every active job to stop; each still cleans up after itself."""
        for job in self._jobs.values():
            logger.info("Cancelling job %s during %s", job.id, job.stage)
            job.cancelled.set()
        return len(self._jobs)

    async def stop(self) -> None:
        self.cancel()
        self._broadcaster.close_all()

    def derive_paths(self, url: str, job_id: str) -> JobPaths:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise RequestMalformed(f"not an absolute http(s) URL: {url!r}")
        filename = posixpath.basename(unquote(parsed.path))
        stem, ext = posixpath.splitext(filename)
        if not stem or ext.lower() != self._source_ext:
            raise RequestMalformed(f"expected a {self._source_ext} file, got {filename!r}")
        job_dir = self._scratch / job_id
        output_name = stem + self._target_ext
        return JobPaths(
            job_dir=str(job_dir),
            input_path=str(job_dir / filename),
            output_path=str(job_dir / output_name),
            remote_path="/" + output_name,
        )

    async def convert(self, url: str) -> JobResult:
        job = self._admit(url)
        try:
            return await self._run(job)
        finally:
            self._jobs.pop(job.id, None)

    async def _run(self, job: Job) -> JobResult:
        logger.info("Processing files: input=%s, output=%s", job.paths.input_path, job.paths.output_path)
        finished = False
        try:
            size = await self._download(job)
            await self._convert(job)
            await self._upload(job)
            finished = True
        except PipelineError as e:
            logger.error("Job %s failed during %s: %s", job.id, e.stage, e.message)
            raise
        finally:
            if not finished:
                self._cleanup(job)

        self._emit(job, JobStatus.CLEANING)
        cleanup_errors = self._cleanup(job)
        self._emit(job, JobStatus.COMPLETE)
        logger.info("Conversion of %s completed successfully", job.url)
        return JobResult(job.id, job.paths.remote_path, size, cleanup_errors)

    def _admit(self, url: str) -> Job:
        job_id = uuid.uuid4().hex
        paths = self.derive_paths(url, job_id)
        if len(self._jobs) >= self._max_active_jobs:
            raise JobBusy("a conversion is already in progress")
        job = Job(id=job_id, url=url, paths=paths)
        self._jobs[job_id] = job
        return job

    def _emit(self, job: Job, status: str) -> None:
        job.stage = status
        self._broadcaster.publish(ProgressEvent(status=status, step=STEPS.get(status)))

    async def _run_stage(
        self,
        job: Job,
        timeout: float | None,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> Any:
        stage = job.stage
        task = asyncio.ensure_future(func(*args))
        cancel_wait = asyncio.ensure_future(job.cancelled.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            cancel_wait.cancel()
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if job.cancelled.is_set():
            raise JobCancelled(f"Job cancelled while {stage}", stage)
        raise StageTimeout(f"{stage} did not finish within {timeout:g}s", stage)

    async def _download(self, job: Job) -> int:
        logger.info("Downloading from: %s", job.url)
        self._emit(job, JobStatus.DOWNLOADING)
        data = await self._run_stage(job, self._fetch_timeout, self._fetch, job.url)
        persist = asyncio.ensure_future(asyncio.to_thread(self._persist, job, data))
        try:
            await asyncio.shield(persist)
        except asyncio.CancelledError:
            # the write cannot be interrupted; let it land so cleanup sees the file
            await asyncio.gather(persist, return_exceptions=True)
            raise
        if job.cancelled.is_set():
            raise JobCancelled(f"Job cancelled while {job.stage}", job.stage)
        logger.info("Downloaded successfully: %d bytes", len(data))
        self._emit(job, JobStatus.DOWNLOADED)
        return len(data)

    async def _fetch(self, url: str) -> bytes:
        try:
            return await asyncio.to_thread(self._fetcher.fetch, url)
        except PipelineError:
            raise
        except Exception as e:
            raise FetchFailed(f"Download failed: {e}") from e

    def _persist(self, job: Job, data: bytes) -> None:
        path = Path(job.paths.input_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            os.chmod(path, self._file_mode)
        except OSError as e:
            raise PersistFailed(f"Failed to save file: {e}") from e

    async def _convert(self, job: Job) -> None:
        logger.info("Starting conversion to %s", self._target_ext)
        self._emit(job, JobStatus.CONVERTING)
        try:
            await self._run_stage(
                job,
                self._convert_timeout,
                self._converter.convert,
                job.paths.input_path,
                job.paths.output_path,
            )
        except ConversionFailed as e:
            logger.error("Converter output:\n%s", e.output)
            raise
        except PipelineError:
            raise
        except Exception as e:
            raise ConversionFailed(f"Conversion failed: {e}") from e
        logger.info("Conversion completed successfully")

    async def _upload(self, job: Job) -> None:
        remote_path = job.paths.remote_path
        logger.info("Uploading to %s", remote_path)
        self._emit(job, JobStatus.UPLOADING)
        await self._run_stage(job, self._upload_timeout, self._store, job.paths.output_path, remote_path)
        logger.info("Uploaded successfully to %s", remote_path)

    async def _store(self, output_path: str, remote_path: str) -> None:
        try:
            data = await asyncio.to_thread(Path(output_path).read_bytes)
        except OSError as e:
            raise ReadBackFailed(f"Failed to read converted file: {e}") from e
        try:
            await asyncio.to_thread(self._storage.store, remote_path, data, self._file_mode)
        except PipelineError:
            raise
        except Exception as e:
            raise UploadFailed(f"Upload failed: {e}") from e

    def _cleanup(self, job: Job) -> list[str]:
        logger.info("Cleaning up temporary files for job %s", job.id)
        errors: list[str] = []
        for path in (job.paths.input_path, job.paths.output_path):
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                errors.append(CleanupFailed(f"Failed to remove {path}: {e}").message)
        try:
            shutil.rmtree(job.paths.job_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            errors.append(CleanupFailed(f"Failed to remove {job.paths.job_dir}: {e}").message)
        for msg in errors:
            logger.warning(msg)
        return errors
