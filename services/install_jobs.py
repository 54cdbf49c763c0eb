"""
ADB Hub - Install Jobs

Tracks APK installs started over the API so clients can poll progress and
cancel. Each job wraps one ApkInstallHandle plus the task awaiting it.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from utils.error_handler import ADBError

logger = logging.getLogger(__name__)

MAX_PROGRESS_LINES = 200


class InstallStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class InstallJob(BaseModel):
    job_id: str
    device_id: str
    apk_path: str
    status: InstallStatus = InstallStatus.RUNNING
    progress: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None


class InstallJobManager:
    """Starts installs through the bridge and keeps their state"""

    def __init__(self, bridge):
        self.bridge = bridge
        self._jobs: Dict[str, InstallJob] = {}
        self._handles: Dict[str, object] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def get(self, job_id: str) -> Optional[InstallJob]:
        return self._jobs.get(job_id)

    def all_jobs(self) -> List[InstallJob]:
        return sorted(self._jobs.values(), key=lambda j: j.started_at, reverse=True)

    async def start(self, apk_path: str, device_id: str) -> InstallJob:
        """
        Raises:
            InstallFailedError: pre-checks failed (no job is created)
        """
        job = InstallJob(job_id=uuid.uuid4().hex[:12], device_id=device_id, apk_path=apk_path)

        def _on_progress(line: str):
            job.progress.append(line)
            if len(job.progress) > MAX_PROGRESS_LINES:
                del job.progress[0]

        handle = await self.bridge.install_apk(apk_path, device_id, on_progress=_on_progress)
        self._jobs[job.job_id] = job
        self._handles[job.job_id] = handle
        self._tasks[job.job_id] = asyncio.create_task(self._await_result(job, handle))
        logger.info(f"[InstallJobs] Job {job.job_id}: {apk_path} -> {device_id}")
        return job

    async def _await_result(self, job: InstallJob, handle):
        try:
            outcome = await handle.result()
            job.status = InstallStatus(outcome.value)
        except ADBError as e:
            job.status = InstallStatus.FAILED
            job.error = e.message
        except Exception as e:
            logger.error(f"[InstallJobs] Job {job.job_id} failed unexpectedly: {e}")
            job.status = InstallStatus.FAILED
            job.error = str(e)
        finally:
            job.finished_at = datetime.now()
            self._handles.pop(job.job_id, None)
            self._tasks.pop(job.job_id, None)

    def cancel(self, job_id: str) -> bool:
        """Cancel a running job; False if it already finished"""
        handle = self._handles.get(job_id)
        if handle is None:
            return False
        return handle.cancel()

    async def wait(self, job_id: str) -> Optional[InstallJob]:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})
        return self._jobs.get(job_id)

    async def shutdown(self):
        for job_id in list(self._handles):
            self.cancel(job_id)
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
