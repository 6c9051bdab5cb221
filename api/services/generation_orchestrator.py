"""
Suggestion application workflow

prompt -> image job -> polling -> charge -> mark applied. Credits are only
taken after the image job has succeeded; a job that fails or runs out of time
costs nothing.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set

from core.config import settings
from core.exceptions import (
    CreditOperationError,
    CreditStoreUnavailable,
    GenerationFailed,
    GenerationTimeout,
    ImageJobSubmissionFailed,
    InsufficientCredits,
    NoBaseImage,
    PromptGenerationFailed,
    RoomVibeError,
    SuggestionAlreadyApplied,
)
from services.generation_backends import GenerationBackend, GenerationJob, JobStatus, Suggestion

logger = logging.getLogger(__name__)

# Errors after which the same deduct call may be repeated with the same reference id
RETRYABLE_CHARGE_ERRORS = (CreditStoreUnavailable, CreditOperationError)


class GenerationStage(str, Enum):
    IDLE = "idle"
    PROMPT_REQUESTED = "prompt_requested"
    PROMPT_READY = "prompt_ready"
    IMAGE_JOB_SUBMITTED = "image_job_submitted"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CREDITS_DEDUCTED = "credits_deducted"


# Percent shown to the user at each step
PROGRESS = {
    "init": 0,
    "prompt_start": 10,
    "prompt_complete": 30,
    "image_start": 50,
    JobStatus.STARTING: 60,
    JobStatus.PROCESSING: 80,
    "complete": 100,
}


class Ledger(Protocol):
    async def deduct(
        self,
        amount: int,
        description: str,
        reference_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Any:
        ...


@dataclass
class GenerationProgress:
    stage: GenerationStage
    percent: int
    job_status: Optional[str] = None


@dataclass
class GenerationResult:
    suggestion_id: str
    prompt: str
    job_id: str
    image_url: Optional[str]
    output: Any
    reference_id: str
    stage: GenerationStage
    charged: bool = False
    credits: Optional[int] = None  # balance after the charge, when it went through
    transaction_id: Optional[str] = None
    charge_error: Optional[str] = None


class GenerationOrchestrator:
    """Runs one suggestion application at a time per call; calls share only the applied set"""

    def __init__(
        self,
        backend: GenerationBackend,
        ledger: Ledger,
        applied: Optional[Set[str]] = None,
        cost: Optional[int] = None,
        poll_interval: Optional[float] = None,
        max_wait: Optional[float] = None,
        deduct_attempts: Optional[int] = None,
        on_progress: Optional[Callable[[GenerationProgress], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.backend = backend
        self.ledger = ledger
        self.applied = applied if applied is not None else set()
        self.cost = cost if cost is not None else settings.credit_cost_apply_suggestion
        self.poll_interval = poll_interval if poll_interval is not None else settings.generation_poll_interval
        self.max_wait = max_wait if max_wait is not None else settings.generation_max_wait
        self.deduct_attempts = (
            deduct_attempts if deduct_attempts is not None else settings.generation_deduct_max_attempts
        )
        self.on_progress = on_progress
        self.clock = clock
        self.sleep = sleep

    def is_applied(self, suggestion_id: str) -> bool:
        return suggestion_id in self.applied

    async def apply_suggestion(self, suggestion: Suggestion, base_image_url: Optional[str]) -> GenerationResult:
        if not base_image_url:
            raise NoBaseImage()
        if self.is_applied(suggestion.id):
            raise SuggestionAlreadyApplied()

        # One reference per invocation, fixed before any work so charge retries share it
        reference_id = f"apply-suggestion-{suggestion.id}-{int(time.time() * 1000)}"
        self._report(GenerationStage.IDLE, PROGRESS["init"])
        logger.info(f"Applying suggestion {suggestion.id} ({suggestion.title})")

        prompt = await self._generate_prompt(suggestion, base_image_url)
        job = await self._submit_job(base_image_url, prompt)
        job = await self._wait_for_job(job)

        image_url = job.output_url
        self._report(GenerationStage.SUCCEEDED, PROGRESS["complete"], job.status)
        logger.info(f"Generation for suggestion {suggestion.id} succeeded: job={job.id}")

        result = GenerationResult(
            suggestion_id=suggestion.id,
            prompt=prompt,
            job_id=job.id,
            image_url=image_url,
            output=job.output,
            reference_id=reference_id,
            stage=GenerationStage.SUCCEEDED,
        )
        await self._charge(suggestion, result)

        # The output is kept whether or not the charge went through
        self.applied.add(suggestion.id)
        return result

    async def _generate_prompt(self, suggestion: Suggestion, base_image_url: str) -> str:
        self._report(GenerationStage.PROMPT_REQUESTED, PROGRESS["prompt_start"])
        try:
            prompt = await self.backend.generate_prompt(base_image_url, [suggestion])
        except PromptGenerationFailed:
            raise
        except Exception as e:
            logger.error(f"Prompt generation failed for suggestion {suggestion.id}: {e}", exc_info=True)
            message = e.message if isinstance(e, RoomVibeError) else None
            raise PromptGenerationFailed(message) from e

        if not prompt or not prompt.strip():
            raise PromptGenerationFailed("Prompt generation returned an empty prompt")
        self._report(GenerationStage.PROMPT_READY, PROGRESS["prompt_complete"])
        return prompt

    async def _submit_job(self, base_image_url: str, prompt: str) -> GenerationJob:
        try:
            job = await self.backend.submit_generation_job(base_image_url, prompt)
        except ImageJobSubmissionFailed:
            raise
        except Exception as e:
            logger.error(f"Image job submission failed: {e}", exc_info=True)
            message = e.message if isinstance(e, RoomVibeError) else None
            raise ImageJobSubmissionFailed(message) from e

        if job is None or not job.id:
            raise ImageJobSubmissionFailed("Image generation did not return a job id")
        self._report(GenerationStage.IMAGE_JOB_SUBMITTED, PROGRESS["image_start"], job.status)
        logger.info(f"Image job submitted: {job.id}")
        return job

    async def _wait_for_job(self, job: GenerationJob) -> GenerationJob:
        """Poll until the job is terminal or max_wait has elapsed"""
        start_time = self.clock()
        while not job.is_terminal:
            if self.clock() - start_time >= self.max_wait:
                self._report(GenerationStage.TIMED_OUT, PROGRESS.get(job.status, PROGRESS["image_start"]), job.status)
                logger.warning(f"Image job {job.id} timed out after {self.max_wait:.0f}s")
                raise GenerationTimeout()

            await self.sleep(self.poll_interval)
            try:
                job = await self.backend.poll_job(job.id)
            except Exception as e:
                logger.error(f"Polling image job {job.id} failed: {e}", exc_info=True)
                self._report(GenerationStage.FAILED, PROGRESS["image_start"], job.status)
                detail = e.message if isinstance(e, RoomVibeError) else "status check failed"
                raise GenerationFailed(detail) from e

            elapsed = self.clock() - start_time
            logger.debug(f"[{elapsed:.1f}s] Image job {job.id} status: {job.status}")
            if not job.is_terminal:
                self._report(GenerationStage.POLLING, PROGRESS.get(job.status, PROGRESS["image_start"]), job.status)

        if job.status != JobStatus.SUCCEEDED:
            self._report(GenerationStage.FAILED, PROGRESS["image_start"], job.status)
            detail = job.error or ("canceled" if job.status == JobStatus.CANCELED else "unknown error")
            logger.warning(f"Image job {job.id} ended as {job.status}: {detail}")
            raise GenerationFailed(detail)
        if not job.output_url:
            self._report(GenerationStage.FAILED, PROGRESS["image_start"], job.status)
            raise GenerationFailed("no output image")
        return job

    async def _charge(self, suggestion: Suggestion, result: GenerationResult):
        """
        Take the credits for a successful generation. Store and transport
        failures are retried with the same reference id so at most one
        deduction is recorded.
        """
        metadata = {
            "suggestion_id": suggestion.id,
            "suggestion_title": suggestion.title,
            "job_id": result.job_id,
            "image_url": result.image_url,
        }
        description = f"Suggestion applied: {suggestion.title}"

        for attempt in range(1, self.deduct_attempts + 1):
            try:
                receipt = await self.ledger.deduct(self.cost, description, result.reference_id, metadata)
            except InsufficientCredits as e:
                logger.warning(
                    f"Generation {result.job_id} succeeded but credits are insufficient "
                    f"(required={e.required}, available={e.available}); output kept"
                )
                result.charge_error = e.message
                return
            except RETRYABLE_CHARGE_ERRORS as e:
                if attempt < self.deduct_attempts:
                    logger.warning(f"Charging {result.reference_id} failed (attempt {attempt}/{self.deduct_attempts}): {e}")
                    await self.sleep(settings.credit_write_retry_delay * attempt)
                    continue
                logger.error(f"Charging {result.reference_id} failed after {attempt} attempts: {e}")
                result.charge_error = e.message
                return
            except RoomVibeError as e:
                logger.error(f"Charging {result.reference_id} rejected: {e.message}")
                result.charge_error = e.message
                return

            result.charged = True
            result.credits = receipt.credits
            result.transaction_id = receipt.transaction_id
            result.stage = GenerationStage.CREDITS_DEDUCTED
            logger.info(f"Charged {self.cost} credits for {result.reference_id}, balance={receipt.credits}")
            return

    def _report(self, stage: GenerationStage, percent: int, job_status: Optional[str] = None):
        if self.on_progress is not None:
            self.on_progress(GenerationProgress(stage=stage, percent=percent, job_status=job_status))
