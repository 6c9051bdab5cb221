"""
Generation backends

One interface for the four generation capabilities (room analysis, prompt
engineering, image job submission, job polling) with three implementations:
the live OpenAI + Replicate integration, a local simulation, and an HTTP
client for the API's own generation routes.
"""
import asyncio
import json
import logging
import re
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
import openai
import replicate
from replicate.exceptions import ReplicateError

from config.prompts import (
    ANALYSIS_SYSTEM_PROMPT,
    ANALYSIS_USER_PROMPT,
    IMAGE_EDIT_SYSTEM_PROMPT,
    IMAGE_EDIT_USER_PROMPT,
    MOCK_PROMPT_TEMPLATE,
)
from core.config import settings
from core.exceptions import (
    BackendNotConfigured,
    GenerationError,
    ImageJobSubmissionFailed,
    JobNotFound,
    PromptGenerationFailed,
)

logger = logging.getLogger(__name__)

MOCK_JOB_PREFIX = "mock_"
# Oldest simulated jobs are dropped beyond this many
MOCK_JOB_LIMIT = 1000
MIN_PROMPT_LENGTH = 10


class JobStatus:
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    TERMINAL = (SUCCEEDED, FAILED, CANCELED)


@dataclass
class Suggestion:
    id: str
    title: str
    suggestion: str
    category: str
    explanation: str = ""

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass
class AnalysisResult:
    is_interior_space: bool
    suggestions: List[Suggestion] = field(default_factory=list)


@dataclass
class GenerationJob:
    """An asynchronous image-generation prediction"""

    id: str
    status: str
    input: Dict[str, Any] = field(default_factory=dict)
    output: Any = None  # list of URLs or a single URL, only once succeeded
    error: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL

    @property
    def output_url(self) -> Optional[str]:
        if isinstance(self.output, list):
            return self.output[0] if self.output else None
        return self.output


class GenerationBackend(ABC):
    """Capability interface consumed by the orchestrator and the generation routes"""

    name = "base"

    @abstractmethod
    async def analyze_image(self, image_url: str) -> AnalysisResult:
        ...

    @abstractmethod
    async def generate_prompt(self, image_url: str, suggestions: List[Suggestion]) -> str:
        ...

    @abstractmethod
    async def submit_generation_job(self, image_url: str, prompt: str) -> GenerationJob:
        ...

    @abstractmethod
    async def poll_job(self, job_id: str) -> GenerationJob:
        ...


def format_suggestions(suggestions: List[Suggestion]) -> str:
    """Group suggestions by category into the text block the prompt engineer expects"""
    by_category: Dict[str, List[Suggestion]] = {}
    for suggestion in suggestions:
        by_category.setdefault(suggestion.category, []).append(suggestion)

    blocks = []
    for category, items in by_category.items():
        lines = "\n".join(f"- {s.title}: {s.suggestion} ({s.explanation})" for s in items)
        blocks.append(f"{category.upper()}:\n{lines}")
    return "\n\n".join(blocks)


def parse_analysis(content: str) -> AnalysisResult:
    """
    Extract the analysis JSON from a model answer. Anything that cannot be
    parsed is treated as a non-interior image.
    """
    cleaned = content.strip()
    match = re.search(r"\{[\s\S]*\}", cleaned)
    if match:
        cleaned = match.group(0)
    cleaned = re.sub(r"^\s*```(json)?\s*", "", cleaned)
    cleaned = re.sub(r"```\s*$", "", cleaned)

    try:
        data = json.loads(cleaned)
        raw_suggestions = data["suggestions"]
        if not isinstance(raw_suggestions, list):
            raise ValueError("suggestions is not a list")
        suggestions = [
            Suggestion(
                id=str(item["id"]),
                title=str(item["title"]),
                suggestion=str(item["suggestion"]),
                explanation=str(item.get("explanation", "")),
                category=str(item["category"]),
            )
            for item in raw_suggestions
        ]
    except (ValueError, KeyError, TypeError) as e:
        logger.warning(f"Could not parse analysis response, assuming non-interior image: {e}")
        return AnalysisResult(is_interior_space=False)

    return AnalysisResult(is_interior_space=bool(data.get("isInteriorSpace", bool(suggestions))), suggestions=suggestions)


class LiveGenerationBackend(GenerationBackend):
    """OpenAI for analysis and prompt engineering, Replicate for image edits"""

    name = "live"

    def __init__(self):
        if not settings.openai_api_key or not settings.replicate_api_key:
            raise BackendNotConfigured("OpenAI and Replicate API keys are required for live generation")

        self.openai_client = openai.AsyncOpenAI(
            api_key=settings.openai_api_key,
            timeout=120.0,  # image analysis can be slow
            max_retries=2,
        )
        self.replicate_client = replicate.Client(api_token=settings.replicate_api_key)
        self.image_model = settings.replicate_model_image_edit

    async def analyze_image(self, image_url: str) -> AnalysisResult:
        logger.info("Calling vision model for room analysis")
        start_time = time.time()
        try:
            response = await self.openai_client.chat.completions.create(
                model=settings.openai_vision_model,
                messages=[
                    {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": ANALYSIS_USER_PROMPT},
                            {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
                        ],
                    },
                ],
                max_tokens=settings.openai_analysis_max_tokens,
                temperature=0.1,
            )
        except openai.OpenAIError as e:
            logger.error(f"Room analysis request failed: {e}")
            raise GenerationError("Image analysis failed") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise GenerationError("Image analysis returned no result")

        result = parse_analysis(content)
        logger.info(
            f"Room analysis completed in {time.time() - start_time:.2f}s: "
            f"interior={result.is_interior_space}, suggestions={len(result.suggestions)}"
        )
        return result

    async def generate_prompt(self, image_url: str, suggestions: List[Suggestion]) -> str:
        formatted = format_suggestions(suggestions)
        logger.info(f"Generating image-edit prompt for {len(suggestions)} suggestion(s)")
        try:
            response = await self.openai_client.chat.completions.create(
                model=settings.openai_prompt_model,
                messages=[
                    {"role": "system", "content": IMAGE_EDIT_SYSTEM_PROMPT},
                    {"role": "user", "content": IMAGE_EDIT_USER_PROMPT.format(suggestions=formatted)},
                ],
                temperature=settings.openai_prompt_temperature,
                max_tokens=settings.openai_prompt_max_tokens,
                response_format={"type": "json_object"},
            )
        except openai.OpenAIError as e:
            logger.error(f"Prompt generation request failed: {e}")
            raise PromptGenerationFailed() from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise PromptGenerationFailed("Prompt generation returned an empty response")
        try:
            prompt = json.loads(content).get("prompt")
        except (ValueError, AttributeError) as e:
            logger.error(f"Prompt generation returned invalid JSON: {content[:200]}")
            raise PromptGenerationFailed("Prompt generation returned invalid JSON") from e

        if not isinstance(prompt, str) or len(prompt.strip()) < MIN_PROMPT_LENGTH:
            raise PromptGenerationFailed("Generated prompt is too short")
        logger.info(f"Generated prompt: {prompt[:100]}...")
        return prompt.strip()

    async def submit_generation_job(self, image_url: str, prompt: str) -> GenerationJob:
        logger.info(f"Creating prediction on {self.image_model}")

        def create_prediction():
            """Create prediction (synchronous call in thread)"""
            return self.replicate_client.models.predictions.create(
                model=self.image_model,
                input={"input_image": image_url, "prompt": prompt},
            )

        try:
            prediction = await asyncio.to_thread(create_prediction)
        except ReplicateError as e:
            logger.error(f"Prediction creation failed: {e}")
            raise ImageJobSubmissionFailed() from e

        logger.info(f"Prediction created: {prediction.id}, status: {prediction.status}")
        return self._to_job(prediction)

    async def poll_job(self, job_id: str) -> GenerationJob:
        try:
            prediction = await asyncio.to_thread(self.replicate_client.predictions.get, job_id)
        except ReplicateError as e:
            if getattr(e, "status", None) == 404:
                raise JobNotFound() from e
            logger.error(f"Polling prediction {job_id} failed: {e}")
            raise GenerationError("Failed to check generation status") from e
        return self._to_job(prediction)

    @staticmethod
    def _to_job(prediction) -> GenerationJob:
        created_at = getattr(prediction, "created_at", None)
        return GenerationJob(
            id=prediction.id,
            status=prediction.status,
            input=dict(getattr(prediction, "input", None) or {}),
            output=prediction.output if prediction.status == JobStatus.SUCCEEDED else None,
            error=str(prediction.error) if getattr(prediction, "error", None) else None,
            created_at=str(created_at) if created_at else None,
        )


MOCK_SUGGESTIONS = [
    Suggestion(
        id="walls-accent-color",
        title="Accent color",
        suggestion="Paint the walls in a warm sage green for a calming atmosphere",
        explanation="Warm sage green creates a natural, calming atmosphere and works well with existing wood elements. The color makes the room feel more inviting.",
        category="Walls",
    ),
    Suggestion(
        id="lighting-ambient",
        title="Ambient light",
        suggestion="Install warm LED strips behind the TV wall for indirect light",
        explanation="Indirect light softens hard shadows and makes the room cozier. Warm 2700K LEDs support the color scheme and reduce eye strain.",
        category="Lighting",
    ),
    Suggestion(
        id="furniture-symmetry",
        title="Symmetric arrangement",
        suggestion="Move the sofa 30cm away from the TV unit for better proportions",
        explanation="The current arrangement feels cramped. More distance creates visual balance and improves the room's proportions.",
        category="Furniture",
    ),
    Suggestion(
        id="decor-plants",
        title="Green accents",
        suggestion="Place a large Monstera deliciosa in the corner left of the sofa",
        explanation="A large plant brings life into the room and improves air quality. It also gives the corner a natural focal point.",
        category="Decoration",
    ),
    Suggestion(
        id="textiles-cushions",
        title="Colored cushions",
        suggestion="Arrange 3-4 cushions in terracotta and cream white on the sofa",
        explanation="Terracotta contrasts nicely with sage green while cream white keeps the balance. The combination follows the 60-30-10 rule.",
        category="Decoration",
    ),
    Suggestion(
        id="storage-hidden",
        title="Hidden storage",
        suggestion="Replace the open shelf with a TV unit with closed compartments",
        explanation="Closed compartments reduce visual clutter and make the room look tidier. Attention moves to the design elements.",
        category="Storage",
    ),
    Suggestion(
        id="materials-textures",
        title="Natural textures",
        suggestion="Add a 200x300cm jute rug under the seating area for warm texture",
        explanation="A natural fiber rug defines the seating area and adds warmth. Jute is sustainable and suits the natural color scheme.",
        category="Materials",
    ),
    Suggestion(
        id="wall-art-gallery",
        title="Picture gallery",
        suggestion="Hang three framed nature photos (40x60cm) above the sofa as a group",
        explanation="A group of three creates a visual anchor above the sofa. Nature motifs reinforce the calm ambience.",
        category="Walls",
    ),
]


class MockGenerationBackend(GenerationBackend):
    """
    Local simulation. Jobs start as `starting`, move to `processing` and
    succeed with a placeholder image once enough time has passed.
    """

    name = "mock"

    def __init__(
        self,
        starting_seconds: Optional[float] = None,
        processing_seconds: Optional[float] = None,
        latency_seconds: Optional[float] = None,
        result_image_url: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        max_jobs: int = MOCK_JOB_LIMIT,
    ):
        self.starting_seconds = starting_seconds if starting_seconds is not None else settings.mock_starting_seconds
        self.processing_seconds = (
            processing_seconds if processing_seconds is not None else settings.mock_processing_seconds
        )
        self.latency_seconds = latency_seconds if latency_seconds is not None else settings.mock_latency_seconds
        self.result_image_url = result_image_url or settings.mock_result_image_url
        self.clock = clock
        self.max_jobs = max_jobs
        self._jobs: Dict[str, GenerationJob] = {}
        self._started: Dict[str, float] = {}

    async def _simulate_latency(self):
        if self.latency_seconds > 0:
            await asyncio.sleep(self.latency_seconds)

    async def analyze_image(self, image_url: str) -> AnalysisResult:
        await self._simulate_latency()
        logger.info("Mock analysis returning canned suggestions")
        return AnalysisResult(is_interior_space=True, suggestions=list(MOCK_SUGGESTIONS))

    async def generate_prompt(self, image_url: str, suggestions: List[Suggestion]) -> str:
        await self._simulate_latency()
        changes = ", ".join(s.suggestion for s in suggestions)
        return MOCK_PROMPT_TEMPLATE.format(changes=changes)

    async def submit_generation_job(self, image_url: str, prompt: str) -> GenerationJob:
        await self._simulate_latency()
        job_id = f"{MOCK_JOB_PREFIX}{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        job = self._create_job(job_id, {"input_image": image_url, "prompt": prompt})
        logger.info(f"Mock prediction created: {job_id}")
        return GenerationJob(**asdict(job))

    async def poll_job(self, job_id: str) -> GenerationJob:
        if not job_id.startswith(MOCK_JOB_PREFIX):
            raise JobNotFound()

        job = self._jobs.get(job_id)
        if job is None:
            # Jobs do not survive a restart; unknown mock ids start over
            job = self._create_job(job_id, {})

        elapsed = self.clock() - self._started[job_id]
        if elapsed < self.starting_seconds:
            job.status = JobStatus.STARTING
        elif elapsed < self.processing_seconds:
            job.status = JobStatus.PROCESSING
        else:
            job.status = JobStatus.SUCCEEDED
            if job.output is None:
                job.output = [self.result_image_url]
        return GenerationJob(**asdict(job))

    def _create_job(self, job_id: str, job_input: Dict[str, Any]) -> GenerationJob:
        while len(self._jobs) >= self.max_jobs:
            oldest = next(iter(self._jobs))
            del self._jobs[oldest]
            del self._started[oldest]

        job = GenerationJob(
            id=job_id,
            status=JobStatus.STARTING,
            input=job_input,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        self._jobs[job_id] = job
        self._started[job_id] = self.clock()
        return job


class HttpGenerationBackend(GenerationBackend):
    """Talks to the API's generation routes, for clients running the orchestrator locally"""

    name = "http"

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def analyze_image(self, image_url: str) -> AnalysisResult:
        data = await self._request("POST", "/api/analyze", GenerationError, json={"imageUrl": image_url})
        return AnalysisResult(
            is_interior_space=bool(data.get("isInteriorSpace")),
            suggestions=[Suggestion(**item) for item in data.get("suggestions", [])],
        )

    async def generate_prompt(self, image_url: str, suggestions: List[Suggestion]) -> str:
        data = await self._request(
            "POST",
            "/api/generate-prompt",
            PromptGenerationFailed,
            json={"imageUrl": image_url, "suggestions": [s.to_dict() for s in suggestions]},
        )
        prompt = data.get("prompt")
        if not prompt:
            raise PromptGenerationFailed(data.get("error"))
        return prompt

    async def submit_generation_job(self, image_url: str, prompt: str) -> GenerationJob:
        data = await self._request(
            "POST", "/api/generate-image", ImageJobSubmissionFailed, json={"imageUrl": image_url, "prompt": prompt}
        )
        return _job_from_payload(data)

    async def poll_job(self, job_id: str) -> GenerationJob:
        data = await self._request("GET", f"/api/predictions/{job_id}", GenerationError)
        return _job_from_payload(data)

    async def _request(self, method: str, path: str, error_class, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"{method} {path} failed: {e}")
            raise error_class() from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code == 404 and path.startswith("/api/predictions/"):
            raise JobNotFound(data.get("error"))
        if response.status_code >= 400:
            logger.warning(f"{method} {path} returned {response.status_code}: {data.get('error')}")
            raise error_class(data.get("error"))
        return data


def _job_from_payload(data: Dict[str, Any]) -> GenerationJob:
    if not data.get("id"):
        raise ImageJobSubmissionFailed("Generation job has no id")
    return GenerationJob(
        id=data["id"],
        status=data.get("status", JobStatus.STARTING),
        input=data.get("input") or {},
        output=data.get("output"),
        error=data.get("error"),
        created_at=data.get("created_at") or data.get("createdAt"),
    )
