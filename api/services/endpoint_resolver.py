"""
Per-capability routing between the live and the mock generation backends.
"""
import logging
from typing import Dict, List, Optional

from core.config import settings
from services.generation_backends import (
    MOCK_JOB_PREFIX,
    AnalysisResult,
    GenerationBackend,
    GenerationJob,
    LiveGenerationBackend,
    MockGenerationBackend,
    Suggestion,
)

logger = logging.getLogger(__name__)


class BackendResolver(GenerationBackend):
    """
    Presents one backend to callers while routing each capability:

    - analysis goes to the mock when mock_image_analysis is on
    - prompt generation and job submission go to the mock when mock_image_generation is on
    - polling follows the job id, so jobs keep resolving after a toggle change
    """

    name = "resolver"

    def __init__(
        self,
        mock_image_analysis: Optional[bool] = None,
        mock_image_generation: Optional[bool] = None,
        live: Optional[GenerationBackend] = None,
        mock: Optional[GenerationBackend] = None,
    ):
        self.mock_image_analysis = (
            settings.mock_image_analysis if mock_image_analysis is None else mock_image_analysis
        )
        self.mock_image_generation = (
            settings.mock_image_generation if mock_image_generation is None else mock_image_generation
        )
        self._live = live
        self.mock = mock or MockGenerationBackend()

    @property
    def live(self) -> GenerationBackend:
        # Built on first use so mock-only setups run without API keys
        if self._live is None:
            self._live = LiveGenerationBackend()
        return self._live

    def set_mock_mode(self, image_analysis: Optional[bool] = None, image_generation: Optional[bool] = None):
        if image_analysis is not None:
            self.mock_image_analysis = image_analysis
        if image_generation is not None:
            self.mock_image_generation = image_generation
        logger.info(
            f"Mock mode updated: image_analysis={self.mock_image_analysis}, "
            f"image_generation={self.mock_image_generation}"
        )

    def describe(self) -> Dict[str, str]:
        analysis = "mock" if self.mock_image_analysis else "live"
        generation = "mock" if self.mock_image_generation else "live"
        return {
            "analyze_image": analysis,
            "generate_prompt": generation,
            "submit_generation_job": generation,
            "poll_job": "by job id",
        }

    async def analyze_image(self, image_url: str) -> AnalysisResult:
        backend = self.mock if self.mock_image_analysis else self.live
        return await backend.analyze_image(image_url)

    async def generate_prompt(self, image_url: str, suggestions: List[Suggestion]) -> str:
        backend = self.mock if self.mock_image_generation else self.live
        return await backend.generate_prompt(image_url, suggestions)

    async def submit_generation_job(self, image_url: str, prompt: str) -> GenerationJob:
        backend = self.mock if self.mock_image_generation else self.live
        return await backend.submit_generation_job(image_url, prompt)

    async def poll_job(self, job_id: str) -> GenerationJob:
        backend = self.mock if job_id.startswith(MOCK_JOB_PREFIX) else self.live
        return await backend.poll_job(job_id)


# Global instance
backend_resolver = BackendResolver()


def get_generation_backend() -> BackendResolver:
    """FastAPI dependency for the generation backend"""
    return backend_resolver
