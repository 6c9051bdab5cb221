"""
Tests for the generation backends and the per-capability resolver.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.config import settings
from core.exceptions import BackendNotConfigured, JobNotFound
from services.endpoint_resolver import BackendResolver
from services.generation_backends import (
    MOCK_JOB_PREFIX,
    AnalysisResult,
    GenerationJob,
    JobStatus,
    MockGenerationBackend,
    Suggestion,
    format_suggestions,
    parse_analysis,
)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def suggestions():
    return [
        Suggestion(id="a", title="Accent color", suggestion="Paint walls sage", explanation="Calm", category="Walls"),
        Suggestion(id="b", title="Lamp", suggestion="Add a floor lamp", explanation="Warm light", category="Lighting"),
        Suggestion(id="c", title="Gallery", suggestion="Hang three frames", explanation="Anchor", category="Walls"),
    ]


class TestMockBackend:
    @pytest.mark.asyncio
    async def test_job_progresses_to_success(self):
        clock = FakeClock()
        backend = MockGenerationBackend(starting_seconds=3, processing_seconds=8, latency_seconds=0, clock=clock)

        job = await backend.submit_generation_job("https://cdn.example.com/room.jpg", "prompt")
        assert job.id.startswith(MOCK_JOB_PREFIX)
        assert (await backend.poll_job(job.id)).status == JobStatus.STARTING

        clock.now += 3
        assert (await backend.poll_job(job.id)).status == JobStatus.PROCESSING

        clock.now += 5
        finished = await backend.poll_job(job.id)
        assert finished.status == JobStatus.SUCCEEDED
        assert finished.output == [settings.mock_result_image_url]
        assert finished.is_terminal

    @pytest.mark.asyncio
    async def test_unknown_mock_id_starts_over(self):
        backend = MockGenerationBackend(starting_seconds=3, processing_seconds=8, latency_seconds=0, clock=FakeClock())

        job = await backend.poll_job("mock_123_abc")

        assert job.status == JobStatus.STARTING

    @pytest.mark.asyncio
    async def test_job_table_is_capped(self):
        clock = FakeClock()
        backend = MockGenerationBackend(
            starting_seconds=3, processing_seconds=8, latency_seconds=0, clock=clock, max_jobs=2
        )

        first = await backend.submit_generation_job("https://cdn.example.com/a.jpg", "prompt")
        clock.now += 10
        await backend.submit_generation_job("https://cdn.example.com/b.jpg", "prompt")
        for i in range(5):
            await backend.poll_job(f"mock_unknown_{i}")

        assert len(backend._jobs) == 2
        assert len(backend._started) == 2
        # The evicted job is simulated afresh
        assert (await backend.poll_job(first.id)).status == JobStatus.STARTING

    @pytest.mark.asyncio
    async def test_non_mock_id_is_not_found(self):
        backend = MockGenerationBackend(latency_seconds=0)

        with pytest.raises(JobNotFound):
            await backend.poll_job("r8-prediction-id")

    @pytest.mark.asyncio
    async def test_analysis_and_prompt(self, suggestions):
        backend = MockGenerationBackend(latency_seconds=0)

        analysis = await backend.analyze_image("https://cdn.example.com/room.jpg")
        prompt = await backend.generate_prompt("https://cdn.example.com/room.jpg", suggestions[:2])

        assert analysis.is_interior_space is True
        assert len(analysis.suggestions) == 8
        assert len({s.id for s in analysis.suggestions}) == 8
        assert prompt.startswith("Transform this interior space by applying the following changes: Paint walls sage, Add a floor lamp.")


class TestPromptHelpers:
    def test_format_groups_by_category(self, suggestions):
        text = format_suggestions(suggestions)

        assert text == (
            "WALLS:\n- Accent color: Paint walls sage (Calm)\n- Gallery: Hang three frames (Anchor)"
            "\n\nLIGHTING:\n- Lamp: Add a floor lamp (Warm light)"
        )

    def test_parse_analysis_strips_code_fences(self):
        content = """Here you go:
```json
{"isInteriorSpace": true, "suggestions": [
  {"id": "x", "title": "T", "suggestion": "S", "explanation": "E", "category": "C"}
]}
```"""
        result = parse_analysis(content)

        assert result.is_interior_space is True
        assert [s.id for s in result.suggestions] == ["x"]

    @pytest.mark.parametrize(
        "content",
        ["I cannot analyze this image.", '{"isInteriorSpace": true}', '{"suggestions": "none"}'],
    )
    def test_unparsable_analysis_means_not_interior(self, content):
        result = parse_analysis(content)

        assert result.is_interior_space is False
        assert result.suggestions == []


class TestBackendResolver:
    @pytest.fixture
    def live(self):
        live = MagicMock()
        live.analyze_image = AsyncMock(return_value=AnalysisResult(is_interior_space=False))
        live.generate_prompt = AsyncMock(return_value="live prompt")
        live.submit_generation_job = AsyncMock(return_value=GenerationJob(id="r8-1", status=JobStatus.STARTING))
        live.poll_job = AsyncMock(return_value=GenerationJob(id="r8-1", status=JobStatus.PROCESSING))
        return live

    @pytest.fixture
    def mock(self):
        mock = MagicMock()
        mock.analyze_image = AsyncMock(return_value=AnalysisResult(is_interior_space=True))
        mock.generate_prompt = AsyncMock(return_value="mock prompt")
        mock.submit_generation_job = AsyncMock(return_value=GenerationJob(id="mock_1", status=JobStatus.STARTING))
        mock.poll_job = AsyncMock(return_value=GenerationJob(id="mock_1", status=JobStatus.SUCCEEDED))
        return mock

    @pytest.mark.asyncio
    async def test_capabilities_are_routed_independently(self, live, mock, suggestions):
        resolver = BackendResolver(mock_image_analysis=True, mock_image_generation=False, live=live, mock=mock)

        assert (await resolver.analyze_image("img")).is_interior_space is True
        assert await resolver.generate_prompt("img", suggestions) == "live prompt"
        assert (await resolver.submit_generation_job("img", "p")).id == "r8-1"
        live.analyze_image.assert_not_awaited()
        mock.generate_prompt.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_polling_follows_job_id(self, live, mock):
        resolver = BackendResolver(mock_image_analysis=False, mock_image_generation=False, live=live, mock=mock)

        await resolver.poll_job("mock_1")
        await resolver.poll_job("r8-1")

        mock.poll_job.assert_awaited_once_with("mock_1")
        live.poll_job.assert_awaited_once_with("r8-1")

    @pytest.mark.asyncio
    async def test_toggle_at_runtime(self, live, mock):
        resolver = BackendResolver(mock_image_analysis=False, mock_image_generation=False, live=live, mock=mock)

        resolver.set_mock_mode(image_generation=True)

        assert (await resolver.submit_generation_job("img", "p")).id == "mock_1"
        assert resolver.mock_image_analysis is False
        assert resolver.describe()["submit_generation_job"] == "mock"
        assert resolver.describe()["analyze_image"] == "live"

    @pytest.mark.asyncio
    async def test_live_backend_needs_keys_only_when_used(self, monkeypatch, mock):
        monkeypatch.setattr(settings, "openai_api_key", "")
        monkeypatch.setattr(settings, "replicate_api_key", "")
        resolver = BackendResolver(mock_image_analysis=True, mock_image_generation=False, mock=mock)

        await resolver.analyze_image("img")
        with pytest.raises(BackendNotConfigured):
            await resolver.generate_prompt("img", [])
