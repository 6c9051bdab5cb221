"""
Generation pipeline routes: room analysis, prompt engineering, image jobs
"""
from fastapi import APIRouter, Depends, HTTPException, status
from schemas.generation import (
    AnalyzeRequest,
    AnalyzeResponse,
    BackendsResponse,
    GenerateImageRequest,
    GeneratePromptRequest,
    GeneratePromptResponse,
    MockModeRequest,
    PredictionResponse,
    SuggestionSchema,
)

from core.auth import AuthenticatedUser, get_current_user
from core.config import settings
from middleware.logging_middleware import get_logger
from services.endpoint_resolver import BackendResolver, get_generation_backend
from services.generation_backends import GenerationJob, Suggestion

logger = get_logger(__name__)
router = APIRouter()


def _to_suggestion(item: SuggestionSchema) -> Suggestion:
    return Suggestion(
        id=item.id,
        title=item.title,
        suggestion=item.suggestion,
        explanation=item.explanation or "",
        category=item.category,
    )


def _job_response(job: GenerationJob) -> PredictionResponse:
    return PredictionResponse(
        id=job.id,
        status=job.status,
        input=job.input,
        output=job.output,
        error=job.error,
        created_at=job.created_at,
    )


@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze_image(
    request: AnalyzeRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    backend: BackendResolver = Depends(get_generation_backend),
):
    """Analyze a room photo and return redesign suggestions"""
    logger.info(f"Analyzing image for user {current_user.id}")
    result = await backend.analyze_image(request.image_url)
    return AnalyzeResponse(
        is_interior_space=result.is_interior_space,
        suggestions=[SuggestionSchema(**s.to_dict()) for s in result.suggestions],
    )


@router.post("/generate-prompt", response_model=GeneratePromptResponse)
async def generate_prompt(
    request: GeneratePromptRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    backend: BackendResolver = Depends(get_generation_backend),
):
    """Turn suggestions into an image-edit prompt"""
    prompt = await backend.generate_prompt(request.image_url, [_to_suggestion(s) for s in request.suggestions])
    return GeneratePromptResponse(prompt=prompt)


@router.post("/generate-image", response_model=PredictionResponse, status_code=status.HTTP_201_CREATED)
async def generate_image(
    request: GenerateImageRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    backend: BackendResolver = Depends(get_generation_backend),
):
    """Submit an image-edit job; poll it with GET /predictions/{id}"""
    job = await backend.submit_generation_job(request.image_url, request.prompt)
    logger.info(f"Image job {job.id} submitted for user {current_user.id}")
    return _job_response(job)


@router.get("/predictions/{job_id}", response_model=PredictionResponse)
async def get_prediction(
    job_id: str,
    current_user: AuthenticatedUser = Depends(get_current_user),
    backend: BackendResolver = Depends(get_generation_backend),
):
    job = await backend.poll_job(job_id)
    return _job_response(job)


@router.get("/generation/backends", response_model=BackendsResponse)
async def get_backends(
    current_user: AuthenticatedUser = Depends(get_current_user),
    backend: BackendResolver = Depends(get_generation_backend),
):
    """Which implementation answers each capability"""
    return BackendsResponse(
        mock_image_analysis=backend.mock_image_analysis,
        mock_image_generation=backend.mock_image_generation,
        routing=backend.describe(),
    )


@router.put("/generation/mock-mode", response_model=BackendsResponse)
async def set_mock_mode(
    request: MockModeRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    backend: BackendResolver = Depends(get_generation_backend),
):
    """Switch capabilities between mock and live at runtime (development only)"""
    if settings.environment == "production":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Mock mode cannot be changed in production")

    backend.set_mock_mode(image_analysis=request.image_analysis, image_generation=request.image_generation)
    return BackendsResponse(
        mock_image_analysis=backend.mock_image_analysis,
        mock_image_generation=backend.mock_image_generation,
        routing=backend.describe(),
    )
