"""
Suggestion application route

Runs the whole apply-suggestion workflow server-side and charges the
caller's account once the generated image is ready.
"""
from fastapi import APIRouter, Depends
from schemas.generation import ApplySuggestionRequest, ApplySuggestionResponse
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import AuthenticatedUser, get_current_user
from core.database import get_db
from middleware.logging_middleware import get_logger
from services.credit_service import AccountLedger, credit_service
from services.endpoint_resolver import BackendResolver, get_generation_backend
from services.generation_backends import Suggestion
from services.generation_orchestrator import GenerationOrchestrator

logger = get_logger(__name__)
router = APIRouter()


@router.post("/apply", response_model=ApplySuggestionResponse)
async def apply_suggestion(
    request: ApplySuggestionRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    backend: BackendResolver = Depends(get_generation_backend),
):
    """
    Generate the image for one suggestion and charge for it.

    appliedSuggestionIds carries the suggestions already applied in the
    client's session; re-applying one of them is rejected. A generation that
    succeeds while the account cannot pay is still returned, with
    charged=false and the reason in chargeError.
    """
    orchestrator = GenerationOrchestrator(
        backend=backend,
        ledger=AccountLedger(credit_service, db, current_user.id),
        applied=set(request.applied_suggestion_ids),
    )
    suggestion = request.suggestion
    result = await orchestrator.apply_suggestion(
        Suggestion(
            id=suggestion.id,
            title=suggestion.title,
            suggestion=suggestion.suggestion,
            explanation=suggestion.explanation or "",
            category=suggestion.category,
        ),
        request.image_url,
    )
    logger.info(f"Suggestion {result.suggestion_id} applied for user {current_user.id}, charged={result.charged}")

    return ApplySuggestionResponse(
        suggestion_id=result.suggestion_id,
        image_url=result.image_url,
        job_id=result.job_id,
        prompt=result.prompt,
        reference_id=result.reference_id,
        charged=result.charged,
        credits=result.credits,
        transaction_id=result.transaction_id,
        charge_error=result.charge_error,
    )
