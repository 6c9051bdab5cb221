"""
Pydantic schemas for the generation pipeline endpoints
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class SuggestionSchema(BaseModel):
    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    suggestion: str = Field(..., min_length=1)
    explanation: Optional[str] = ""
    category: str = Field(..., min_length=1)


class AnalyzeRequest(CamelModel):
    image_url: str = Field(..., min_length=1, description="Hosted image URL or data URL")


class AnalyzeResponse(CamelModel):
    is_interior_space: bool
    suggestions: List[SuggestionSchema]


class GeneratePromptRequest(CamelModel):
    image_url: str = Field(..., min_length=1)
    suggestions: List[SuggestionSchema] = Field(..., min_length=1)


class GeneratePromptResponse(BaseModel):
    prompt: str


class GenerateImageRequest(CamelModel):
    image_url: str = Field(..., min_length=1)
    prompt: str = Field(..., min_length=1)


class PredictionResponse(BaseModel):
    id: str
    status: str
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: Optional[str] = None
    created_at: Optional[str] = None


class ApplySuggestionRequest(CamelModel):
    suggestion: SuggestionSchema
    image_url: Optional[str] = None
    applied_suggestion_ids: List[str] = Field(default_factory=list)


class ApplySuggestionResponse(CamelModel):
    success: bool = True
    suggestion_id: str
    image_url: Optional[str]
    job_id: str
    prompt: str
    reference_id: str
    charged: bool
    credits: Optional[int] = None
    transaction_id: Optional[str] = None
    charge_error: Optional[str] = None


class MockModeRequest(CamelModel):
    image_analysis: Optional[bool] = None
    image_generation: Optional[bool] = None


class BackendsResponse(CamelModel):
    mock_image_analysis: bool
    mock_image_generation: bool
    routing: Dict[str, str]
