"""Pydantic models for structured generation results."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from expertrag.models import ContextChunk, RagMetadata


class VentureAgentDecision(BaseModel):
    decision: Literal["INVEST", "PASS"]
    investment_percentage: float = Field(..., ge=0, le=100)
    reasoning: str = Field(..., min_length=1)
    confidence_score: float = Field(..., ge=0, le=100)


class UnifiedAnalysis(BaseModel):
    milestone_execution: str = Field(..., min_length=1)
    scoring_dynamics: str = Field(..., min_length=1)
    team_competency: str = Field(..., min_length=1)
    market_potential: str = Field(..., min_length=1)
    risk_factors: str = Field(..., min_length=1)


class Strategies(BaseModel):
    conservative: VentureAgentDecision
    growth: VentureAgentDecision
    balanced: VentureAgentDecision


class Recommendation(BaseModel):
    best_strategy: Literal["conservative", "growth", "balanced", "none"]
    reasoning: str = Field(..., min_length=1)
    overall_confidence: float = Field(..., ge=0, le=100)


class VentureAgentAnalysisResult(BaseModel):
    unified_analysis: UnifiedAnalysis
    strategies: Strategies
    recommendation: Recommendation


class AnalysisMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    processing_time: Optional[float] = Field(default=None, alias="processingTime")
    attempts: Optional[int] = None
    model: Optional[str] = None


class ExpertAnalysisResult(BaseModel):
    expert_slug: str = Field(..., min_length=1)
    expert_name: str = Field(..., min_length=1)
    analysis: Optional[VentureAgentAnalysisResult] = None
    status: Optional[Literal["pending", "loading", "completed", "error"]] = None
    error: Optional[str] = None
    metadata: Optional[AnalysisMetadata] = None


class MultiExpertAnalysisResult(BaseModel):
    expert_analyses: List[ExpertAnalysisResult]


class RagContextModel(BaseModel):
    content: str = Field(..., min_length=1)
    source: str = Field(..., min_length=1)
    score: float = Field(..., ge=0, le=1)
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def from_chunk(cls, chunk: ContextChunk) -> "RagContextModel":
        return cls(
            content=chunk.content,
            source=chunk.source,
            score=max(0.0, min(1.0, chunk.score)),
            metadata=dict(chunk.metadata),
        )


class RagAnalysisMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    search_results: int = Field(..., ge=0, alias="searchResults")
    total_tokens: int = Field(..., ge=0, alias="totalTokens")
    processing_time: int = Field(..., ge=0, alias="processingTime")
    context_relevant: bool = Field(..., alias="contextRelevant")

    @classmethod
    def from_metadata(cls, metadata: RagMetadata) -> "RagAnalysisMetadata":
        return cls(
            search_results=metadata.search_results,
            total_tokens=metadata.total_tokens,
            processing_time=metadata.processing_time_ms,
            context_relevant=metadata.context_relevant,
        )


class RagExpertAnalysisResult(VentureAgentAnalysisResult):
    rag_context: List[RagContextModel]
    rag_metadata: RagAnalysisMetadata


class ChatRagMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    context_chunks: int = Field(..., alias="contextChunks")
    total_tokens: int = Field(..., alias="totalTokens")
    processing_time: int = Field(..., alias="processingTime")


class ExpertChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(..., min_length=1, description="Expert reply shown to the user")
    rag_metadata: Optional[ChatRagMetadata] = Field(default=None, alias="ragMetadata")
