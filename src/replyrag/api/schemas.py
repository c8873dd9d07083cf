"""Pydantic models for the replyrag API."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

SourceTypeName = Literal["transcript", "catalog", "comment"]


class DocumentIngestionRequest(BaseModel):
    """Either one ``payload`` or a list of ``items`` of the path's source type."""

    payload: Optional[Dict[str, Any]] = Field(default=None, description="Single source payload")
    items: Optional[List[Dict[str, Any]]] = Field(default=None, description="Several source payloads")
    overwrite: bool = Field(default=False, description="Replace a document that already exists")

    @model_validator(mode="after")
    def _one_of(self) -> "DocumentIngestionRequest":
        if (self.payload is None) == (self.items is None):
            raise ValueError("provide exactly one of 'payload' or 'items'")
        if self.items is not None and not self.items:
            raise ValueError("'items' must not be empty")
        return self


class ContentItemIndexRequest(BaseModel):
    text: str = Field(..., description="Transcript text of the content item")
    title: str = ""
    channel_name: str = ""
    published_at: Optional[str] = None
    duration_seconds: Optional[float] = Field(default=None, ge=0)
    overwrite: bool = True


class RetrieveRequest(BaseModel):
    query: str = Field(..., min_length=1, description="Free-text query")
    top_k: Optional[int] = Field(default=None, ge=1)
    source_type: Optional[SourceTypeName] = None
    content_item_id: Optional[str] = None
    category: Optional[str] = None
    source_ids: Optional[List[str]] = None
    min_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    rerank_by_price: bool = Field(default=False, description="Blend scores with the budget found in the query")


class PoolBuildRequest(BaseModel):
    max_pool_size: Optional[int] = Field(default=None, ge=1)
    min_relevance_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    overwrite: bool = True


class AnswerFlagsModel(BaseModel):
    include_transcripts: bool = True
    include_catalog: bool = True
    include_comments: bool = False
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)


class AnswerRequestModel(AnswerFlagsModel):
    query: str = Field(..., min_length=1, description="Comment to draft a reply for")
    content_item_id: str = Field(..., min_length=1)
    query_id: Optional[str] = None


class BatchQueryModel(BaseModel):
    query_id: str = Field(..., min_length=1)
    text: str


class BatchAnswerRequestModel(AnswerFlagsModel):
    content_item_id: str = Field(..., min_length=1)
    queries: List[BatchQueryModel] = Field(..., min_length=1)


class ErrorModel(BaseModel):
    kind: str
    message: str


class EnvelopeModel(BaseModel):
    success: bool
    data: Any = None
    error: Optional[ErrorModel] = None
    correlation_id: Optional[str] = None
