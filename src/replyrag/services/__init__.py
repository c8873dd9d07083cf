"""Service layer orchestrations for replyrag."""

from .answer import AnswerComposer, AnswerConfig, AnswerFlags, AnswerRequest, ContextBuilder, PromptBuilder
from .batch import BatchOrchestrator, BatchQuery
from .engine import RetrievalEngine, build_engine
from .generation import CompletionBackend, CompletionConfig, OpenAICompletionBackend, TemplateCompletionBackend
from .tokens import TokenCounter

__all__ = [
    "AnswerComposer",
    "AnswerConfig",
    "AnswerFlags",
    "AnswerRequest",
    "BatchOrchestrator",
    "BatchQuery",
    "CompletionBackend",
    "CompletionConfig",
    "ContextBuilder",
    "OpenAICompletionBackend",
    "PromptBuilder",
    "RetrievalEngine",
    "TemplateCompletionBackend",
    "TokenCounter",
    "build_engine",
]
