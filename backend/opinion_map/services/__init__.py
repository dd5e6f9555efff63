"""Service layer exports.

Expose the pipeline components so routes and workers can import them from one place.
"""

from .openai_client import OpenAIService
from .sessions import SessionService
from .pipeline import OpinionPipeline

__all__ = ["OpenAIService", "SessionService", "OpinionPipeline"]
