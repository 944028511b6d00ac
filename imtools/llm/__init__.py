"""
Classification module for imtools.

Provides:
- Ollama API client with retry/backoff
- Image classifier with confidence threshold
- Prompt builder and model configurations
"""

from .client import OllamaClient, parse_llm_json, get_host, DEFAULT_HOST
from .models import OLLAMA_MODELS, DEFAULT_MODEL
from .prompts import build_classify_prompt
from .classifier import (
    Classifier,
    ClassificationResult,
    OllamaClassifier,
    apply_threshold,
    UNSORTED,
    DEFAULT_CATEGORIES,
    DEFAULT_CONFIDENCE_THRESHOLD,
)

__all__ = [
    "OllamaClient",
    "parse_llm_json",
    "get_host",
    "DEFAULT_HOST",
    "OLLAMA_MODELS",
    "DEFAULT_MODEL",
    "build_classify_prompt",
    "Classifier",
    "ClassificationResult",
    "OllamaClassifier",
    "apply_threshold",
    "UNSORTED",
    "DEFAULT_CATEGORIES",
    "DEFAULT_CONFIDENCE_THRESHOLD",
]
