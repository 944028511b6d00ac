"""
Local vision model configurations.
"""

# Vision models known to work with the Ollama /api/generate endpoint
OLLAMA_MODELS = {
    "moondream:1.8b": "Small and fast, good enough for coarse categories",
    "llava:7b": "Better labels, needs ~8 GB of memory",
    "llava-phi3:3.8b": "Middle ground between moondream and llava",
    "qwen2.5vl:3b": "Follows JSON instructions more reliably",
}

# Default model for classification calls
DEFAULT_MODEL = "moondream:1.8b"

DEFAULT_OPTIONS = {
    "temperature": 0.0,  # Deterministic responses
    "seed": 42,
    "num_predict": 64,   # A category and a score, nothing more
}

# Per-model overrides merged over DEFAULT_OPTIONS
MODEL_CONFIG = {
    "llava:7b": {"num_predict": 96},
    "qwen2.5vl:3b": {"num_predict": 96},
}


def get_model_config(model_name: str) -> dict:
    """
    Get generation options for a specific model.

    Args:
        model_name: Ollama model tag (e.g. moondream:1.8b).

    Returns:
        Options dict for the Ollama request.
    """
    options = dict(DEFAULT_OPTIONS)
    options.update(MODEL_CONFIG.get(model_name, {}))
    return options
