"""
Image classification on top of the local inference service.

Plan building only depends on the `Classifier` protocol, so tests (and other
backends) can supply anything with a `classify(entry)` method.
"""

import base64
from dataclasses import dataclass
from typing import Protocol

from PIL import Image, UnidentifiedImageError

from ..errors import ClassificationError
from ..scanner import Entry
from .client import OllamaClient, parse_llm_json
from .prompts import build_classify_prompt

UNSORTED = "unsorted"

DEFAULT_CATEGORIES = (
    "animals", "people", "nature", "city", "food",
    "art", "screenshots", "documents", "vehicles", "other",
)

DEFAULT_CONFIDENCE_THRESHOLD = 0.5


@dataclass(frozen=True)
class ClassificationResult:
    entry: Entry
    category: str
    confidence: float
    raw_label: str = ""


class Classifier(Protocol):
    def classify(self, entry: Entry) -> ClassificationResult:
        """Return a result or raise ClassificationError."""
        ...


def normalize_label(label: str) -> str:
    return str(label).strip().strip('."\'').lower().replace(" ", "-")


def apply_threshold(
    entry: Entry,
    label: str,
    confidence: float,
    threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    categories=DEFAULT_CATEGORIES,
) -> ClassificationResult:
    """
    Build a ClassificationResult, coercing weak or unknown labels to "unsorted".

    Confidence is clamped to [0, 1]. Anything below `threshold`, and any label
    outside `categories`, ends up in the fallback category.
    """
    confidence = min(1.0, max(0.0, float(confidence)))
    raw_label = normalize_label(label)
    allowed = {normalize_label(c) for c in categories}

    if confidence < threshold or raw_label not in allowed:
        category = UNSORTED
    else:
        category = raw_label

    return ClassificationResult(
        entry=entry, category=category, confidence=confidence, raw_label=raw_label
    )


def encode_image(entry: Entry) -> str:
    """Check the file header is a readable image and return it base64-encoded."""
    try:
        with Image.open(entry.path) as img:
            if not img.format:
                raise ClassificationError(f"Unrecognized image format: {entry.name}")
        with open(entry.path, 'rb') as f:
            return base64.b64encode(f.read()).decode('ascii')
    except UnidentifiedImageError as e:
        raise ClassificationError(f"Not a readable image: {entry.name}") from e
    except Image.DecompressionBombError as e:
        raise ClassificationError(f"Image too large to classify: {entry.name}") from e
    except OSError as e:
        raise ClassificationError(f"Cannot read {entry.name}: {e}") from e


class OllamaClassifier:
    """Classifier backed by an Ollama vision model."""

    def __init__(
        self,
        client: OllamaClient | None = None,
        categories=DEFAULT_CATEGORIES,
        threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ):
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Confidence threshold must be within [0, 1], got {threshold}")
        self.client = client or OllamaClient()
        self.categories = tuple(normalize_label(c) for c in categories)
        self.threshold = threshold
        self.prompt = build_classify_prompt(self.categories)

    def check_service(self) -> bool:
        """
        Probe the service once.

        Returns:
            True if the configured model is installed, False if the server is
            up but the model still has to be pulled.

        Raises:
            ServiceUnavailableError: If the server cannot be reached.
        """
        installed = self.client.list_models()
        model = self.client.model
        if ":" not in model:
            model = f"{model}:latest"
        return model in installed

    def classify(self, entry: Entry) -> ClassificationResult:
        image = encode_image(entry)
        text = self.client.generate(self.prompt, images=[image])
        label, confidence = self.parse_response(text)
        return apply_threshold(entry, label, confidence, self.threshold, self.categories)

    def parse_response(self, text: str) -> tuple[str, float]:
        """
        Extract (label, confidence) from a model response.

        JSON answers are preferred. A bare answer that is exactly one of the
        allowed categories is accepted with full confidence, as is a JSON
        answer that omits the score.
        """
        try:
            data = parse_llm_json(text)
        except ValueError:
            word = normalize_label(text)
            if word in self.categories:
                return word, 1.0
            raise ClassificationError(f"Unparseable model response: {text[:80]!r}")

        label = data.get("category") or data.get("label")
        if not label:
            raise ClassificationError(f"Model response has no category: {text[:80]!r}")
        try:
            confidence = float(data.get("confidence", 1.0))
        except (TypeError, ValueError):
            raise ClassificationError(f"Invalid confidence in model response: {text[:80]!r}")
        return str(label), confidence
