"""
Ollama API client for imtools.
"""

import json
import os
import re
import time
from typing import Any

import requests
from dotenv import load_dotenv

from ..errors import ClassificationError, ServiceUnavailableError
from .models import DEFAULT_MODEL, get_model_config

# Load environment variables from a .env file if present
load_dotenv()

DEFAULT_HOST = "http://localhost:11434"
REQUEST_TIMEOUT = 120  # seconds, first call may load the model
PROBE_TIMEOUT = 5

# Backoff: 0.2s, 0.4s between 3 attempts
RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY = 0.2
RETRY_FACTOR = 2
RETRY_STATUS = {429, 500, 502, 503, 504}


def get_host(host: str | None = None) -> str:
    """
    Resolve the inference service address.

    Accepts the same forms as OLLAMA_HOST ("127.0.0.1:11434",
    "http://host:port/").
    """
    host = (host or os.environ.get("OLLAMA_HOST") or DEFAULT_HOST).strip()
    if not re.match(r'^https?://', host):
        host = f"http://{host}"
    return host.rstrip("/")


class OllamaClient:
    """
    Thin request/response wrapper around a local Ollama server.

    Safe to share between worker threads: the only mutable state is the
    `ever_succeeded` flag, which only ever flips from False to True.
    """

    def __init__(
        self,
        host: str | None = None,
        model: str = DEFAULT_MODEL,
        timeout: float = REQUEST_TIMEOUT,
        attempts: int = RETRY_ATTEMPTS,
        base_delay: float = RETRY_BASE_DELAY,
        factor: float = RETRY_FACTOR,
        session: requests.Session | None = None,
        sleep=time.sleep,
    ):
        self.host = get_host(host)
        self.model = model
        self.timeout = timeout
        self.attempts = max(1, attempts)
        self.base_delay = base_delay
        self.factor = factor
        self.session = session or requests.Session()
        self._sleep = sleep
        self.ever_succeeded = False

    def list_models(self) -> list[str]:
        """
        Return the model tags installed on the server.

        Raises:
            ServiceUnavailableError: If the server cannot be reached.
        """
        url = f"{self.host}/api/tags"
        try:
            resp = self.session.get(url, timeout=PROBE_TIMEOUT)
            resp.raise_for_status()
            data = resp.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise ServiceUnavailableError(
                f"Inference service unavailable at {self.host}: {e}"
            ) from e
        return [m.get("name", "") for m in data.get("models", [])]

    def generate(self, prompt: str, images: list[str] | None = None) -> str:
        """
        Call /api/generate and return the raw response text.

        Transport failures are retried with exponential backoff.

        Raises:
            ServiceUnavailableError: If every attempt failed to connect and no
                call on this client has ever succeeded.
            ClassificationError: For any other failure.
        """
        url = f"{self.host}/api/generate"
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": get_model_config(self.model),
        }
        if images:
            payload["images"] = images

        delay = self.base_delay
        last_err = None
        connection_failed = False

        for attempt in range(1, self.attempts + 1):
            try:
                resp = self.session.post(url, json=payload, timeout=self.timeout)
            except requests.exceptions.ConnectionError as e:
                last_err = f"connection failed: {e}"
                connection_failed = True
            except requests.exceptions.Timeout:
                last_err = "timeout"
                connection_failed = False
            except requests.exceptions.RequestException as e:
                # Broken bodies, bad encodings, redirect loops
                last_err = f"request failed: {e}"
                connection_failed = False
            else:
                connection_failed = False
                if resp.status_code == 200:
                    self.ever_succeeded = True
                    try:
                        return resp.json()["response"]
                    except (ValueError, KeyError, TypeError) as e:
                        raise ClassificationError(f"Malformed service response: {e}") from e
                if resp.status_code not in RETRY_STATUS:
                    short = (resp.text or "").strip().replace("\n", " ")
                    raise ClassificationError(f"HTTP {resp.status_code}: {short[:200]}")
                last_err = f"HTTP {resp.status_code}"

            if attempt < self.attempts:
                self._sleep(delay)
                delay *= self.factor

        if connection_failed and not self.ever_succeeded:
            raise ServiceUnavailableError(
                f"Inference service unavailable at {self.host} ({last_err})"
            )
        raise ClassificationError(f"retry-exhausted after {self.attempts} attempts: {last_err}")


def parse_llm_json(response_text: str) -> dict[str, Any]:
    """
    Parse JSON from a model response, handling markdown formatting.

    Args:
        response_text: Raw response text from the model.

    Returns:
        Parsed JSON as a dict.

    Raises:
        ValueError: If no JSON object can be parsed.
    """
    text = response_text.strip()

    # Try to extract JSON from markdown code blocks
    if "```" in text:
        json_match = re.search(r'```(?:json)?\s*([\s\S]*?)```', text)
        if json_match:
            text = json_match.group(1).strip()

    # Drop any chatter around the object
    first_brace = text.find('{')
    last_brace = text.rfind('}')
    if first_brace != -1 and last_brace > first_brace:
        text = text[first_brace:last_brace + 1]

    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data
