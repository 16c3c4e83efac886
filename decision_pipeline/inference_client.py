import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

import httpx
from pydantic import BaseModel, Field, ValidationError

from .config import INFERENCE_TIMEOUT_SECONDS, INFERENCE_URL
from .models import Action
from .schemas import InferenceFailure

# --- Logging ---
logger = logging.getLogger(__name__)


# --- Validated Inference Payloads ---

class Prediction(BaseModel):
    action: Action
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = ""


class SentimentReading(BaseModel):
    score: float = Field(..., ge=-1.0, le=1.0)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    summary: str = ""
    trending: bool = False


# --- Client ---

class InferenceClient(ABC):
    """A text-completion collaborator. Returns the raw completion text."""

    @abstractmethod
    async def complete(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        ...


class HttpInferenceClient(InferenceClient):
    """
    Posts prompts to an HTTP completion endpoint.

    Expects `POST {base_url}/complete` with `{"prompt": ..., **options}` and a JSON
    response carrying the completion under `content`.
    """

    def __init__(self, base_url: str = INFERENCE_URL, timeout: float = INFERENCE_TIMEOUT_SECONDS):
        if not base_url:
            raise ValueError("An inference base URL is required.")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def complete(self, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        payload = {"prompt": prompt, **(options or {})}
        async with httpx.AsyncClient() as client:
            response = await client.post(f"{self.base_url}/complete", json=payload, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        return body["content"] if isinstance(body, dict) else str(body)


def _extract_json(content: str) -> dict:
    """Parses the first JSON object in a completion, tolerating surrounding prose."""
    start = content.find("{")
    end = content.rfind("}")
    if start == -1 or end < start:
        raise json.JSONDecodeError("No JSON object found in completion", content, 0)
    return json.loads(content[start:end + 1])


async def _request(client: Optional[InferenceClient], prompt: str, options: Optional[Dict[str, Any]], model, purpose: str):
    if client is None:
        return InferenceFailure(reason="inference collaborator not available")

    try:
        content = await client.complete(prompt, options)
        return model.model_validate(_extract_json(content))
    except httpx.HTTPStatusError as e:
        logger.error(f"HTTP error during {purpose} inference: {e.response.status_code} - {e.response.text}")
        return InferenceFailure(reason=f"HTTP {e.response.status_code}", details={"purpose": purpose})
    except httpx.RequestError as e:
        logger.error(f"Request error during {purpose} inference: {e}")
        return InferenceFailure(reason="inference collaborator unreachable", details={"purpose": purpose})
    except (json.JSONDecodeError, ValidationError, KeyError) as e:
        logger.error(f"Invalid {purpose} inference payload: {e}")
        return InferenceFailure(reason="invalid inference payload", details={"purpose": purpose})
    except Exception as e:
        # Catch any other unexpected errors from third-party clients
        logger.error(f"Unexpected error during {purpose} inference: {e}")
        return InferenceFailure(reason=f"unexpected inference error: {e}", details={"purpose": purpose})


async def request_prediction(client: Optional[InferenceClient], prompt: str, options: Optional[Dict[str, Any]] = None) -> Union[Prediction, InferenceFailure]:
    return await _request(client, prompt, options, Prediction, "prediction")


async def request_sentiment(client: Optional[InferenceClient], prompt: str, options: Optional[Dict[str, Any]] = None) -> Union[SentimentReading, InferenceFailure]:
    return await _request(client, prompt, options, SentimentReading, "sentiment")
