"""LLM backend that talks to an Ollama server over its REST API."""

from __future__ import annotations

import dataclasses
import logging
import time
import uuid
from typing import Any

import httpx

from .models import (
    ChatCompletionChoice,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChatMessage,
    EmbeddingRequest,
    LlmCapabilities,
    ModelInfo,
    ModelNotSupportedError,
    NodeMetrics,
    NotImplementedLlmError,
    RequestFailedError,
    TextCompletionChoice,
    TextCompletionRequest,
    TextCompletionResponse,
)

logger = logging.getLogger(__name__)

_MAX_CONTEXT_LENGTH = 4096


def _status_text(response: httpx.Response) -> str:
    reason = response.reason_phrase
    return f"{response.status_code} {reason}" if reason else str(response.status_code)


def _parse_generate_response(data: Any) -> tuple[str, str]:
    """Return (model, response) from a decoded /api/generate answer."""
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {data!r}")
    expected = {"model": str, "created_at": str, "response": str, "done": bool}
    for key, kind in expected.items():
        if key not in data:
            raise ValueError(f"missing field `{key}`")
        if not isinstance(data[key], kind):
            raise ValueError(f"invalid type for field `{key}`: {data[key]!r}")
    return data["model"], data["response"]


def _model_names(data: Any) -> list[str]:
    """Return the model names listed in a decoded /api/tags answer."""
    if not isinstance(data, dict) or not isinstance(data.get("models"), list):
        raise ValueError("missing field `models`")
    names = []
    for entry in data["models"]:
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
            raise ValueError("model entry without a name")
        names.append(entry["name"])
    return names


class OllamaLlmClient:
    """Serves a single Ollama model through the generic LLM client interface."""

    def __init__(
        self, api_url: str, model: str, http_client: httpx.AsyncClient | None = None
    ) -> None:
        logger.info(
            "Creating new OllamaLlmClient with API URL: %s and model: %s", api_url, model
        )
        self.api_url = api_url
        self.model = model
        self.metrics = NodeMetrics()
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=None)

    async def __aenter__(self) -> OllamaLlmClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if this object created it."""
        if self._owns_client:
            await self.http_client.aclose()

    async def _model_available(self) -> bool:
        url = f"{self.api_url}/api/tags"
        logger.debug("Checking if model '%s' exists in Ollama via %s", self.model, url)
        try:
            response = await self.http_client.get(url)
        except httpx.HTTPError as exc:
            logger.warning("Failed to get Ollama models: %s", exc)
        else:
            if response.is_success:
                try:
                    names = _model_names(response.json())
                except ValueError:
                    pass
                else:
                    is_valid = self.model in names
                    logger.debug("Model '%s' validation result: %s", self.model, is_valid)
                    return is_valid
        logger.debug("Model validation failed, assuming model '%s' is invalid", self.model)
        return False

    async def get_supported_models(self) -> list[ModelInfo]:
        """List the configured model if the server has it, otherwise nothing."""
        if not await self._model_available():
            logger.warning(
                "Model '%s' is not available in Ollama, returning empty model list", self.model
            )
            return []
        logger.info("Model '%s' is available in Ollama", self.model)
        return [
            ModelInfo(
                id=self.model,
                name=self.model,
                max_context_length=_MAX_CONTEXT_LENGTH,
                supports_chat=True,
                supports_text=True,
                supports_embeddings=False,
            )
        ]

    def get_capabilities(self) -> LlmCapabilities:
        """Describe what this backend supports."""
        return LlmCapabilities(
            supports_streaming=False,
            max_concurrent_requests=1,
            supports_batching=False,
        )

    def get_metrics(self) -> NodeMetrics:
        """Return a snapshot of the node metrics."""
        return dataclasses.replace(self.metrics)

    async def _ensure_supported(self, requested: str) -> None:
        models = await self.get_supported_models()
        if not any(model.id == requested for model in models):
            logger.error("Model '%s' is not available in Ollama", requested)
            raise ModelNotSupportedError(f"Model '{requested}' is not available in Ollama")

    async def chat_completion(self, request: ChatCompletionRequest) -> ChatCompletionResponse:
        """Answer a chat by sending the conversation as one prompt to /api/generate."""
        logger.info("Processing chat completion request for model: %s", request.model)
        await self._ensure_supported(request.model)

        prompt = "\n\n".join(f"{m.role}:\n{m.content}" for m in request.messages)
        payload = {"model": self.model, "prompt": prompt, "stream": False}
        url = f"{self.api_url}/api/generate"
        logger.debug("Sending request to Ollama API: %s", url)

        try:
            response = await self.http_client.post(url, json=payload)
        except httpx.HTTPError as exc:
            message = str(exc)
            logger.error("Failed to send request to Ollama: %s", message)
            if "model not found" in message or "failed to load model" in message:
                raise ModelNotSupportedError(
                    f"Model '{self.model}' not found in Ollama"
                ) from exc
            raise RequestFailedError(message) from exc

        if not response.is_success:
            status = _status_text(response)
            logger.warning("Ollama API returned non-success status: %s", status)
            try:
                error_text = response.text
            except (UnicodeDecodeError, httpx.HTTPError) as exc:
                logger.warning("Failed to read error response body: %s", exc)
                error_text = ""
            if (
                response.status_code in (400, 404)
                or "model not found" in error_text
                or "failed to load" in error_text
            ):
                raise ModelNotSupportedError(
                    f"Model '{self.model}' not supported: {error_text}"
                )
            raise RequestFailedError(f"Ollama API error ({status}): {error_text}")

        try:
            model, text = _parse_generate_response(response.json())
        except ValueError as exc:
            logger.error("Failed to parse Ollama response: %s", exc)
            raise RequestFailedError(f"Failed to parse Ollama response: {exc}") from exc

        response_id = str(uuid.uuid4())
        logger.info("Successfully completed chat request with ID: %s", response_id)
        return ChatCompletionResponse(
            id=response_id,
            object="chat.completion",
            created=int(time.time()),
            model=model,
            choices=[
                ChatCompletionChoice(
                    index=0,
                    message=ChatMessage(role="assistant", content=text),
                    finish_reason="stop",
                )
            ],
            usage=None,
        )

    async def text_completion(self, request: TextCompletionRequest) -> TextCompletionResponse:
        """Complete a prompt by sending it as a single user message."""
        logger.info("Processing text completion request for model: %s", request.model)
        await self._ensure_supported(request.model)

        chat_request = ChatCompletionRequest(
            model=request.model,
            messages=[ChatMessage(role="user", content=request.prompt)],
        )
        chat_response = await self.chat_completion(chat_request)
        first = chat_response.choices[0]
        result = TextCompletionResponse(
            id=chat_response.id,
            object=chat_response.object,
            created=chat_response.created,
            model=chat_response.model,
            choices=[
                TextCompletionChoice(
                    index=0, text=first.message.content, finish_reason=first.finish_reason
                )
            ],
            usage=None,
        )
        logger.info("Successfully completed text completion request with ID: %s", result.id)
        return result

    async def embeddings(self, request: EmbeddingRequest) -> Any:
        """Embeddings are not offered by this backend."""
        logger.info("Processing embedding request for model: %s", request.model)
        raise NotImplementedLlmError("Ollama embeddings not implemented in this example")