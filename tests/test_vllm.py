import json

import httpx
import pytest
import respx

from openrouter_blueprint.models import (
    ChatCompletionRequest,
    ChatMessage,
    EmbeddingRequest,
    ModelNotSupportedError,
    NotImplementedLlmError,
    RequestFailedError,
    TextCompletionRequest,
)
from openrouter_blueprint.vllm import VllmLlmClient

API_URL = "http://localhost:8000"

MODELS_BODY = {"object": "list", "data": [{"id": "llama3", "object": "model"}]}

CHAT_BODY = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "created": 1700000000,
    "model": "llama3",
    "choices": [
        {
            "index": 0,
            "message": {"role": "assistant", "content": "I am fine, thanks."},
            "finish_reason": "stop",
        }
    ],
    "usage": {"prompt_tokens": 5, "completion_tokens": 6, "total_tokens": 11},
}

TEXT_BODY = {
    "id": "cmpl-1",
    "object": "text_completion",
    "created": 1700000001,
    "model": "llama3",
    "choices": [{"index": 0, "text": " there was a dragon.", "finish_reason": "length"}],
}


def chat_request(model="llama3"):
    return ChatCompletionRequest(
        model=model,
        messages=[ChatMessage(role="user", content="Hello, how are you?")],
        max_tokens=50,
        temperature=0.7,
    )


def text_request(model="llama3"):
    return TextCompletionRequest(
        model=model, prompt="Once upon a time", max_tokens=50, temperature=0.7
    )


@pytest.mark.asyncio
async def test_vllm_client_creation():
    async with VllmLlmClient(API_URL, "llama3") as client:
        assert client.api_url == "http://localhost:8000"
        assert client.model == "llama3"


@pytest.mark.asyncio
async def test_vllm_capabilities():
    async with VllmLlmClient(API_URL, "llama3") as client:
        capabilities = client.get_capabilities()
    assert capabilities.supports_streaming
    assert capabilities.max_concurrent_requests == 4
    assert capabilities.supports_batching


@pytest.mark.asyncio
async def test_metrics_start_at_zero():
    async with VllmLlmClient(API_URL, "llama3") as client:
        metrics = client.get_metrics()
    assert metrics.cpu_utilization == 0.0
    assert metrics.active_requests == 0
    assert metrics.gpu_utilization is None


@pytest.mark.asyncio
async def test_vllm_models():
    with respx.mock(base_url=API_URL) as router:
        router.get("/v1/models").respond(json=MODELS_BODY)
        async with VllmLlmClient(API_URL, "llama3") as client:
            models = await client.get_supported_models()
    assert len(models) == 1
    assert models[0].id == "llama3"
    assert models[0].max_context_length == 4096
    assert models[0].supports_embeddings is False


@pytest.mark.asyncio
async def test_models_empty_when_server_unreachable():
    with respx.mock(base_url=API_URL) as router:
        router.get("/v1/models").mock(side_effect=httpx.ConnectError("refused"))
        async with VllmLlmClient(API_URL, "llama3") as client:
            models = await client.get_supported_models()
    assert models == []


@pytest.mark.asyncio
async def test_vllm_chat_completion():
    with respx.mock(base_url=API_URL) as router:
        router.get("/v1/models").respond(json=MODELS_BODY)
        route = router.post("/v1/chat/completions").respond(json=CHAT_BODY)
        async with VllmLlmClient(API_URL, "llama3") as client:
            completion = await client.chat_completion(chat_request())
        sent = json.loads(route.calls.last.request.content)
    assert completion.id == "chatcmpl-1"
    assert completion.choices[0].message.content == "I am fine, thanks."
    assert completion.choices[0].finish_reason == "stop"
    assert completion.usage.total_tokens == 11
    assert sent == {
        "model": "llama3",
        "messages": [{"role": "user", "content": "Hello, how are you?"}],
        "max_tokens": 50,
        "temperature": 0.7,
    }


@pytest.mark.asyncio
async def test_chat_message_name_is_forwarded():
    request = ChatCompletionRequest(
        model="llama3", messages=[ChatMessage(role="user", content="Hi", name="alice")]
    )
    with respx.mock(base_url=API_URL) as router:
        router.get("/v1/models").respond(json=MODELS_BODY)
        route = router.post("/v1/chat/completions").respond(json=CHAT_BODY)
        async with VllmLlmClient(API_URL, "llama3") as client:
            await client.chat_completion(request)
        sent = json.loads(route.calls.last.request.content)
    assert sent["messages"] == [{"role": "user", "content": "Hi", "name": "alice"}]
    assert "max_tokens" not in sent


@pytest.mark.asyncio
async def test_vllm_text_completion():
    with respx.mock(base_url=API_URL) as router:
        router.get("/v1/models").respond(json=MODELS_BODY)
        route = router.post("/v1/completions").respond(json=TEXT_BODY)
        async with VllmLlmClient(API_URL, "llama3") as client:
            completion = await client.text_completion(text_request())
        sent = json.loads(route.calls.last.request.content)
    assert completion.choices[0].text == " there was a dragon."
    assert completion.choices[0].finish_reason == "length"
    assert completion.usage is None
    assert sent["prompt"] == "Once upon a time"


@pytest.mark.asyncio
async def test_vllm_embeddings_not_implemented():
    with respx.mock(base_url=API_URL) as router:
        router.get("/v1/models").respond(json=MODELS_BODY)
        async with VllmLlmClient(API_URL, "llama3") as client:
            with pytest.raises(NotImplementedLlmError):
                await client.embeddings(
                    EmbeddingRequest(model="llama3", input=["Hello, world!"])
                )


@pytest.mark.asyncio
async def test_vllm_invalid_model():
    with respx.mock(base_url=API_URL) as router:
        router.get("/v1/models").respond(json=MODELS_BODY)
        async with VllmLlmClient(API_URL, "invalid-model") as client:
            with pytest.raises(ModelNotSupportedError, match="invalid-model"):
                await client.chat_completion(chat_request("invalid-model"))


@pytest.mark.asyncio
async def test_vllm_server_unavailable_for_completion():
    with respx.mock(base_url=API_URL) as router:
        router.get("/v1/models").respond(json=MODELS_BODY)
        router.post("/v1/chat/completions").mock(side_effect=httpx.ConnectError("refused"))
        async with VllmLlmClient(API_URL, "llama3") as client:
            with pytest.raises(RequestFailedError, match="Failed to send request to vLLM API"):
                await client.chat_completion(chat_request())


@pytest.mark.asyncio
async def test_error_body_is_reported():
    error_body = {"error": {"message": "context too long", "type": "invalid_request_error"}}
    with respx.mock(base_url=API_URL) as router:
        router.get("/v1/models").respond(json=MODELS_BODY)
        router.post("/v1/completions").respond(400, json=error_body)
        async with VllmLlmClient(API_URL, "llama3") as client:
            with pytest.raises(RequestFailedError) as info:
                await client.text_completion(text_request())
    assert str(info.value) == "vLLM API error: context too long (invalid_request_error)"


@pytest.mark.asyncio
async def test_error_without_body_reports_status():
    with respx.mock(base_url=API_URL) as router:
        router.get("/v1/models").respond(json=MODELS_BODY)
        router.post("/v1/chat/completions").respond(500, text="oops")
        async with VllmLlmClient(API_URL, "llama3") as client:
            with pytest.raises(RequestFailedError) as info:
                await client.chat_completion(chat_request())
    assert str(info.value) == "vLLM API error: 500 Internal Server Error"


@pytest.mark.asyncio
async def test_malformed_success_body_fails():
    with respx.mock(base_url=API_URL) as router:
        router.get("/v1/models").respond(json=MODELS_BODY)
        router.post("/v1/chat/completions").respond(json={"id": "x"})
        async with VllmLlmClient(API_URL, "llama3") as client:
            with pytest.raises(RequestFailedError, match="Failed to parse vLLM response"):
                await client.chat_completion(chat_request())