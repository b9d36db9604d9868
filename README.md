# openrouter-blueprint

Configuration handling and async HTTP clients for a provider that exposes a
single model from an Ollama or vLLM server.

## What is in the package

- `openrouter_blueprint.config`: `BlueprintConfig`, made of `LlmConfig`,
  `LoadBalancerConfig` and `ApiConfig`, plus `additional_params`. It reads
  JSON, TOML or YAML files and `OPENROUTER_*` environment variables, and it
  validates the result. Errors are `ConfigError` subclasses:
  `ConfigFileReadError`, `ConfigParseError`, `MissingValueError` and
  `InvalidValueError`.
- `openrouter_blueprint.models`: the request and response dataclasses
  (`ChatMessage`, `ChatCompletionRequest`, `ChatCompletionResponse`,
  `TextCompletionRequest`, `TextCompletionResponse`, `EmbeddingRequest`,
  `UsageInfo`, `ModelInfo`, `LlmCapabilities`, `NodeMetrics`), the
  `LoadBalancingStrategy` enum and the error hierarchy (`LlmError`,
  `ModelNotSupportedError`, `RequestFailedError`, `NotImplementedLlmError`).
- `openrouter_blueprint.ollama.OllamaLlmClient` and
  `openrouter_blueprint.vllm.VllmLlmClient`: async clients for a server
  that serves one model.

## Installation

```
pip install openrouter-blueprint
```

## Configuration

```python
from openrouter_blueprint.config import BlueprintConfig

config = BlueprintConfig.load("config.yaml")   # file values, overridden by the environment
config.validate()                              # raises a ConfigError subclass on bad values
print(config.llm.api_url, config.load_balancer.strategy)
```

The file extension selects the format: `.json`, `.toml`, `.yaml` or `.yml`.
Any other extension raises `ConfigParseError`. Missing sections and fields
take their defaults. For example, the LLM API URL defaults to
`http://localhost:8000` and the API server defaults to `0.0.0.0:3000`.
`BlueprintConfig.from_dict()` and `to_dict()` convert to and from plain data.

`BlueprintConfig.from_env(environ=None)` builds a configuration from the
defaults and the given mapping. It reads `os.environ` when no mapping is
passed. The variables it reads are:

| Variable | Field |
| --- | --- |
| `OPENROUTER_LLM_API_URL` | `llm.api_url` |
| `OPENROUTER_LLM_TIMEOUT` | `llm.timeout_seconds` |
| `OPENROUTER_LLM_MAX_CONCURRENT` | `llm.max_concurrent_requests` |
| `OPENROUTER_LOAD_BALANCER_STRATEGY` | `load_balancer.strategy` (`round_robin`, `least_loaded`, `capability_based`, `latency_based`) |
| `OPENROUTER_LOAD_BALANCER_MAX_RETRIES` | `load_balancer.max_retries` |
| `OPENROUTER_LOAD_BALANCER_TIMEOUT` | `load_balancer.selection_timeout_ms` |
| `OPENROUTER_API_ENABLED` | `api.enabled` |
| `OPENROUTER_API_HOST` | `api.host` |
| `OPENROUTER_API_PORT` | `api.port` |
| `OPENROUTER_API_AUTH_ENABLED` | `api.auth_enabled` |
| `OPENROUTER_API_KEY` | `api.api_key` |
| `OPENROUTER_API_AUTH_TOKEN` | `api.auth_token` |
| `OPENROUTER_API_RATE_LIMITING_ENABLED` | `api.rate_limiting_enabled` |
| `OPENROUTER_API_MAX_REQUESTS` | `api.max_requests_per_minute` |
| `OPENROUTER_API_METRICS_INTERVAL` | `api.metrics_interval_seconds` |

Values that do not parse are ignored and the default is kept. Flags must be
`true` or `false`. `BlueprintConfig.load(path, environ=None)` applies an
environment value on top of the file only when that value differs from the
default.

## Talking to a backend

```python
import asyncio

from openrouter_blueprint.models import ChatCompletionRequest, ChatMessage, ModelNotSupportedError
from openrouter_blueprint.ollama import OllamaLlmClient


async def main():
    async with OllamaLlmClient("http://localhost:11434", "deepseek-r1") as client:
        try:
            response = await client.chat_completion(
                ChatCompletionRequest(
                    model="deepseek-r1",
                    messages=[ChatMessage(role="user", content="Hello, who are you?")],
                )
            )
            print(response.choices[0].message.content)
        except ModelNotSupportedError as exc:
            print("model unavailable:", exc)


asyncio.run(main())
```

Both clients share the same shape:

- `await get_supported_models()` returns a one-item list with the configured
  model when the server lists it. Otherwise it returns an empty list. Ollama
  is queried at `/api/tags` and vLLM at `/v1/models`.
- `get_capabilities()` and `get_metrics()` return `LlmCapabilities` and a
  copy of the client's `NodeMetrics`.
- `await chat_completion(request)` and `await text_completion(request)`
  raise `ModelNotSupportedError` when the requested model is not served.
  They raise `RequestFailedError` when the request fails or the answer
  cannot be read.
- `await embeddings(request)` raises `NotImplementedLlmError`.
- `await aclose()` closes the HTTP client the object created. A client passed
  in through `http_client=` is left open. The clients also work as async
  context managers.

`OllamaLlmClient` joins the chat messages into one prompt for
`/api/generate`. It answers with a single assistant message and no usage
figures. `VllmLlmClient` forwards requests to `/v1/chat/completions` and
`/v1/completions`. It passes on `max_tokens`, `temperature`, `top_p` and
`stream` when they are set, and it returns the server's choices and token
usage.

## What the package does not do

There is no command, no HTTP server, no load balancer and no job runner.
The `ApiConfig` and `LoadBalancerConfig` settings are loaded and validated,
but nothing in the package acts on them. Streaming responses and embeddings
are not supported.

## Running the tests

```
pip install -e ".[test]"
pytest
```