"""Configuration, data types and async Ollama and vLLM clients for a single-model LLM provider."""

__version__ = "0.1.0"

__all__ = ["config", "models", "ollama", "vllm"]