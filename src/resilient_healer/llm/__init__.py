from .clients import AnthropicClient, MockLLMClient, OpenAIClient, create_llm_client

__all__ = ["AnthropicClient", "MockLLMClient", "OpenAIClient", "create_llm_client"]
