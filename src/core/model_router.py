"""
Model Router

All LLM calls route through this interface, never directly to provider APIs.
The intent extractor and the category resolver receive a router through their
constructors; tests pass a fake with the same ``generate_with_system`` method.

To swap models across the entire system: change the ACTIVE_MODEL environment variable.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, List, Dict, Any

from config.settings import MODEL_REGISTRY, ModelConfig, ModelProvider, get_config

logger = logging.getLogger(__name__)

@dataclass
class Message:
    """Standardized message format across all providers."""
    role: str  # "system", "user", "assistant"
    content: str

@dataclass
class LLMResponse:
    """Standardized response format from any LLM provider."""
    content: str
    model: str
    provider: ModelProvider
    usage: Dict[str, int]
    raw_response: Any = None

class BaseLLMClient(ABC):
    """Abstract base class for LLM provider clients."""

    def __init__(self, config: ModelConfig):
        self.config = config

    @abstractmethod
    def generate(
        self,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """Generate a response from the LLM."""
        pass

    @staticmethod
    def _split_system(messages: List[Message]):
        system = None
        rest = []
        for msg in messages:
            if msg.role == "system":
                system = msg.content
            else:
                rest.append(msg)
        return system, rest

class GeminiClient(BaseLLMClient):
    """Google Gemini API client."""

    def __init__(self, config: ModelConfig):
        super().__init__(config)
        try:
            import google.generativeai as genai
        except ImportError:
            raise ImportError("Install google-generativeai: pip install google-generativeai")
        genai.configure(api_key=config.api_key)
        self.genai = genai

    def generate(
        self,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        temp = temperature if temperature is not None else self.config.temperature
        tokens = max_tokens if max_tokens is not None else self.config.max_tokens

        system_instruction, chat = self._split_system(messages)
        model = self.genai.GenerativeModel(
            self.config.model_name,
            system_instruction=system_instruction,
        )
        generation_config = self.genai.GenerationConfig(
            temperature=temp,
            max_output_tokens=tokens,
            response_mime_type="application/json",
        )
        contents = [
            {"role": "model" if m.role == "assistant" else "user", "parts": [m.content]}
            for m in chat
        ]
        response = model.generate_content(
            contents,
            generation_config=generation_config,
            request_options={"timeout": self.config.timeout_seconds},
        )

        usage = getattr(response, "usage_metadata", None)
        return LLMResponse(
            content=response.text,
            model=self.config.model_name,
            provider=ModelProvider.GEMINI,
            usage={
                "prompt_tokens": usage.prompt_token_count if usage else 0,
                "completion_tokens": usage.candidates_token_count if usage else 0,
            },
            raw_response=response,
        )

class ClaudeClient(BaseLLMClient):
    """Anthropic Claude API client."""

    def __init__(self, config: ModelConfig):
        super().__init__(config)
        try:
            import anthropic
        except ImportError:
            raise ImportError("Install anthropic: pip install anthropic")
        self.client = anthropic.Anthropic(api_key=config.api_key, timeout=config.timeout_seconds)

    def generate(
        self,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        temp = temperature if temperature is not None else self.config.temperature
        tokens = max_tokens if max_tokens is not None else self.config.max_tokens

        system, chat = self._split_system(messages)
        kwargs = {
            "model": self.config.model_name,
            "max_tokens": tokens,
            "temperature": temp,
            "messages": [{"role": m.role, "content": m.content} for m in chat],
        }
        if system:
            kwargs["system"] = system

        response = self.client.messages.create(**kwargs)

        return LLMResponse(
            content=response.content[0].text,
            model=self.config.model_name,
            provider=ModelProvider.CLAUDE,
            usage={
                "prompt_tokens": response.usage.input_tokens,
                "completion_tokens": response.usage.output_tokens,
            },
            raw_response=response,
        )

class OpenAIClient(BaseLLMClient):
    """OpenAI GPT API client."""

    def __init__(self, config: ModelConfig):
        super().__init__(config)
        try:
            from openai import OpenAI
        except ImportError:
            raise ImportError("Install openai: pip install openai")
        self.client = OpenAI(api_key=config.api_key, timeout=config.timeout_seconds)

    def generate(
        self,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        temp = temperature if temperature is not None else self.config.temperature
        tokens = max_tokens if max_tokens is not None else self.config.max_tokens

        response = self.client.chat.completions.create(
            model=self.config.model_name,
            messages=[{"role": m.role, "content": m.content} for m in messages],
            temperature=temp,
            max_tokens=tokens,
            response_format={"type": "json_object"},
        )

        return LLMResponse(
            content=response.choices[0].message.content,
            model=self.config.model_name,
            provider=ModelProvider.OPENAI,
            usage={
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
            },
            raw_response=response,
        )

PROVIDER_CLIENTS = {
    ModelProvider.GEMINI: GeminiClient,
    ModelProvider.CLAUDE: ClaudeClient,
    ModelProvider.OPENAI: OpenAIClient,
}

class ModelRouter:
    """
    Central routing hub for all LLM requests.

    One router per engine instance; the provider client is created lazily on
    the first request so building an engine never needs network access.
    """

    def __init__(self, config: Optional[ModelConfig] = None):
        """Initialize with optional explicit config, otherwise use ACTIVE_MODEL."""
        if config is None:
            config = get_config().model_config
        self.config = config
        self._client: Optional[BaseLLMClient] = None

    @property
    def timeout_seconds(self) -> float:
        return self.config.timeout_seconds

    def _get_client(self) -> BaseLLMClient:
        if self._client is None:
            client_cls = PROVIDER_CLIENTS.get(self.config.provider)
            if client_cls is None:
                raise ValueError(f"Unsupported provider: {self.config.provider}")
            self._client = client_cls(self.config)
        return self._client

    def generate(
        self,
        messages: List[Message],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """Route generation request to the active model."""
        logger.info(f"Routing request to {self.config.provider.value}:{self.config.model_name}")
        return self._get_client().generate(messages, temperature, max_tokens)

    def generate_with_system(
        self,
        system_prompt: str,
        user_message: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """Convenience method for simple system + user message patterns."""
        messages = [
            Message(role="system", content=system_prompt),
            Message(role="user", content=user_message),
        ]
        return self.generate(messages, temperature, max_tokens)

def create_router(model_name: Optional[str] = None, timeout_seconds: Optional[float] = None) -> ModelRouter:
    """Build a model router.

    Args:
        model_name: Optional explicit model name. If None, uses ACTIVE_MODEL env var.
        timeout_seconds: Optional per-request timeout override.

    Returns:
        ModelRouter configured for the specified or active model.
    """
    if model_name:
        if model_name not in MODEL_REGISTRY:
            raise ValueError(f"Unknown model: {model_name}")
        config = MODEL_REGISTRY[model_name]
    else:
        config = get_config().model_config

    if timeout_seconds is not None:
        config = ModelConfig(
            provider=config.provider,
            model_name=config.model_name,
            api_key_env=config.api_key_env,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout_seconds=timeout_seconds,
        )
    return ModelRouter(config)
