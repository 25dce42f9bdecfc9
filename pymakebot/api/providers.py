"""Provider selection: endpoint URL and auth headers per backend."""

import os
from enum import Enum

from ..errors import ProviderConfigError

HUGGINGFACE_URL = "https://router.huggingface.co/v1/chat/completions"
OLLAMA_URL = "http://localhost:11434/v1/chat/completions"


class Provider(str, Enum):
    """Supported chat-completion backends."""

    HUGGINGFACE = "huggingface"
    OLLAMA = "ollama"
    OPENAI_COMPATIBLE = "openai-compatible"

    @classmethod
    def parse(cls, name: str) -> "Provider":
        normalized = name.strip().lower()
        aliases = {
            "huggingface": cls.HUGGINGFACE,
            "hf": cls.HUGGINGFACE,
            "ollama": cls.OLLAMA,
            "openai-compatible": cls.OPENAI_COMPATIBLE,
            "openai": cls.OPENAI_COMPATIBLE,
            "custom": cls.OPENAI_COMPATIBLE,
        }
        if normalized not in aliases:
            raise ProviderConfigError(
                f"Unknown provider '{name}'. Use huggingface, ollama or openai-compatible."
            )
        return aliases[normalized]

    @property
    def display_name(self) -> str:
        return {
            Provider.HUGGINGFACE: "HuggingFace",
            Provider.OLLAMA: "Ollama (local)",
            Provider.OPENAI_COMPATIBLE: "OpenAI-compatible",
        }[self]

    @property
    def default_url(self) -> str | None:
        return {
            Provider.HUGGINGFACE: HUGGINGFACE_URL,
            Provider.OLLAMA: OLLAMA_URL,
            Provider.OPENAI_COMPATIBLE: None,
        }[self]

    def resolve_api_url(self, configured: str) -> str:
        """Pick the endpoint URL.

        A configured URL that is still the HuggingFace default is treated as
        "not set" for other providers, which then use their own default.
        """
        if configured != HUGGINGFACE_URL or self is Provider.HUGGINGFACE:
            return configured
        if self.default_url is None:
            raise ProviderConfigError(
                f"{self.display_name} requires an explicit api_url in pymakebot.toml"
            )
        return self.default_url

    def auth_headers(self) -> dict[str, str]:
        if self is Provider.HUGGINGFACE:
            token = os.environ.get("HF_TOKEN")
            if not token:
                raise ProviderConfigError("HF_TOKEN must be set for the HuggingFace provider")
            return {"Authorization": f"Bearer {token}"}

        api_key = os.environ.get("LLM_API_KEY", "")
        if api_key:
            return {"Authorization": f"Bearer {api_key}"}
        return {}
