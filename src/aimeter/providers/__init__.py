from aimeter.providers.base import ProviderAdapter
from aimeter.providers.claude import ClaudeAdapter
from aimeter.providers.codex import CodexAdapter
from aimeter.providers.gemini import GeminiAdapter

__all__ = ["ClaudeAdapter", "CodexAdapter", "GeminiAdapter", "ProviderAdapter"]
