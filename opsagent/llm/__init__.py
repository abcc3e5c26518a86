"""AI collaborator package: client contract and chat-completions client."""

from opsagent.llm.client import AIClient, ChatCompletionsClient

__all__ = ["AIClient", "ChatCompletionsClient"]
