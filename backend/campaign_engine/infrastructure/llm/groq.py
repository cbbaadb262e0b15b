"""
Groq LLM Provider Implementation
Non-streaming chat completions for webhook-driven phone conversations

A telephony gather turn needs the whole reply before it can answer the
webhook, so this provider returns complete completions instead of streaming.
"""
import logging
import os
from typing import Dict, List, Optional
from groq import AsyncGroq
from campaign_engine.domain.interfaces.llm_provider import LLMProvider, GenerationResult

logger = logging.getLogger(__name__)


class GroqLLMProvider(LLMProvider):
    """
    Groq LLM provider

    Defaults follow the call agent setup: llama-3.3-70b-versatile,
    temperature 0.7, up to 1024 tokens per reply.
    """

    DEFAULT_MODEL = "llama-3.3-70b-versatile"

    def __init__(self, client: Optional[AsyncGroq] = None):
        self._client: Optional[AsyncGroq] = client
        self._model: str = self.DEFAULT_MODEL
        self._temperature: float = 0.7
        self._max_tokens: int = 1024

    async def initialize(self, config: dict) -> None:
        """Initialize Groq client with configuration"""
        if self._client is None:
            api_key = config.get("api_key") or os.getenv("GROQ_API_KEY")
            if not api_key:
                raise ValueError("Groq API key not found in config or environment")
            self._client = AsyncGroq(api_key=api_key)

        self._model = config.get("model") or self.DEFAULT_MODEL
        self._temperature = config.get("temperature", 0.7)
        self._max_tokens = config.get("max_tokens", 1024)

    async def generate(
        self,
        agent_prompt: str,
        history: List[Dict[str, str]],
        new_user_message: Optional[str] = None,
        model: Optional[str] = None
    ) -> GenerationResult:
        if not self._client:
            raise RuntimeError("Groq client not initialized. Call initialize() first.")

        # System channel carries the agent prompt, then prior turns in order
        messages = [{"role": "system", "content": agent_prompt}]
        for turn in history:
            messages.append({"role": turn["role"], "content": turn["content"]})
        if new_user_message:
            messages.append({"role": "user", "content": new_user_message})

        model = model or self._model

        try:
            completion = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except Exception as e:
            logger.error(f"Groq completion failed: {e}")
            return GenerationResult(success=False, model=model, error=str(e))

        text = (completion.choices[0].message.content or "").strip() if completion.choices else ""
        usage = getattr(completion, "usage", None)
        tokens = getattr(usage, "total_tokens", 0) or 0

        if not text:
            return GenerationResult(success=False, model=model, token_usage=tokens,
                                    error="Empty completion")

        return GenerationResult(success=True, text=text, token_usage=tokens, model=model)

    async def cleanup(self) -> None:
        """Release resources"""
        self._client = None

    @property
    def name(self) -> str:
        return "groq"

    def __repr__(self) -> str:
        return f"GroqLLMProvider(model={self._model}, temp={self._temperature})"
