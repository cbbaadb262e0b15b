"""
LLM Provider Interface
Abstract base class for the generative collaborator
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from pydantic import BaseModel


class GenerationResult(BaseModel):
    """Result of one generation request"""
    success: bool
    text: str = ""
    token_usage: int = 0
    model: Optional[str] = None
    error: Optional[str] = None


class LLMProvider(ABC):
    """Abstract base class for Language Model providers"""

    @abstractmethod
    async def initialize(self, config: dict) -> None:
        """Initialize the provider with configuration"""
        pass

    @abstractmethod
    async def generate(
        self,
        agent_prompt: str,
        history: List[Dict[str, str]],
        new_user_message: Optional[str] = None,
        model: Optional[str] = None
    ) -> GenerationResult:
        """
        Produce the next assistant turn

        Args:
            agent_prompt: System instructions for the agent
            history: Prior turns as {"role": "user"|"assistant", "content": str}
            new_user_message: Latest caller utterance, if any
            model: Model override (provider default when None)

        Returns:
            GenerationResult; failures are reported with success=False
        """
        pass

    @abstractmethod
    async def cleanup(self) -> None:
        """Release resources"""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name"""
        pass
