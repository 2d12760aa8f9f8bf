from typing import Any, Optional
from abc import ABC, abstractmethod
import logging
from openai import AsyncOpenAI
from pydantic_ai import Agent
from pydantic_ai.models import Model
from pydantic_ai.models.openai import OpenAIModel
from pydantic_ai.providers.openai import OpenAIProvider


logger = logging.getLogger(__name__)

class BaseAgent(ABC):
    """Base class for the language-model backed stages of the turn pipeline"""

    def __init__(
        self,
        openai_client: Optional[AsyncOpenAI] = None,
        model_name: str = "gpt-4o-mini",
        model: Optional[Model] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ):
        self.openai_client = openai_client
        self.model_name = model_name
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.agent: Optional[Agent] = None
        self._create_agent_internal(model)

    def _create_model(self) -> Model:
        if self.openai_client is None:
            raise RuntimeError("No OpenAI client configured")
        return OpenAIModel(
            self.model_name,
            provider=OpenAIProvider(openai_client=self.openai_client),
        )

    def _create_agent_internal(self, model: Optional[Model] = None) -> None:
        """Create the agent with the appropriate system prompt"""
        logger.debug(f"Creating pydantic_ai Agent for {self.__class__.__name__}")
        try:
            if model is None:
                model = self._create_model()
            system_prompt = self._get_system_prompt()

            self.agent = Agent(
                model,
                system_prompt=system_prompt,
                retries=2
            )
            logger.info(f"Pydantic-AI Agent created successfully for {self.__class__.__name__}")
        except Exception as e:
             logger.warning(f"Language model unavailable for {self.__class__.__name__}, deterministic fallbacks only: {e}")
             self.agent = None

    @abstractmethod
    def _get_system_prompt(self) -> str:
        """Return the system prompt for this agent. To be implemented by subclasses."""
        pass

    @property
    def available(self) -> bool:
        return self.agent is not None

    def _model_settings(self, max_tokens: Optional[int], temperature: Optional[float], json_mode: bool) -> dict:
        settings = {}
        max_tokens = max_tokens if max_tokens is not None else self.max_tokens
        temperature = temperature if temperature is not None else self.temperature
        if max_tokens is not None:
            settings["max_tokens"] = max_tokens
        if temperature is not None:
            settings["temperature"] = temperature
        if json_mode:
            settings["extra_body"] = {"response_format": {"type": "json_object"}}
        return settings

    async def run(self, **kwargs) -> Any:
        """Runs the pydantic_ai agent on a single user prompt.

        Returns the model text, or an error dict when the agent is missing or the call fails.
        """
        message = kwargs.get("message")

        if not message:
            logger.error(f"{self.__class__.__name__}.run called without 'message'.")
            return {"error": "Input message missing"}

        if self.agent is None:
            return {"error": f"{self.__class__.__name__} has no language model configured"}

        model_settings = self._model_settings(
            kwargs.get("max_tokens"), kwargs.get("temperature"), kwargs.get("json_mode", False)
        )

        try:
            result = await self.agent.run(
                user_prompt=message,
                model_settings=model_settings or None,
            )
            logger.debug(f"Agent ({self.__class__.__name__}) returned result: {str(result.output)[:200]}...")
            return result.output

        except Exception as e:
            logger.exception(f"Exception during pydantic_ai Agent invocation for {self.__class__.__name__}: {str(e)}")
            return {"error": f"Agent invocation failed: {str(e)}"}
