from dataclasses import dataclass
from typing import Optional, Protocol

from ollama import AsyncClient
from pydantic import BaseModel

from teampulse.core.config import config


@dataclass
class LLMReply:
    content: str
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    model: Optional[str] = None


class ChatLLM(Protocol):
    model_name: str

    async def chat(
        self,
        messages: list[dict],
        temperature: float = 0.0,
        max_tokens: int = 500,
        schema: Optional[type[BaseModel]] = None,
    ) -> LLMReply: ...


class OllamaCloudLLM:
    def __init__(
        self,
        model_name: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.model_name = model_name or config.LLM_MODEL
        api_key = api_key if api_key is not None else config.LLM_API_KEY
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None

        self.client = AsyncClient(
            host=base_url or config.LLM_BASE_URL,
            headers=headers,
            timeout=timeout or config.LLM_TIMEOUT_SECONDS,
        )

    async def chat(
        self,
        messages: list[dict],
        temperature: float = 0.0,
        max_tokens: int = 500,
        schema: Optional[type[BaseModel]] = None,
    ) -> LLMReply:
        """
        Chat completion returning the raw content and token usage.
        With a schema, the response is constrained to its JSON schema.
        """
        response = await self.client.chat(
            model=self.model_name,
            messages=messages,
            format=schema.model_json_schema() if schema is not None else "json",
            options={
                "temperature": temperature,
                "num_predict": max_tokens,
            },
        )
        return LLMReply(
            content=response.message.content or "",
            prompt_tokens=response.prompt_eval_count,
            completion_tokens=response.eval_count,
            model=response.model or self.model_name,
        )
