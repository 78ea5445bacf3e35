"""
OpenAI Gateway - Model Gateway over any OpenAI-compatible chat endpoint

Responsibilities:
- Render ChatMessages in the chat-completions wire format
- Request JSON-object output (response_format)
- Map SDK failures onto the gateway failure contract

Works against OpenAI itself or any compatible base URL (e.g. Gemini's
OpenAI-compatible endpoint, a local vLLM server).

Design principles:
- Dependency injection (client can be passed in for tests)
- One call per complete(), no retries
"""

import logging
from typing import Any, Optional, Sequence

from openai import APIError, APIStatusError, OpenAI

from medguide.contracts import ChatMessage
from medguide.errors import GatewayError
from medguide.utils.gateway import ModelGateway, decode_model_content

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"


class OpenAIGateway(ModelGateway):
    """Chat-completions gateway with JSON-object output"""

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Any = None
    ) -> None:
        """
        Args:
            model: Model name sent with each request
            api_key: Provider API key (ignored when client is given)
            base_url: OpenAI-compatible base URL (None = OpenAI)
            client: Pre-built client exposing chat.completions.create()
        """
        self.model = model
        self.base_url = base_url
        self.client = client if client is not None else OpenAI(api_key=api_key, base_url=base_url)

        logger.info(f"OpenAI gateway initialized (model={model}, base_url={base_url or 'default'})")

    def complete(self, messages: Sequence[ChatMessage], json_mode: bool = True) -> Any:
        request = {
            'model': self.model,
            'messages': [m.to_dict() for m in messages]
        }
        if json_mode:
            request['response_format'] = {'type': 'json_object'}

        logger.info(f"Calling model {self.model} with {len(messages)} message(s)")

        try:
            completion = self.client.chat.completions.create(**request)
        except APIStatusError as e:
            logger.error(f"Provider returned status {e.status_code}: {e}")
            raise GatewayError(
                f"AI service error: {e.message}",
                status_code=e.status_code
            )
        except APIError as e:
            logger.error(f"AI service call failed: {e}")
            raise GatewayError(f"AI service error: {e.message}")

        if not completion.choices:
            logger.error("Provider returned no choices")
            return decode_model_content(None)

        content = completion.choices[0].message.content
        return decode_model_content(content)
