"""
Wiring: Settings -> Model Gateway -> SessionOrchestrator

Gateway modules are imported lazily so the OpenAI path never pays for
importing torch, and the local path never needs an API key.
"""

import logging

from medguide.config import GATEWAY_HUGGINGFACE, Settings
from medguide.core.prompt_builder import PromptBuilder
from medguide.core.schema_validator import SchemaValidator
from medguide.core.session_orchestrator import SessionOrchestrator
from medguide.persistence import JsonFilePersistence

logger = logging.getLogger(__name__)


def build_gateway(settings: Settings):
    """Instantiate the configured Model Gateway (expensive for huggingface)"""
    if settings.gateway == GATEWAY_HUGGINGFACE:
        from medguide.utils.hf_client import HuggingFaceGateway
        logger.info(f"Using local HuggingFace gateway: {settings.hf_model}")
        gateway = HuggingFaceGateway(
            model_name=settings.hf_model,
            load_in_4bit=settings.hf_load_in_4bit,
            device=settings.hf_device
        )
        logger.info(f"Local model ready: {gateway.get_model_info()}")
        return gateway

    from medguide.utils.openai_client import OpenAIGateway
    if not settings.api_key:
        logger.warning("No API key configured (MEDGUIDE_API_KEY / OPENAI_API_KEY / GEMINI_API_KEY)")
    return OpenAIGateway(
        model=settings.model,
        api_key=settings.api_key,
        base_url=settings.base_url
    )


def build_orchestrator(settings: Settings, gateway=None, persistence=None) -> SessionOrchestrator:
    """
    Assemble a SessionOrchestrator.

    Args:
        settings: Runtime settings
        gateway: Pre-built gateway (default: build_gateway(settings))
        persistence: Pre-built persistence gateway (default: JSON file store)
    """
    validator = SchemaValidator()
    return SessionOrchestrator(
        gateway=gateway if gateway is not None else build_gateway(settings),
        persistence=(
            persistence if persistence is not None
            else JsonFilePersistence(settings.store_path)
        ),
        prompt_builder=PromptBuilder(
            response_language=settings.response_language,
            validator=validator
        ),
        validator=validator
    )
