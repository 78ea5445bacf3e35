"""
Runtime settings loaded from the environment (and an optional .env file).

Variables:
    MEDGUIDE_GATEWAY            'openai' (default) or 'huggingface'
    MEDGUIDE_API_KEY            falls back to OPENAI_API_KEY, then GEMINI_API_KEY
    MEDGUIDE_BASE_URL           OpenAI-compatible endpoint (empty = OpenAI)
    MEDGUIDE_MODEL              chat model name for the OpenAI gateway
    MEDGUIDE_HF_MODEL           HuggingFace model id for the local gateway
    MEDGUIDE_HF_4BIT            '1'/'true' to load in 4-bit (default true)
    MEDGUIDE_HF_DEVICE          'cuda' (default) or 'cpu'
    MEDGUIDE_STORE_PATH         JSON file for session snapshots
    MEDGUIDE_RESPONSE_LANGUAGE  language the model must write in (optional)
    MEDGUIDE_LOG_LEVEL          logging level name (default INFO)
    MEDGUIDE_SECRET_KEY         Flask secret key
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import find_dotenv, load_dotenv

GATEWAY_OPENAI = "openai"
GATEWAY_HUGGINGFACE = "huggingface"
VALID_GATEWAYS = {GATEWAY_OPENAI, GATEWAY_HUGGINGFACE}

TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in TRUE_VALUES


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


@dataclass(frozen=True)
class Settings:
    gateway: str = GATEWAY_OPENAI
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    model: str = "gpt-4o-mini"
    hf_model: str = "mistralai/Mistral-7B-Instruct-v0.2"
    hf_load_in_4bit: bool = True
    hf_device: str = "cuda"
    store_path: str = "data/sessions.json"
    response_language: Optional[str] = None
    log_level: str = "INFO"
    secret_key: str = "dev-secret-key-change-in-production"

    def __post_init__(self):
        if self.gateway not in VALID_GATEWAYS:
            raise ValueError(
                f"Unknown gateway '{self.gateway}'. Expected one of {sorted(VALID_GATEWAYS)}"
            )

    @staticmethod
    def from_env(dotenv: bool = True) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            dotenv: Load a .env file first (existing variables win)

        Raises:
            ValueError: If MEDGUIDE_GATEWAY names an unknown gateway
        """
        if dotenv:
            load_dotenv(find_dotenv(usecwd=True))

        defaults = Settings()
        return Settings(
            gateway=(_env_optional("MEDGUIDE_GATEWAY") or defaults.gateway).lower(),
            api_key=(
                _env_optional("MEDGUIDE_API_KEY")
                or _env_optional("OPENAI_API_KEY")
                or _env_optional("GEMINI_API_KEY")
            ),
            base_url=_env_optional("MEDGUIDE_BASE_URL"),
            model=_env_optional("MEDGUIDE_MODEL") or defaults.model,
            hf_model=_env_optional("MEDGUIDE_HF_MODEL") or defaults.hf_model,
            hf_load_in_4bit=_env_bool("MEDGUIDE_HF_4BIT", defaults.hf_load_in_4bit),
            hf_device=_env_optional("MEDGUIDE_HF_DEVICE") or defaults.hf_device,
            store_path=_env_optional("MEDGUIDE_STORE_PATH") or defaults.store_path,
            response_language=_env_optional("MEDGUIDE_RESPONSE_LANGUAGE"),
            log_level=(_env_optional("MEDGUIDE_LOG_LEVEL") or defaults.log_level).upper(),
            secret_key=_env_optional("MEDGUIDE_SECRET_KEY") or defaults.secret_key
        )
