"""
HuggingFace Gateway - Local model loading and JSON completions

Responsibilities:
- Load model with optional 4-bit quantization (NF4)
- Render chat messages through PromptFormatter
- Generate completions and repair/decode them as JSON
- Map CUDA and generation errors onto the gateway failure contract

Design principles:
- Dependency injection (no singleton)
- Fail fast on critical errors at load time (CUDA unavailable, OOM)
- No retries; a failed generation fails the transition
- Text-only: image parts are replaced with a marker and logged
"""

import logging
import time
from typing import Any, Dict, List, Sequence

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer, BitsAndBytesConfig

from medguide.contracts import ChatMessage, ImagePart, TextPart
from medguide.errors import GatewayError
from medguide.utils.gateway import ModelGateway, decode_model_content, repair_json_text
from medguide.utils.prompt_formatter import PromptFormatter

logger = logging.getLogger(__name__)

DEVICE_CUDA = "cuda"
DEVICE_MAP_AUTO = "auto"

IMAGE_MARKER = "[Image attachment {index} omitted: this model cannot read images]"


class HuggingFaceGateway(ModelGateway):
    """Model Gateway backed by a local HuggingFace causal LM"""

    def __init__(
        self,
        model_name: str,
        load_in_4bit: bool = True,
        device: str = DEVICE_CUDA,
        max_new_tokens: int = 2048,
        temperature: float = 0.2
    ) -> None:
        """
        Args:
            model_name: HuggingFace model identifier
            load_in_4bit: Use 4-bit quantization (CUDA only)
            device: "cuda" or "cpu"
            max_new_tokens: Generation budget per call
            temperature: Sampling temperature (0.0 = greedy)

        Raises:
            RuntimeError: If CUDA requested but not available
        """
        self.model_name = model_name
        self.device = device
        self.max_new_tokens = max_new_tokens
        self.temperature = temperature

        self.tokenizer, self.model = load_model(model_name, load_in_4bit, device)
        self.formatter = PromptFormatter(model_name, self.tokenizer)
        logger.info(f"HuggingFace gateway ready ({self.formatter.get_info()})")

    def is_loaded(self) -> bool:
        return self.model is not None and self.tokenizer is not None

    def complete(self, messages: Sequence[ChatMessage], json_mode: bool = True) -> Any:
        prompt = self.formatter.format_messages(to_text_messages(messages))

        try:
            text = self.generate(prompt)
        except torch.cuda.OutOfMemoryError as e:
            logger.error("CUDA OOM during generation")
            raise GatewayError(f"Local model ran out of GPU memory: {e}")
        except RuntimeError as e:
            logger.error(f"Local generation failed: {e}")
            raise GatewayError(f"Local model generation failed: {e}")

        if json_mode:
            repaired = repair_json_text(text)
            if repaired != text:
                logger.debug("JSON repair applied to model output")
            text = repaired

        return decode_model_content(text)

    def generate(self, prompt: str) -> str:
        """
        Generate a completion for an already-formatted prompt

        Raises:
            RuntimeError: If model not loaded
            torch.cuda.OutOfMemoryError: If GPU runs out of memory
        """
        if not self.is_loaded():
            raise RuntimeError("Model not loaded")

        start_time = time.time()

        inputs = self.tokenizer(prompt, return_tensors="pt")
        if self.device == DEVICE_CUDA:
            inputs = inputs.to(DEVICE_CUDA)
        prompt_tokens = inputs.input_ids.shape[1]

        with torch.no_grad():
            outputs = self.model.generate(
                inputs.input_ids,
                attention_mask=inputs.attention_mask,
                max_new_tokens=self.max_new_tokens,
                temperature=self.temperature if self.temperature > 0 else None,
                do_sample=self.temperature > 0,
                pad_token_id=self.tokenizer.pad_token_id
            )

        generated_ids = outputs[0][prompt_tokens:]
        generated_text = self.tokenizer.decode(generated_ids, skip_special_tokens=True)

        elapsed_ms = (time.time() - start_time) * 1000
        logger.info(
            f"Generated {len(generated_ids)} tokens from {prompt_tokens} prompt tokens "
            f"in {elapsed_ms:.0f}ms"
        )
        return generated_text

    def get_model_info(self) -> Dict[str, Any]:
        info = {
            "model_name": self.model_name,
            "device": self.device,
            "is_loaded": self.is_loaded(),
            "formatter": self.formatter.get_info()
        }
        if self.device == DEVICE_CUDA and torch.cuda.is_available():
            info["gpu_memory_allocated_gb"] = torch.cuda.memory_allocated() / 1e9
        return info


def to_text_messages(messages: Sequence[ChatMessage]) -> List[Dict[str, str]]:
    """
    Flatten ChatMessages to text-only dicts for chat templates.

    Image parts become a numbered marker so the model knows something was
    attached.
    """
    flattened = []
    image_index = 0
    for message in messages:
        if isinstance(message.content, str):
            flattened.append({'role': message.role, 'content': message.content})
            continue

        chunks = []
        for part in message.content:
            if isinstance(part, TextPart):
                chunks.append(part.text)
            elif isinstance(part, ImagePart):
                image_index += 1
                chunks.append(IMAGE_MARKER.format(index=image_index))
        flattened.append({'role': message.role, 'content': "\n".join(chunks)})

    if image_index:
        logger.warning(f"{image_index} image part(s) replaced with text markers for local model")
    return flattened


def load_model(model_name: str, load_in_4bit: bool, device: str):
    """
    Load tokenizer and causal LM for generation.

    4-bit NF4 quantization is only applied on CUDA. The tokenizer's EOS
    token doubles as pad token when it has none, since generate() needs one.

    Returns:
        (tokenizer, model) with the model in eval mode
    """
    on_cuda = device == DEVICE_CUDA
    if on_cuda and not torch.cuda.is_available():
        raise RuntimeError("CUDA requested but not available. Check nvidia-smi.")

    quantization_config = None
    if load_in_4bit and on_cuda:
        quantization_config = BitsAndBytesConfig(
            load_in_4bit=True,
            bnb_4bit_quant_type="nf4",
            bnb_4bit_compute_dtype=torch.bfloat16
        )

    logger.info(f"Loading model: {model_name} (4-bit={quantization_config is not None}, device={device})")

    tokenizer = AutoTokenizer.from_pretrained(model_name)
    if tokenizer.pad_token is None:
        tokenizer.pad_token = tokenizer.eos_token

    model = AutoModelForCausalLM.from_pretrained(
        model_name,
        quantization_config=quantization_config,
        device_map=DEVICE_MAP_AUTO if on_cuda else None,
        torch_dtype=torch.bfloat16 if on_cuda else torch.float32
    )
    model.eval()

    if on_cuda:
        logger.info(f"GPU memory after load: {torch.cuda.memory_allocated() / 1e9:.2f}GB allocated")
    return tokenizer, model
