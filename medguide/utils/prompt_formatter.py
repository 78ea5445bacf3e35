"""
Prompt Formatter - Model-specific formatting of chat conversations

Responsibilities:
- Detect model family from model name
- Render a chat message list with the tokenizer chat template if available
- Fold the system message into the first user turn for templates that
  reject the system role
- Fallback to manual formatting for known families

Design principles:
- Tokenizer template priority (most robust)
- Manual fallback for known families
- Generic role-labelled transcript for unknown models
- Stateless formatting (no side effects)
"""

import logging
from typing import Dict, List

logger = logging.getLogger(__name__)

# (turn template per role, generation prompt) for each known family
MANUAL_FORMATS = {
    "mistral": ({"user": "[INST] {content} [/INST]", "assistant": "{content}</s>"}, ""),
    "llama-2": ({"user": "[INST] {content} [/INST]", "assistant": " {content} </s>"}, ""),
    "llama-3": (
        {
            "user": "<|start_header_id|>user<|end_header_id|>\n\n{content}<|eot_id|>",
            "assistant": "<|start_header_id|>assistant<|end_header_id|>\n\n{content}<|eot_id|>",
        },
        "<|start_header_id|>assistant<|end_header_id|>\n\n",
    ),
    "zephyr": ({"user": "<|user|>\n{content}</s>\n", "assistant": "<|assistant|>\n{content}</s>\n"}, "<|assistant|>\n"),
    "phi": ({"user": "<|user|>\n{content}<|end|>\n", "assistant": "<|assistant|>\n{content}<|end|>\n"}, "<|assistant|>\n"),
}
MANUAL_FORMATS["mixtral"] = MANUAL_FORMATS["mistral"]
MANUAL_FORMATS["llama"] = MANUAL_FORMATS["llama-2"]


class PromptFormatter:
    """Format chat conversations for specific model families"""

    def __init__(self, model_name: str, tokenizer=None):
        """
        Initialize formatter

        Args:
            model_name: HuggingFace model identifier
            tokenizer: Optional tokenizer with chat_template attribute
        """
        self.model_name = model_name
        self.tokenizer = tokenizer
        self.model_family = self._detect_model_family(model_name)

        self.has_chat_template = (
            tokenizer is not None and
            hasattr(tokenizer, 'chat_template') and
            tokenizer.chat_template is not None
        )

        if self.has_chat_template:
            logger.info(f"Using tokenizer chat template for {model_name}")
        elif self.model_family in MANUAL_FORMATS:
            logger.info(f"Using manual formatting for {self.model_family} family")
        else:
            logger.warning(
                f"No chat template or known format for {model_name}. "
                f"Using generic role-labelled transcript"
            )

    def _detect_model_family(self, model_name: str) -> str:
        name_lower = model_name.lower()

        # Order matters - most specific first
        if "llama-3" in name_lower or "llama3" in name_lower:
            return "llama-3"
        elif "llama-2" in name_lower or "llama2" in name_lower:
            return "llama-2"
        elif "llama" in name_lower:
            return "llama"
        elif "mixtral" in name_lower:
            return "mixtral"
        elif "mistral" in name_lower:
            return "mistral"
        elif "zephyr" in name_lower:
            return "zephyr"
        elif "phi" in name_lower:
            return "phi"
        else:
            return "generic"

    def format_messages(self, messages: List[Dict[str, str]]) -> str:
        """
        Render a conversation as a single generation prompt

        Priority:
        1. Tokenizer chat template (if available)
        2. Manual formatting for known family
        3. Generic role-labelled transcript

        Args:
            messages: [{'role': ..., 'content': str}, ...] text-only messages

        Returns:
            str: Prompt ready for tokenization, ending at the assistant turn
        """
        if self.has_chat_template:
            try:
                return self.tokenizer.apply_chat_template(
                    messages, tokenize=False, add_generation_prompt=True
                )
            except Exception as e:
                # Several templates (Mistral) raise on a system role
                logger.debug(f"Chat template rejected conversation ({e}), folding system message")
                try:
                    return self.tokenizer.apply_chat_template(
                        fold_system_message(messages), tokenize=False, add_generation_prompt=True
                    )
                except Exception as e:
                    logger.warning(
                        f"Tokenizer chat template failed: {e}. "
                        f"Falling back to manual formatting"
                    )

        if self.model_family in MANUAL_FORMATS:
            turn_templates, generation_prompt = MANUAL_FORMATS[self.model_family]
            rendered = [
                turn_templates[m['role']].format(content=m['content'])
                for m in fold_system_message(messages)
            ]
            prefix = "<|begin_of_text|>" if self.model_family == "llama-3" else ""
            return prefix + "".join(rendered) + generation_prompt

        lines = [f"{m['role'].upper()}: {m['content']}" for m in messages]
        return "\n\n".join(lines) + "\n\nASSISTANT:"

    def get_info(self) -> dict:
        return {
            "model_name": self.model_name,
            "model_family": self.model_family,
            "has_chat_template": self.has_chat_template,
            "formatting_method": (
                "tokenizer_template" if self.has_chat_template
                else "manual" if self.model_family in MANUAL_FORMATS
                else "none"
            )
        }


def fold_system_message(messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
    """
    Merge system messages into the first user message.

    Also merges consecutive same-role turns, which strict templates reject.
    """
    system_text = "\n\n".join(m['content'] for m in messages if m['role'] == 'system')
    folded: List[Dict[str, str]] = []

    for message in messages:
        if message['role'] == 'system':
            continue
        if folded and folded[-1]['role'] == message['role']:
            folded[-1] = {
                'role': message['role'],
                'content': folded[-1]['content'] + "\n\n" + message['content']
            }
        else:
            folded.append({'role': message['role'], 'content': message['content']})

    if system_text:
        if folded and folded[0]['role'] == 'user':
            folded[0] = {'role': 'user', 'content': system_text + "\n\n" + folded[0]['content']}
        else:
            folded.insert(0, {'role': 'user', 'content': system_text})

    return folded
