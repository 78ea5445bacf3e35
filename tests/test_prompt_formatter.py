"""
Test Prompt Formatter and the local HuggingFace gateway plumbing

No model is loaded: tokenizers are mocked and the gateway's generate()
is replaced per test.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from medguide.contracts import ChatMessage, ImagePart, TextPart
from medguide.errors import DecodeError, GatewayError
from medguide.utils import hf_client
from medguide.utils.hf_client import HuggingFaceGateway, load_model, to_text_messages
from medguide.utils.prompt_formatter import PromptFormatter, fold_system_message


CONVERSATION = [
    {'role': 'system', 'content': 'Output JSON.'},
    {'role': 'user', 'content': 'Start.'},
    {'role': 'assistant', 'content': '{"readyForRecord": true}'},
    {'role': 'user', 'content': 'Summarize.'},
]


# ========================
# Mock tokenizers
# ========================

class MockTemplateTokenizer:
    """Tokenizer with a chat template that accepts every role"""
    chat_template = "{{ messages }}"

    def __init__(self):
        self.received = []

    def apply_chat_template(self, messages, tokenize=False, add_generation_prompt=True):
        self.received.append(messages)
        return "|".join(f"{m['role']}:{m['content']}" for m in messages) + "|assistant:"


class MockStrictTokenizer(MockTemplateTokenizer):
    """Mistral-like template that rejects the system role"""

    def apply_chat_template(self, messages, tokenize=False, add_generation_prompt=True):
        if any(m['role'] == 'system' for m in messages):
            raise ValueError("Conversation roles must alternate user/assistant/user/assistant/...")
        return super().apply_chat_template(messages, tokenize, add_generation_prompt)


class MockBrokenTokenizer:
    chat_template = "{{ broken }}"

    def apply_chat_template(self, messages, tokenize=False, add_generation_prompt=True):
        raise RuntimeError("template error")


# ========================
# PromptFormatter
# ========================

def test_model_family_detection():
    """Test family detection, most specific first"""
    cases = {
        "meta-llama/Meta-Llama-3-8B-Instruct": "llama-3",
        "meta-llama/Llama-2-7b-chat-hf": "llama-2",
        "mistralai/Mistral-7B-Instruct-v0.2": "mistral",
        "mistralai/Mixtral-8x7B-Instruct-v0.1": "mixtral",
        "HuggingFaceH4/zephyr-7b-beta": "zephyr",
        "microsoft/Phi-3-mini-4k-instruct": "phi",
        "some/unknown-model": "generic",
    }
    for model_name, family in cases.items():
        assert PromptFormatter(model_name).model_family == family, model_name

    print("✓ Model family detection test passed")


def test_chat_template_used_when_available():
    tokenizer = MockTemplateTokenizer()
    formatter = PromptFormatter("some/model", tokenizer)

    prompt = formatter.format_messages(CONVERSATION)

    assert prompt.startswith("system:Output JSON.|user:Start.")
    assert formatter.get_info()['formatting_method'] == "tokenizer_template"


def test_strict_template_gets_folded_system_message():
    """Test system role is folded into first user turn when the template rejects it"""
    tokenizer = MockStrictTokenizer()
    formatter = PromptFormatter("mistralai/Mistral-7B-Instruct-v0.2", tokenizer)

    prompt = formatter.format_messages(CONVERSATION)

    assert prompt.startswith("user:Output JSON.\n\nStart.|assistant:")
    assert all(m['role'] != 'system' for m in tokenizer.received[-1])

    print("✓ Strict template folding test passed")


def test_broken_template_falls_back_to_manual():
    formatter = PromptFormatter("mistralai/Mistral-7B-Instruct-v0.2", MockBrokenTokenizer())

    prompt = formatter.format_messages(CONVERSATION)

    assert prompt.startswith("[INST] Output JSON.\n\nStart. [/INST]")
    assert prompt.endswith("[INST] Summarize. [/INST]")


def test_manual_llama3_format():
    formatter = PromptFormatter("meta-llama/Meta-Llama-3-8B-Instruct")

    prompt = formatter.format_messages(CONVERSATION)

    assert prompt.startswith("<|begin_of_text|><|start_header_id|>user<|end_header_id|>")
    assert prompt.endswith("<|start_header_id|>assistant<|end_header_id|>\n\n")
    assert formatter.get_info()['formatting_method'] == "manual"


def test_generic_transcript_for_unknown_model():
    formatter = PromptFormatter("some/unknown-model")

    prompt = formatter.format_messages(CONVERSATION)

    assert prompt.startswith("SYSTEM: Output JSON.")
    assert prompt.endswith("ASSISTANT:")
    assert formatter.get_info()['formatting_method'] == "none"


def test_fold_merges_consecutive_roles():
    """Test consecutive same-role turns are merged"""
    folded = fold_system_message([
        {'role': 'system', 'content': 'S'},
        {'role': 'user', 'content': 'U1'},
        {'role': 'assistant', 'content': 'A1'},
        {'role': 'assistant', 'content': 'A2'},
        {'role': 'user', 'content': 'U2'},
    ])

    assert folded == [
        {'role': 'user', 'content': 'S\n\nU1'},
        {'role': 'assistant', 'content': 'A1\n\nA2'},
        {'role': 'user', 'content': 'U2'},
    ]


# ========================
# HuggingFaceGateway (no model load)
# ========================

def make_local_gateway(output):
    """Build a gateway without loading weights; generate() returns output"""
    gateway = HuggingFaceGateway.__new__(HuggingFaceGateway)
    gateway.model_name = "some/unknown-model"
    gateway.formatter = PromptFormatter(gateway.model_name)
    gateway.prompts = []

    def fake_generate(prompt):
        gateway.prompts.append(prompt)
        if isinstance(output, Exception):
            raise output
        return output

    gateway.generate = fake_generate
    return gateway


def test_to_text_messages_replaces_images():
    """Test image parts become numbered text markers"""
    messages = [
        ChatMessage(role="user", content="plain"),
        ChatMessage(role="user", content=(
            TextPart(text="Instruction"),
            ImagePart(data="AAAA"),
            ImagePart(data="BBBB"),
        )),
    ]

    flattened = to_text_messages(messages)

    assert flattened[0] == {'role': 'user', 'content': 'plain'}
    assert flattened[1]['content'].startswith("Instruction\n[Image attachment 1")
    assert "[Image attachment 2" in flattened[1]['content']
    assert "AAAA" not in flattened[1]['content']

    print("✓ Image marker test passed")


def test_local_complete_repairs_fenced_json():
    gateway = make_local_gateway('```json\n{"readyForRecord": true}\n```')

    value = gateway.complete([ChatMessage(role="user", content="Go")])

    assert value == {"readyForRecord": True}
    assert gateway.prompts[0].endswith("ASSISTANT:")


def test_local_complete_invalid_output():
    gateway = make_local_gateway("I cannot answer that.")

    with pytest.raises(DecodeError) as excinfo:
        gateway.complete([ChatMessage(role="user", content="Go")])

    assert excinfo.value.kind == DecodeError.INVALID_JSON


def test_local_generation_failure_is_gateway_error():
    gateway = make_local_gateway(RuntimeError("device-side assert triggered"))

    with pytest.raises(GatewayError, match="generation failed"):
        gateway.complete([ChatMessage(role="user", content="Go")])


# ========================
# load_model (patched transformers)
# ========================

class MockPretrainedTokenizer:
    pad_token = None
    eos_token = "</s>"


class MockPretrainedModel:
    def __init__(self):
        self.eval_called = False

    def eval(self):
        self.eval_called = True
        return self


def test_load_model_on_cpu(monkeypatch):
    """Test CPU load skips quantization and pads with EOS"""
    loaded = {}

    class FakeAutoTokenizer:
        @staticmethod
        def from_pretrained(name):
            loaded['tokenizer'] = name
            return MockPretrainedTokenizer()

    class FakeAutoModel:
        @staticmethod
        def from_pretrained(name, **kwargs):
            loaded['model_kwargs'] = kwargs
            return MockPretrainedModel()

    monkeypatch.setattr(hf_client, "AutoTokenizer", FakeAutoTokenizer)
    monkeypatch.setattr(hf_client, "AutoModelForCausalLM", FakeAutoModel)

    tokenizer, model = load_model("some/model", load_in_4bit=True, device="cpu")

    assert loaded['tokenizer'] == "some/model"
    assert loaded['model_kwargs']['quantization_config'] is None
    assert loaded['model_kwargs']['device_map'] is None
    assert tokenizer.pad_token == "</s>"
    assert model.eval_called is True

    print("✓ Local model load test passed")


def test_load_model_requires_cuda(monkeypatch):
    monkeypatch.setattr(hf_client.torch.cuda, "is_available", lambda: False)

    with pytest.raises(RuntimeError, match="CUDA requested"):
        load_model("some/model", load_in_4bit=True, device="cuda")
