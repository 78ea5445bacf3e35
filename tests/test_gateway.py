"""
Test Model Gateways - decoding, JSON repair, OpenAI-compatible client

No network: the OpenAI SDK client is replaced by a scripted mock.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import httpx
import pytest
from openai import APIConnectionError, APIStatusError

from medguide.contracts import ChatMessage, ImagePart, TextPart
from medguide.errors import DecodeError, GatewayError
from medguide.utils.gateway import ModelGateway, decode_model_content, repair_json_text
from medguide.utils.openai_client import OpenAIGateway


REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat/completions")


# ========================
# Mock OpenAI client
# ========================

class MockMessage:
    def __init__(self, content):
        self.content = content


class MockChoice:
    def __init__(self, content):
        self.message = MockMessage(content)


class MockCompletion:
    def __init__(self, content=None, empty=False):
        self.choices = [] if empty else [MockChoice(content)]


class MockCompletions:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


class MockChat:
    def __init__(self, completions):
        self.completions = completions


class MockOpenAIClient:
    """Exposes client.chat.completions.create like the SDK"""

    def __init__(self, response):
        self.chat = MockChat(MockCompletions(response))

    @property
    def requests(self):
        return self.chat.completions.requests


def make_gateway(response):
    client = MockOpenAIClient(response)
    return OpenAIGateway(model="test-model", client=client), client


MESSAGES = [
    ChatMessage(role="system", content="Output JSON."),
    ChatMessage(role="user", content=(TextPart(text="Look"), ImagePart(data="AAAA", media_type="image/png"))),
]


# ========================
# decode_model_content
# ========================

def test_decode_valid_json():
    assert decode_model_content('{"readyForRecord": true}') == {"readyForRecord": True}


def test_decode_empty_content():
    """Test None and blank content are empty-content failures"""
    for content in (None, "", "   \n"):
        with pytest.raises(DecodeError) as excinfo:
            decode_model_content(content)
        assert excinfo.value.kind == DecodeError.EMPTY

    print("✓ Empty content test passed")


def test_decode_invalid_json_keeps_raw_text():
    """Test non-JSON content preserves raw text for diagnostics"""
    with pytest.raises(DecodeError) as excinfo:
        decode_model_content("Here are your questions: ...")

    error = excinfo.value
    assert error.kind == DecodeError.INVALID_JSON
    assert error.raw_text == "Here are your questions: ..."
    assert error.to_dict()['error_type'] == "decode"
    assert error.details['raw_text'] == "Here are your questions: ..."

    print("✓ Invalid JSON test passed")


# ========================
# repair_json_text
# ========================

def test_repair_strips_code_fences():
    text = '```json\n{"medicalRecord": "x"}\n```'
    assert repair_json_text(text) == '{"medicalRecord": "x"}'


def test_repair_trims_surrounding_prose():
    text = 'Sure! {"readyForRecord": true} Hope this helps.'
    assert repair_json_text(text) == '{"readyForRecord": true}'


def test_repair_closes_truncated_object():
    """Test missing closing braces are appended"""
    text = '{"medicalRecord": "# Observation\\n\\nCough for two weeks."'
    repaired = repair_json_text(text)

    assert repaired.endswith('}')
    assert decode_model_content(repaired) == {"medicalRecord": "# Observation\n\nCough for two weeks."}

    print("✓ Truncated object repair test passed")


def test_repair_without_braces_returns_text():
    assert repair_json_text("no json here") == "no json here"


# ========================
# OpenAIGateway
# ========================

def test_gateway_is_model_gateway():
    gateway, _ = make_gateway(MockCompletion('{}'))
    assert isinstance(gateway, ModelGateway)


def test_openai_request_shape():
    """Test messages and JSON mode are sent in chat-completions format"""
    gateway, client = make_gateway(MockCompletion('{"readyForRecord": true}'))

    value = gateway.complete(MESSAGES)

    assert value == {"readyForRecord": True}
    request = client.requests[0]
    assert request['model'] == "test-model"
    assert request['response_format'] == {'type': 'json_object'}
    assert request['messages'][0] == {'role': 'system', 'content': 'Output JSON.'}
    assert request['messages'][1]['content'] == [
        {'type': 'text', 'text': 'Look'},
        {'type': 'image_url', 'image_url': {'url': 'data:image/png;base64,AAAA'}},
    ]

    print("✓ OpenAI request shape test passed")


def test_openai_without_json_mode():
    gateway, client = make_gateway(MockCompletion('{"a": 1}'))

    gateway.complete(MESSAGES, json_mode=False)

    assert 'response_format' not in client.requests[0]


def test_openai_status_error_maps_to_gateway_error():
    """Test provider status code is carried on GatewayError"""
    response = httpx.Response(503, request=REQUEST)
    error = APIStatusError("Service Unavailable", response=response, body=None)
    gateway, _ = make_gateway(error)

    with pytest.raises(GatewayError) as excinfo:
        gateway.complete(MESSAGES)

    assert excinfo.value.status_code == 503
    assert excinfo.value.details['status_code'] == 503
    assert "AI service error" in excinfo.value.message

    print("✓ Status error mapping test passed")


def test_openai_connection_error_has_no_status():
    gateway, _ = make_gateway(APIConnectionError(request=REQUEST))

    with pytest.raises(GatewayError) as excinfo:
        gateway.complete(MESSAGES)

    assert excinfo.value.status_code is None


def test_openai_empty_content():
    """Test empty message content and missing choices are empty-content failures"""
    for completion in (MockCompletion(None), MockCompletion(""), MockCompletion(empty=True)):
        gateway, _ = make_gateway(completion)
        with pytest.raises(DecodeError) as excinfo:
            gateway.complete(MESSAGES)
        assert excinfo.value.kind == DecodeError.EMPTY


def test_openai_invalid_json():
    gateway, _ = make_gateway(MockCompletion("I think you have a cold."))

    with pytest.raises(DecodeError) as excinfo:
        gateway.complete(MESSAGES)

    assert excinfo.value.kind == DecodeError.INVALID_JSON
    assert excinfo.value.raw_text == "I think you have a cold."
