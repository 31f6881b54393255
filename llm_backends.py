"""Voice Bridge LLM backends — pluggable (conversation, tools) -> (text_outputs, tool_calls)."""

import json
import time

import httpx
from openai import OpenAI

from conversation import message_text
from logging_utils import log_debug

GROQ_CHAT_URL = 'https://api.groq.com/openai/v1/chat/completions'


def _get(obj, name, default=None):
    """Field access for both SDK model objects and plain dicts."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _fallback_call_id():
    return f"call_{int(time.time() * 1000)}"


def _arguments_string(args):
    if isinstance(args, (dict, list)):
        return json.dumps(args, ensure_ascii=False)
    if isinstance(args, str):
        return args
    return '{}'


class LLMBackend:
    """Interface: generate(conversation, tools) -> (text_outputs, tool_calls).

    tool_calls are dicts with call_id, name and arguments (JSON string).
    Errors propagate; the turn loop decides what a failure means.
    """

    name = 'base'

    def generate(self, conversation, tools):
        raise NotImplementedError


class OpenAIResponsesBackend(LLMBackend):
    """Single-call responses API; the conversation items are already in its input shape."""

    name = 'openai'

    def __init__(self, client, model):
        self.client = client
        self.model = model

    def generate(self, conversation, tools):
        request = {
            'model': self.model,
            'input': conversation,
            'parallel_tool_calls': False,
        }
        if tools:
            request['tools'] = tools
            request['tool_choice'] = 'auto'
        log_debug(f"[LLM] responses.create model={self.model} items={len(conversation)}")
        response = self.client.responses.create(**request)
        return dissect_responses_output(response)


def dissect_responses_output(response):
    text_outputs = []
    tool_calls = []
    for item in _get(response, 'output') or []:
        item_type = _get(item, 'type')
        if item_type == 'message':
            parts = [
                _get(part, 'text') for part in (_get(item, 'content') or [])
                if part is not None and _get(part, 'type') == 'output_text' and _get(part, 'text')
            ]
            if parts:
                text_outputs.append(''.join(parts))
        elif item_type == 'function_call':
            tool_calls.append({
                'call_id': _get(item, 'call_id'),
                'name': _get(item, 'name'),
                'arguments': _arguments_string(_get(item, 'arguments')),
            })
    return text_outputs, tool_calls


class GroqChatBackend(LLMBackend):
    """Chat-completions API with function calling, reached over plain HTTPS."""

    name = 'groq'

    def __init__(self, api_key, model, http_client=None, timeout=60.0):
        if not api_key:
            raise ValueError("GROQ_API_KEY is not set")
        self.api_key = api_key
        self.model = model
        self.http = http_client or httpx.Client(timeout=timeout)

    def generate(self, conversation, tools):
        body = {
            'model': self.model,
            'messages': conversation_to_chat_messages(conversation),
        }
        if tools:
            body['tools'] = [_chat_tool(tool) for tool in tools]
            body['tool_choice'] = 'auto'
        log_debug(f"[LLM] chat.completions model={self.model} messages={len(body['messages'])}")
        response = self.http.post(
            GROQ_CHAT_URL,
            headers={'Authorization': f"Bearer {self.api_key}", 'Content-Type': 'application/json'},
            json=body,
        )
        if response.status_code >= 400:
            raise RuntimeError(
                f"Groq API request failed: {response.status_code} {response.reason_phrase} {response.text}".strip()
            )
        return dissect_chat_response(response.json())


def _chat_tool(tool):
    if not tool or tool.get('type') != 'function':
        return tool
    parameters = json.loads(json.dumps(tool.get('parameters') or {}))
    required = set(parameters.get('required') or [])
    # Optional properties must accept null on this API
    for key, schema in (parameters.get('properties') or {}).items():
        if not isinstance(schema, dict) or key in required:
            continue
        current = schema.get('type')
        if isinstance(current, str) and current != 'null':
            schema['type'] = [current, 'null']
        elif isinstance(current, list) and 'null' not in current:
            schema['type'] = current + ['null']
    return {
        'type': 'function',
        'function': {
            'name': tool.get('name'),
            'description': tool.get('description'),
            'parameters': parameters,
        },
    }


def conversation_to_chat_messages(items):
    messages = []
    for item in items:
        if not item:
            continue
        item_type = item.get('type')
        if item_type == 'message':
            messages.append({'role': item.get('role') or 'user', 'content': message_text(item)})
        elif item_type == 'function_call':
            messages.append({
                'role': 'assistant',
                'content': '',
                'tool_calls': [{
                    'id': item.get('call_id') or _fallback_call_id(),
                    'type': 'function',
                    'function': {
                        'name': item.get('name'),
                        'arguments': _arguments_string(item.get('arguments')),
                    },
                }],
            })
        elif item_type == 'function_call_output':
            messages.append({
                'role': 'tool',
                'tool_call_id': item.get('call_id'),
                'content': item.get('output') or '',
            })
    return messages


def dissect_chat_response(response):
    text_outputs = []
    tool_calls = []
    choices = response.get('choices') if isinstance(response, dict) else None
    message = (choices[0].get('message') if choices else None) or {}

    content = message.get('content')
    if isinstance(content, str):
        if content.strip():
            text_outputs.append(content)
    elif isinstance(content, list):
        parts = []
        for entry in content:
            if isinstance(entry, str):
                parts.append(entry)
            elif isinstance(entry, dict) and isinstance(entry.get('text'), str):
                parts.append(entry['text'])
        parts = [part for part in parts if part]
        if parts:
            text_outputs.append(''.join(parts))

    for call in message.get('tool_calls') or []:
        if not call:
            continue
        fn = call.get('function') or {}
        tool_calls.append({
            'call_id': call.get('id') or _fallback_call_id(),
            'name': fn.get('name') or '',
            'arguments': _arguments_string(fn.get('arguments')),
        })

    if not message.get('tool_calls') and message.get('function_call'):
        fn = message['function_call']
        tool_calls.append({
            'call_id': _fallback_call_id(),
            'name': fn.get('name') or '',
            'arguments': _arguments_string(fn.get('arguments')),
        })

    return text_outputs, tool_calls


def create_backend(config, openai_client=None):
    """Backend selected by config['llm_provider'] ('openai' or 'groq')."""
    provider = config.get('llm_provider', 'openai')
    if provider == 'groq':
        return GroqChatBackend(config.get('groq_api_key'), config['groq_model'])
    if provider == 'openai':
        client = openai_client or OpenAI(api_key=config.get('openai_api_key'))
        return OpenAIResponsesBackend(client, config['openai_model'])
    raise ValueError(f"Unknown LLM provider: {provider}")
