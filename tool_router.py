"""Voice Bridge tool router — tool schemas and dispatch of model function calls."""

import json

from logging_utils import log_debug, log_info


class ToolRouter:
    """
    Registry of callable tools exposed to the language model.

    Handlers are called as ``handler(args_dict, context)`` and return any
    JSON-serializable value. Handler exceptions propagate to the caller.
    """

    def __init__(self):
        self._tools = {}

    def register(self, name, description, parameters, handler):
        self._tools[name] = {
            'definition': {
                'type': 'function',
                'name': name,
                'description': description,
                'strict': False,
                'parameters': parameters,
            },
            'handler': handler,
        }

    def tool_definitions(self):
        return [tool['definition'] for tool in self._tools.values()]

    def route_tool_call(self, call, context):
        """Run one function call. Returns {'call_id', 'output'} with output as a JSON string."""
        call_id = call.get('call_id')
        name = call.get('name')
        tool = self._tools.get(name)
        if tool is None:
            return _output(call_id, {'error': f"Unsupported tool name: {name}"})

        raw_args = call.get('arguments') or '{}'
        try:
            args = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
        except (ValueError, TypeError) as e:
            return _output(call_id, {'error': f"Invalid arguments for {name}: {e}"})
        if not isinstance(args, dict):
            return _output(call_id, {'error': f"Arguments for {name} must be an object"})

        log_debug(f"[TOOL] {name} args={args}")
        result = tool['handler'](args, context)
        return _output(call_id, result)


def _output(call_id, payload):
    return {'call_id': call_id, 'output': json.dumps(payload, ensure_ascii=False)}


def _echo_text(args, context):
    text = str(args.get('text', ''))
    speak = context.get('speak')
    if text and callable(speak):
        speak(text)
    log_info(f"[TOOL] echo_text: {text}")
    result = {'ok': True, 'echoed': text}
    if args.get('correlation_id'):
        result['correlation_id'] = args['correlation_id']
    return result


def create_default_router():
    """Router with the built-in tools."""
    router = ToolRouter()
    router.register(
        'echo_text',
        'Echo the provided text back to the user. Useful for confirming what was heard.',
        {
            'type': 'object',
            'properties': {
                'text': {
                    'type': 'string',
                    'description': 'Text that should be repeated back to the user.',
                },
                'correlation_id': {
                    'type': 'string',
                    'description': 'Optional identifier used to correlate tool calls with external events.',
                },
            },
            'required': ['text'],
            'additionalProperties': False,
        },
        _echo_text,
    )
    return router
