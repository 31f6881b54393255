"""Voice Bridge conversation history — responses-style items with bounded pruning."""

from logging_utils import log_debug


def create_message(role, text):
    content_type = 'output_text' if role == 'assistant' else 'input_text'
    return {
        'type': 'message',
        'role': role,
        'content': [{'type': content_type, 'text': text}],
    }


def create_function_call(call_id, name, arguments):
    return {'type': 'function_call', 'call_id': call_id, 'name': name, 'arguments': arguments}


def create_function_call_output(call_id, output):
    return {'type': 'function_call_output', 'call_id': call_id, 'output': output}


def message_text(item):
    """Concatenated text parts of a message item ('' for other item types)."""
    content = item.get('content')
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ''
    return ''.join(part.get('text', '') for part in content if isinstance(part, dict))


def is_system(item):
    return item.get('role') == 'system'


class Conversation:
    """
    Ordered conversation items, pruned to ``max_items`` non-system items.

    System items are always kept. When the retained tail would start with a
    function_call_output whose function_call was cut off, the window is
    extended backwards to keep the pair together.
    """

    def __init__(self, max_items=20, system_prompt=None):
        self.max_items = max_items
        self.items = []
        if system_prompt:
            self.add(create_message('system', system_prompt))

    def __len__(self):
        return len(self.items)

    def __iter__(self):
        return iter(self.items)

    def add(self, item):
        self.items.append(item)
        self.prune()

    def add_message(self, role, text):
        self.add(create_message(role, text))

    def snapshot(self):
        """Shallow copy for handing to a backend."""
        return list(self.items)

    def prune(self):
        if len(self.items) <= self.max_items:
            return
        system_items = [item for item in self.items if is_system(item)]
        others = [item for item in self.items if not is_system(item)]
        if len(others) <= self.max_items:
            return
        start = _pair_safe_start(others, len(others) - self.max_items)
        dropped = start
        self.items = system_items + others[start:]
        log_debug(f"[HISTORY] Pruned {dropped} item(s), {len(self.items)} kept")


def _pair_safe_start(items, start):
    """Move ``start`` back until no retained output refers to a dropped call."""
    while start > 0:
        kept_calls = {item.get('call_id') for item in items[start:] if item.get('type') == 'function_call'}
        orphan_ids = {
            item.get('call_id') for item in items[start:]
            if item.get('type') == 'function_call_output' and item.get('call_id') not in kept_calls
        }
        if not orphan_ids:
            return start
        # Earliest dropped call that a retained output still needs
        needed = [
            i for i in range(start)
            if items[i].get('type') == 'function_call' and items[i].get('call_id') in orphan_ids
        ]
        if not needed:
            return start  # outputs with no call anywhere; nothing to extend to
        start = min(needed)
    return start
