"""Voice Bridge transcript events — best-text extraction from realtime transcription envelopes."""

TRANSCRIPTION_ITEM_TYPE = 'input_audio_transcription'
TRANSCRIPTION_EVENT_PREFIX = 'conversation.item.input_audio_transcription.'

# Fields whose string value is a transcript candidate
_TEXT_FIELDS = ('transcript', 'text', 'value')
# Fields that are descended into
_NESTED_FIELDS = ('partial', 'delta', 'content', 'item')


def extract_transcript(message):
    """Return the longest distinct text fragment found anywhere in an event. Never raises.

    Upstream envelopes differ between partial/delta/complete events and between
    API versions, so instead of knowing each schema we walk the structure and
    keep the longest candidate (ties go to the one seen last).
    """
    best = ''
    seen = set()
    # Explicit stack (reversed pushes keep depth-first, source-order visiting)
    stack = [message]
    visited = set()

    while stack:
        node = stack.pop()
        if not node:
            continue
        if isinstance(node, str):
            text = node.strip()
            if text and text not in seen:
                seen.add(text)
                if len(text) >= len(best):
                    best = text
            continue
        if isinstance(node, (list, tuple)):
            if id(node) in visited:
                continue
            visited.add(id(node))
            stack.extend(reversed(node))
            continue
        if not isinstance(node, dict):
            continue
        if id(node) in visited:
            continue
        visited.add(id(node))

        children = []
        for field in _TEXT_FIELDS:
            value = node.get(field)
            if isinstance(value, str):
                children.append(value)
        for field in _NESTED_FIELDS:
            if field in node:
                children.append(node[field])
        items = node.get('items')
        if isinstance(items, list):
            children.extend(items)
        stack.extend(reversed(children))

    return best


def _item_stage(item, default):
    stage = item.get('status') or item.get('state') or default
    return stage if isinstance(stage, str) else default


def _transcription_items(items, default_stage):
    """Yield (text, stage) for transcription-typed entries of a list."""
    for item in items:
        if isinstance(item, dict) and item.get('type') == TRANSCRIPTION_ITEM_TYPE:
            yield extract_transcript(item), _item_stage(item, default_stage)


def iter_transcript_payloads(message):
    """Interpret one realtime envelope as zero or more (text, stage_hint) payloads.

    Unknown envelope types yield nothing; the caller decides what else to do
    with them (e.g. log ``error`` events).
    """
    if not isinstance(message, dict):
        return
    msg_type = message.get('type')
    if not isinstance(msg_type, str) or not msg_type:
        return

    if msg_type.startswith(TRANSCRIPTION_EVENT_PREFIX):
        yield extract_transcript(message), msg_type.split('.')[-1]
        return

    if msg_type in ('conversation.item.created', 'conversation.item.updated'):
        default = 'updated' if msg_type == 'conversation.item.updated' else 'created'
        items = []
        if message.get('item'):
            items.append(message['item'])
        if isinstance(message.get('items'), list):
            items.extend(message['items'])
        yield from _transcription_items(items, default)
        return

    if msg_type == 'conversation.item.delta':
        delta = message.get('delta')
        if not isinstance(delta, dict):
            return
        if delta.get('type') == TRANSCRIPTION_ITEM_TYPE:
            yield extract_transcript(delta), _item_stage(delta, 'delta')
        elif isinstance(delta.get('items'), list):
            yield from _transcription_items(delta['items'], 'delta')
        return

    if msg_type in ('response.output_text.delta', 'response.delta'):
        transcript = extract_transcript(message)
        if transcript:
            yield transcript, 'delta'
            return
        delta = message.get('delta')
        if isinstance(delta, dict) and isinstance(delta.get('items'), list):
            yield from _transcription_items(delta['items'], 'delta')


def describe_error(message):
    """Human-readable text for an ``error`` envelope."""
    error = message.get('error') if isinstance(message, dict) else None
    if isinstance(error, dict):
        return error.get('message') or error.get('code') or 'unknown error'
    if isinstance(error, str) and error:
        return error
    return 'unknown error'
