"""Voice Bridge agent — turn-taking conversation loop over a pluggable LLM backend."""

import json

from conversation import Conversation, create_function_call, create_function_call_output
from logging_utils import log_debug, log_info, log_error, should_log_transcripts
from workers import SerialWorker


class TurnLoop:
    """
    Serializes finalized utterances into one-at-a-time model turns.

    States: IDLE -> PROCESSING -> IDLE. Utterances queue FIFO behind the turn
    in flight, so history order always matches speech order. A failed turn is
    logged and dropped; the next utterance still runs.

    Sinks:
        speak(text): hands assistant text to TTS
        broadcast(role, text): relays text to any other listener (console, UI)
    """

    def __init__(self, backend, tool_router, conversation=None, speak=None, broadcast=None,
                 max_tool_iterations=3, max_history_items=20, system_prompt=None,
                 silence_sentinels=()):
        if not callable(getattr(backend, 'generate', None)):
            raise TypeError("backend must provide generate(conversation, tools)")
        if tool_router is not None and not callable(getattr(tool_router, 'route_tool_call', None)):
            raise TypeError("tool_router must provide route_tool_call(call, context)")
        self.backend = backend
        self.tool_router = tool_router
        self.conversation = conversation or Conversation(max_history_items, system_prompt)
        self.speak = speak
        self.broadcast = broadcast
        self.max_tool_iterations = max_tool_iterations
        self.silence_sentinels = {s.strip().lower() for s in silence_sentinels if s.strip()}
        self.tools = tool_router.tool_definitions() if tool_router is not None else []
        self._worker = SerialWorker("agent", self._process)

    @classmethod
    def from_config(cls, config, backend, tool_router, speak=None, broadcast=None):
        return cls(
            backend,
            tool_router,
            speak=speak,
            broadcast=broadcast,
            max_tool_iterations=config['max_tool_iterations'],
            max_history_items=config['max_history_items'],
            system_prompt=config['system_prompt'],
            silence_sentinels=config['silence_sentinels'],
        )

    def enqueue_utterance(self, utterance):
        self._worker.submit(utterance)

    def shutdown(self):
        self._worker.stop()

    def _process(self, utterance):
        try:
            self.run_turn(utterance)
        except Exception as e:
            log_error(f"[AGENT] Turn failed: {e}")

    def is_silence(self, text):
        return text.strip().lower() in self.silence_sentinels

    def run_turn(self, utterance):
        """Run one full model/tool cycle for an utterance. Backend and router errors propagate."""
        text = (utterance.text or '').strip()
        if not text:
            return

        if should_log_transcripts():
            log_info(f"[AGENT] -> LLM: {text}")
        self.conversation.add_message('user', text)

        iteration = 0
        pending_calls = False
        while iteration < self.max_tool_iterations:
            text_outputs, tool_calls = self.backend.generate(self.conversation.snapshot(), self.tools)

            for output in text_outputs:
                self.conversation.add_message('assistant', output)
                if self.is_silence(output):
                    log_debug(f"[AGENT] Silence marker suppressed: {output.strip()}")
                    continue
                log_info(f"[assistant] {output}")
                self._emit(output)

            if not tool_calls:
                pending_calls = False
                break

            pending_calls = True
            context = {
                'user_text': text,
                'timestamp': utterance.timestamp,
                'conversation_size': len(self.conversation),
                'speak': self.speak,
                'broadcast': self.broadcast,
            }
            for call in tool_calls:
                self.conversation.add(create_function_call(call['call_id'], call['name'], call['arguments']))
                result = self._route(call, context)
                self.conversation.add(create_function_call_output(result['call_id'], result['output']))
                log_info(f"[tool:{call['name']}] {result['output']}")

            iteration += 1

        if pending_calls and iteration >= self.max_tool_iterations:
            log_error(f"[AGENT] Tool loop limit reached ({self.max_tool_iterations} iterations)")

    def _route(self, call, context):
        if self.tool_router is None:
            return {'call_id': call['call_id'],
                    'output': json.dumps({'error': 'No tool router configured'})}
        try:
            result = self.tool_router.route_tool_call(call, context)
        except Exception as e:
            log_error(f"[AGENT] Tool {call.get('name')} failed: {e}")
            result = {'call_id': call['call_id'], 'output': json.dumps({'error': str(e)}, ensure_ascii=False)}
        # Output always answers the call it came from
        return {'call_id': call['call_id'], 'output': result.get('output', '')}

    def _emit(self, text):
        for sink, args in ((self.speak, (text,)), (self.broadcast, ('assistant', text))):
            if sink is None:
                continue
            try:
                sink(*args)
            except Exception as e:
                log_error(f"[AGENT] Output sink failed: {e}")
