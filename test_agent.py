"""Tests for conversation pruning, the tool router and the turn-taking loop."""

import json
import threading
import unittest
from unittest import mock

from agent import TurnLoop
from conversation import (
    Conversation, create_function_call, create_function_call_output, create_message,
)
from text_processing import Utterance
from tool_router import ToolRouter, create_default_router


class FakeBackend:
    """Replays scripted (text_outputs, tool_calls) results and records each snapshot."""

    name = 'fake'

    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    def generate(self, conversation, tools):
        self.calls.append((conversation, tools))
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


def _call(call_id, name='echo_text', arguments='{"text": "hi"}'):
    return {'call_id': call_id, 'name': name, 'arguments': arguments}


class TestConversationPruning(unittest.TestCase):
    def test_keeps_system_and_most_recent(self):
        conv = Conversation(max_items=4, system_prompt='sys')
        for role, text in (('user', 'u1'), ('assistant', 'a1'), ('user', 'u2'),
                           ('assistant', 'a2'), ('user', 'u3')):
            conv.add_message(role, text)
        texts = [item['content'][0]['text'] for item in conv]
        self.assertEqual(texts, ['sys', 'a1', 'u2', 'a2', 'u3'])

    def test_call_output_pair_never_split(self):
        conv = Conversation(max_items=3)
        conv.add_message('user', 'u1')
        conv.add(create_function_call('c1', 'echo_text', '{}'))
        conv.add(create_function_call_output('c1', '{}'))
        conv.add_message('assistant', 'a1')
        conv.add_message('user', 'u2')
        types = [item['type'] for item in conv]
        self.assertEqual(types, ['function_call', 'function_call_output', 'message', 'message'])

    def test_message_shapes(self):
        self.assertEqual(create_message('user', 'x')['content'][0]['type'], 'input_text')
        self.assertEqual(create_message('assistant', 'x')['content'][0]['type'], 'output_text')


class TestToolRouter(unittest.TestCase):
    def test_echo_speaks_and_returns_json(self):
        speak = mock.Mock()
        router = create_default_router()
        result = router.route_tool_call(_call('c1', arguments='{"text": "もう一度"}'), {'speak': speak})
        self.assertEqual(result['call_id'], 'c1')
        self.assertEqual(json.loads(result['output']), {'ok': True, 'echoed': 'もう一度'})
        speak.assert_called_once_with('もう一度')

    def test_unknown_tool_is_error_output(self):
        result = create_default_router().route_tool_call(_call('c2', name='rm_rf'), {})
        self.assertIn('error', json.loads(result['output']))

    def test_bad_arguments_are_error_output(self):
        result = create_default_router().route_tool_call(_call('c3', arguments='{not json'), {})
        self.assertIn('error', json.loads(result['output']))

    def test_handler_exception_propagates(self):
        router = ToolRouter()
        router.register('boom', 'fails', {'type': 'object', 'properties': {}}, mock.Mock(side_effect=OSError("x")))
        with self.assertRaises(OSError):
            router.route_tool_call(_call('c4', name='boom', arguments='{}'), {})

    def test_definitions(self):
        defs = create_default_router().tool_definitions()
        self.assertEqual([d['name'] for d in defs], ['echo_text'])
        self.assertEqual(defs[0]['type'], 'function')


class TestTurnLoop(unittest.TestCase):
    def _make_loop(self, results, **kwargs):
        self.spoken = []
        self.backend = FakeBackend(results)
        kwargs.setdefault('speak', self.spoken.append)
        return TurnLoop(self.backend, create_default_router(), **kwargs)

    def test_text_reply_spoken_and_recorded(self):
        loop = self._make_loop([(['晴れです。'], [])])
        loop.run_turn(Utterance('天気は？'))
        self.assertEqual(self.spoken, ['晴れです。'])
        roles = [item['role'] for item in loop.conversation]
        self.assertEqual(roles, ['user', 'assistant'])

    def test_tool_call_then_reply(self):
        loop = self._make_loop([([], [_call('c1')]), (['done'], [])])
        loop.run_turn(Utterance('repeat hi'))
        self.assertEqual(self.spoken, ['hi', 'done'])
        types = [item['type'] for item in loop.conversation]
        self.assertEqual(types, ['message', 'function_call', 'function_call_output', 'message'])
        output = loop.conversation.items[2]
        self.assertEqual(output['call_id'], 'c1')
        # Second request sees the tool output
        self.assertEqual(len(self.backend.calls[1][0]), 3)

    def test_loop_limit_still_answers_every_call(self):
        loop = self._make_loop([([], [_call('c1')])], max_tool_iterations=2)
        loop.run_turn(Utterance('loop'))
        self.assertEqual(len(self.backend.calls), 2)
        calls = [i for i in loop.conversation if i['type'] == 'function_call']
        outputs = [i for i in loop.conversation if i['type'] == 'function_call_output']
        self.assertEqual(len(calls), 2)
        self.assertEqual(len(outputs), 2)

    def test_router_failure_becomes_error_output(self):
        loop = self._make_loop([([], [_call('c9')]), (['ok'], [])])
        loop.tool_router = mock.Mock()
        loop.tool_router.route_tool_call.side_effect = RuntimeError("tool crashed")
        loop.run_turn(Utterance('x'))
        output = [i for i in loop.conversation if i['type'] == 'function_call_output'][0]
        self.assertEqual(output['call_id'], 'c9')
        self.assertEqual(json.loads(output['output']), {'error': 'tool crashed'})
        self.assertEqual(self.spoken, ['ok'])

    def test_silence_marker_not_spoken(self):
        loop = self._make_loop([(['(silence)'], [])], silence_sentinels=['(silence)'])
        loop.run_turn(Utterance('...'))
        self.assertEqual(self.spoken, [])
        self.assertEqual(len(loop.conversation), 2)

    def test_blank_utterance_ignored(self):
        loop = self._make_loop([(['x'], [])])
        loop.run_turn(Utterance('   '))
        self.assertEqual(self.backend.calls, [])

    def test_backend_failure_is_contained(self):
        loop = self._make_loop([(['x'], [])])
        loop.backend = mock.Mock()
        loop.backend.generate.side_effect = RuntimeError("503")
        loop._process(Utterance('hello'))
        self.assertEqual(self.spoken, [])

    def test_sink_failure_does_not_abort_turn(self):
        loop = self._make_loop([(['a'], [])], speak=mock.Mock(side_effect=RuntimeError("tts down")))
        broadcast = mock.Mock()
        loop.broadcast = broadcast
        loop.run_turn(Utterance('hello'))
        broadcast.assert_called_once_with('assistant', 'a')

    def test_utterances_run_in_order(self):
        seen = []
        done = threading.Event()

        class RecordingBackend(FakeBackend):
            def generate(self, conversation, tools):
                seen.append(conversation[-1]['content'][0]['text'])
                if len(seen) == 3:
                    done.set()
                return [], []

        loop = TurnLoop(RecordingBackend([]), None)
        for text in ('一', '二', '三'):
            loop.enqueue_utterance(Utterance(text))
        self.assertTrue(done.wait(2.0))
        self.assertEqual(seen, ['一', '二', '三'])
        loop.shutdown()

    def test_history_bounded(self):
        loop = self._make_loop([(['a'], [])], max_history_items=4, system_prompt='sys')
        for i in range(5):
            loop.run_turn(Utterance(f'u{i}'))
        non_system = [i for i in loop.conversation if i['role'] != 'system']
        self.assertEqual(len(non_system), 4)
        self.assertEqual(loop.conversation.items[0]['role'], 'system')

    def test_backend_contract_checked(self):
        with self.assertRaises(TypeError):
            TurnLoop(object(), None)


if __name__ == '__main__':
    unittest.main()
