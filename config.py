"""Voice Bridge configuration loader."""

import os
import configparser

from dotenv import load_dotenv

_BASE_DIR = os.path.dirname(os.path.abspath(__file__))
_CONFIG_FILE = os.path.join(_BASE_DIR, "settings.conf")

DEFAULT_SYSTEM_PROMPT = (
    "You are a proactive Japanese voice assistant.\n"
    "- Summaries should be concise.\n"
    "- When a custom tool is required, choose it and explain the action in Japanese."
)

TRANSCRIPTION_INSTRUCTIONS = (
    "You are a Japanese transcription assistant. Transcribe exactly what the user says "
    "in Japanese. Never output Korean characters. Always use Japanese (hiragana, katakana, "
    "or kanji) for transcription."
)

# Environment variables that override settings.conf values: env name -> (section, option)
_ENV_OVERRIDES = {
    'OPENAI_MODEL': ('agent', 'openai_model'),
    'GROQ_MODEL': ('agent', 'groq_model'),
    'VOICE_AGENT_LLM_PROVIDER': ('agent', 'provider'),
    'VOICE_AGENT_TOOL_LOOP_MAX': ('agent', 'max_tool_iterations'),
    'VOICE_AGENT_HISTORY_LIMIT': ('agent', 'max_history_items'),
    'VOICE_AGENT_SYSTEM_PROMPT': ('agent', 'system_prompt'),
    'VOICE_AGENT_AUDIO_PREFILL_MS': ('playback', 'prefill_ms'),
}


class ConfigError(Exception):
    """Raised when required configuration (credentials, values) is missing or invalid."""


def load_config(path=None):
    """Load configuration from .env, settings.conf and the environment. Returns a dict."""
    load_dotenv(os.path.join(_BASE_DIR, ".env"))
    load_dotenv()  # cwd .env, never overrides what is already set

    config = configparser.ConfigParser(interpolation=None)
    config.optionxform = str  # Preserve case (default lowercases keys)

    # Defaults
    defaults = {
        'realtime': {
            'model': 'gpt-4o-realtime-preview',
            'transcription_model': 'whisper-1',
            'language': '',
            'vad_threshold': '0.5',
            'vad_prefix_padding_ms': '300',
            'vad_silence_duration_ms': '200',
        },
        'audio': {
            'device': '',
            'chunk_ms': '40',
        },
        'playback': {
            'prefill_ms': '100',
            'idle_timeout_ms': '250',
            'device': '',
        },
        'agent': {
            'enabled': 'true',
            'provider': 'openai',
            'openai_model': 'gpt-5-mini',
            'groq_model': 'openai/gpt-oss-20b',
            'max_tool_iterations': '3',
            'max_history_items': '20',
            'system_prompt': '',
            'silence_sentinels': '(silence),[silence],<silence>,NO_RESPONSE,(無言),（無言）',
        },
        'tts': {
            'enabled': 'true',
            'model': 'gpt-4o-mini-tts',
            'voice': 'alloy',
            'instructions': '',
            'max_segment_chars': '200',
            'target_segment_chars': '80',
            'min_segment_chars': '10',
        },
        'session': {
            'detect_timeout_seconds': '180',
            'transcript_timeout_seconds': '300',
            'target_refresh_seconds': '5',
        },
        'dispatch': {
            'command': '',
            'timeout_seconds': '10',
        },
        'behavior': {
            'debug_mode': 'false',
            'tray_enabled': 'true',
            'log_transcripts': 'true',
        },
    }

    for section, values in defaults.items():
        config[section] = values

    config_file = path or _CONFIG_FILE
    if os.path.exists(config_file):
        config.read(config_file, encoding='utf-8')

    for env_name, (section, option) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is not None and value.strip():
            config[section][option] = value.strip()

    # Build result dict with typed values
    result = {
        # Paths
        'base_dir': _BASE_DIR,
        'icon_dir': os.path.join(_BASE_DIR, "icons"),

        # Credentials (environment only, never in settings.conf)
        'openai_api_key': os.environ.get('OPENAI_API_KEY', '').strip(),
        'groq_api_key': os.environ.get('GROQ_API_KEY', '').strip(),

        # Realtime transcription
        'realtime_model': config.get('realtime', 'model').strip(),
        'transcription_model': config.get('realtime', 'transcription_model').strip(),
        'transcription_language': config.get('realtime', 'language').strip(),
        'transcription_instructions': TRANSCRIPTION_INSTRUCTIONS,
        'vad_threshold': config.getfloat('realtime', 'vad_threshold'),
        'vad_prefix_padding_ms': config.getint('realtime', 'vad_prefix_padding_ms'),
        'vad_silence_duration_ms': config.getint('realtime', 'vad_silence_duration_ms'),

        # Audio capture
        'sample_rate': 24000,
        'chunk_size': 24 * config.getint('audio', 'chunk_ms'),  # samples per chunk @24kHz
        'audio_device': config.get('audio', 'device').strip(),

        # Playback
        'prefill_ms': max(0, config.getint('playback', 'prefill_ms')),
        'idle_timeout_ms': config.getint('playback', 'idle_timeout_ms'),
        'output_device': config.get('playback', 'device').strip(),

        # Agent
        'agent_enabled': config.getboolean('agent', 'enabled'),
        'llm_provider': config.get('agent', 'provider').strip().lower(),
        'openai_model': config.get('agent', 'openai_model').strip(),
        'groq_model': config.get('agent', 'groq_model').strip(),
        'max_tool_iterations': config.getint('agent', 'max_tool_iterations'),
        'max_history_items': config.getint('agent', 'max_history_items'),
        'system_prompt': config.get('agent', 'system_prompt').strip() or DEFAULT_SYSTEM_PROMPT,
        'silence_sentinels': _split_list(config.get('agent', 'silence_sentinels')),

        # TTS
        'tts_enabled': config.getboolean('tts', 'enabled'),
        'tts_model': config.get('tts', 'model').strip(),
        'tts_voice': config.get('tts', 'voice').strip(),
        'tts_instructions': config.get('tts', 'instructions').strip() or None,
        'max_segment_chars': config.getint('tts', 'max_segment_chars'),
        'target_segment_chars': config.getint('tts', 'target_segment_chars'),
        'min_segment_chars': config.getint('tts', 'min_segment_chars'),

        # Session mode
        'detect_timeout': config.getfloat('session', 'detect_timeout_seconds'),
        'transcript_timeout': config.getfloat('session', 'transcript_timeout_seconds'),
        'target_refresh_interval': config.getfloat('session', 'target_refresh_seconds'),

        # Dispatch sink
        'dispatch_command': config.get('dispatch', 'command').strip(),
        'dispatch_timeout': config.getfloat('dispatch', 'timeout_seconds'),

        # Behavior
        'debug': config.getboolean('behavior', 'debug_mode'),
        'debug_mic': False,
        'tray_enabled': config.getboolean('behavior', 'tray_enabled'),
        'log_transcripts': config.getboolean('behavior', 'log_transcripts'),
    }

    if result['dispatch_command'] and not os.path.isabs(result['dispatch_command']):
        candidate = os.path.join(_BASE_DIR, result['dispatch_command'])
        if os.path.exists(candidate):
            result['dispatch_command'] = candidate

    return result


def validate_config(config):
    """Fail fast on missing credentials or nonsensical limits. Raises ConfigError."""
    if not config.get('openai_api_key'):
        raise ConfigError("OPENAI_API_KEY is not set (.env or environment)")
    if config.get('agent_enabled') and config.get('llm_provider') == 'groq' and not config.get('groq_api_key'):
        raise ConfigError("GROQ_API_KEY is not set but VOICE_AGENT_LLM_PROVIDER=groq")
    if config.get('llm_provider') not in ('openai', 'groq'):
        raise ConfigError(f"Unknown LLM provider '{config.get('llm_provider')}' (expected openai or groq)")
    if config.get('max_tool_iterations', 0) < 1:
        raise ConfigError("max_tool_iterations must be >= 1")
    if config.get('max_history_items', 0) < 1:
        raise ConfigError("max_history_items must be >= 1")


def _split_list(value):
    """Split a comma-separated config value into a list of non-empty stripped strings."""
    return [item.strip() for item in value.split(',') if item.strip()]
