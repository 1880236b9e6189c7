import os
from dotenv import load_dotenv
from pathlib import Path

load_dotenv()

# credentials: ASSEMBLYAI_API_KEY is read from the environment (or .env) when a session starts

# logging config
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEV").upper()

# file config
BASE_PATH = Path(__file__).parent
LOG_PATH = BASE_PATH / "log"
LOG_PATH.mkdir(exist_ok=True)
OUT_PATH = BASE_PATH / "out"
OUT_PATH.mkdir(exist_ok=True)
VOCAB_PATH = Path(os.getenv("SCRIBE_VOCAB_PATH", str(BASE_PATH / "scribe_data" / "VOCAB.md")))

# AssemblyAI Universal Streaming (v3)
# https://www.assemblyai.com/docs/universal-streaming
ASSEMBLYAI_STT_REALTIME_URL = "wss://streaming.assemblyai.com/v3/ws"
# Wait this long for the websocket handshake before giving up.
ASSEMBLYAI_CONNECT_TIMEOUT_S = 15.0

# audio
AUDIO_SAMPLE_RATE = 16000
AUDIO_CHANNELS = 1
AUDIO_ENCODING = "pcm_s16le"  # or "pcm_mulaw"
# 800 samples @ 16 kHz = 50 ms, which is what the provider recommends per message.
AUDIO_CHUNK_SIZE_SAMPLES = 800

# Turn detection
# With format_turns enabled, a turn only becomes final once the provider sends
# the formatted (punctuated, cased) version of it.
STT_FORMAT_TURNS = True
# Confidence (0..1) needed before the provider ends a turn.
STT_END_OF_TURN_CONFIDENCE_THRESHOLD = 0.4
# Silence needed to end a turn once the provider is confident.
STT_MIN_END_OF_TURN_SILENCE_MS = 250  # milliseconds
# Silence after which the turn ends regardless of confidence.
STT_MAX_TURN_SILENCE_MS = 400  # milliseconds

# Vocabulary hints (keyterms prompt)
STT_MAX_KEYTERMS = 100
STT_MAX_KEYTERM_LENGTH = 50

# Live preview
LISTENING_PLACEHOLDER = "Listening…"
