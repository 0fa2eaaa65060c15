import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.getenv("RECORDER_DATA_DIR", str(BASE_DIR / "data")))
RECORDINGS_DIR = DATA_DIR / "recordings"
DB_PATH = DATA_DIR / "recorder.db"

# Server
HOST = os.getenv("RECORDER_HOST", "127.0.0.1")
PORT = int(os.getenv("RECORDER_PORT", "8787"))
USER_HEADER = os.getenv("RECORDER_USER_HEADER", "X-User-Id")

# Audio
SAMPLE_RATE = 16000
WAV_FLUSH_BYTES = 1024 * 1024
WAV_MAX_PENDING_CHUNKS = 256

# Storage: "local" or "s3"
STORAGE_BACKEND = os.getenv("RECORDER_STORAGE", "local")
S3_BUCKET = os.getenv("S3_BUCKET", "recorder")
S3_ENDPOINT_URL = os.getenv("S3_ENDPOINT_URL", "")
S3_ACCESS_KEY_ID = os.getenv("S3_ACCESS_KEY_ID", "")
S3_SECRET_ACCESS_KEY = os.getenv("S3_SECRET_ACCESS_KEY", "")
S3_REGION = os.getenv("S3_REGION", "auto")
S3_PUBLIC_URL = os.getenv("S3_PUBLIC_URL", "")
S3_SPOOL_DIR = DATA_DIR / "spool"

# Device session
TRANSCRIPTION_LOCALE = os.getenv("RECORDER_LOCALE", "en-US")
VOICE_COMMAND_COOLDOWN_MS = 1000
REFERENCE_CARD_MS = 3000

# Realtime
SSE_KEEPALIVE_SECS = 30
SSE_QUEUE_SIZE = 256
