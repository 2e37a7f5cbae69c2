from pathlib import Path
import os

from dotenv import load_dotenv

load_dotenv()

# Data lives under VOICEMAIL_DATA_DIR, or the working directory the server is started from
DATA_DIR = Path(os.getenv("VOICEMAIL_DATA_DIR") or Path.cwd())
ENCRYPTED_DIR = DATA_DIR / "encrypted"
DECRYPTED_DIR = DATA_DIR / "decrypted"
KEYS_DIR = DATA_DIR / "keys"
LOG_DIR = DATA_DIR / "logs"

PRIVATE_KEY_PATH = Path(os.getenv("PRIVATE_KEY_PATH") or KEYS_DIR / "private_key.pem")
RESULT_LOG_PATH = LOG_DIR / "logs.json"


def ensure_directories():
    for path in [ENCRYPTED_DIR, DECRYPTED_DIR, LOG_DIR]:
        path.mkdir(parents=True, exist_ok=True)
