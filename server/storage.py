# Recording File Handling

import json, logging, os, tempfile, threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List

logger = logging.getLogger("voicemail.storage")

# Serializes read-append-write of the result log across request threads
_log_lock = threading.Lock()


def write_file_atomically(path: Path, data: bytes):
    """
    Write `data` to `path` so that readers only ever see the old file or the
    complete new one. The temp file lives next to the target so the final
    os.replace stays on one filesystem.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".part")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def cleanup_files(files: List[Path]):
    """
    Delete intermediate files (downloaded ciphertext etc.) once a recording is done.
    """
    for file in files:
        try:
            Path(file).unlink()
            logger.info("[CLEANUP] Deleted: %s", file)
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.error("[!] Failed to delete %s with error: %s", file, e)


def log_result(entry: dict, log_path: Path) -> dict:
    """
    Append a timestamped record to a JSON array log file.
    A log that can't be parsed is replaced by a fresh array.
    """
    record = {**entry, "timestamp": datetime.now(timezone.utc).isoformat()}

    with _log_lock:
        logs = []
        if log_path.exists():
            existing = log_path.read_text(encoding="utf-8")
            if existing.strip():
                try:
                    logs = json.loads(existing)
                except json.JSONDecodeError as e:
                    logger.error("[!] Error parsing existing log file %s: %s", log_path, e)
                if not isinstance(logs, list):
                    logs = []

        logs.append(record)
        write_file_atomically(log_path, json.dumps(logs, indent=2).encode("utf-8"))
    return record
