# Provider REST API (recording metadata, media download, call events)

import logging
from pathlib import Path
from typing import Tuple

import requests

from encryption import EncryptionDetails, MalformedInput

logger = logging.getLogger("voicemail.twilio")

API_BASE = "https://api.twilio.com"
DEFAULT_TIMEOUT = 30
CHUNK_SIZE = 64 * 1024


class ProviderError(Exception):
    pass


def fetch_encryption_details(account_sid: str, recording_sid: str, auth_token: str,
                             api_base: str = API_BASE, timeout: float = DEFAULT_TIMEOUT) -> EncryptionDetails:
    """
    Fetch the wrapped CEK and IV for a recording from the Recordings resource.
    """
    url = f"{api_base}/2010-04-01/Accounts/{account_sid}/Recordings/{recording_sid}.json"
    res = requests.get(url, auth=(account_sid, auth_token), timeout=timeout)

    if not res.ok:
        raise ProviderError(f"Failed to fetch encryption details: {res.status_code} {res.reason}")

    details = res.json().get("encryption_details")
    if not details:
        raise ProviderError(f"Encryption details not found for recording {recording_sid}")

    try:
        return EncryptionDetails.from_callback(details)
    except MalformedInput as e:
        raise ProviderError(f"Malformed encryption details for recording {recording_sid}: {e}") from e


def download_recording(url: str, output_path: Path, auth: Tuple[str, str],
                       timeout: float = DEFAULT_TIMEOUT) -> Path:
    """
    Stream the (still encrypted) recording media to output_path.
    A failed download leaves no partial file behind.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with requests.get(url, auth=auth, stream=True, timeout=timeout) as res:
        if not res.ok:
            raise ProviderError(f"Failed to download recording: {res.status_code} {res.reason}")
        try:
            with open(output_path, "wb") as f:
                for chunk in res.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
        except (OSError, requests.RequestException):
            output_path.unlink(missing_ok=True)
            raise

    logger.info("[DOWNLOAD] Saved %d bytes to %s", output_path.stat().st_size, output_path)
    return output_path


def get_caller_number(account_sid: str, call_sid: str, auth_token: str,
                      api_base: str = API_BASE, timeout: float = DEFAULT_TIMEOUT) -> str:
    url = f"{api_base}/2010-04-01/Accounts/{account_sid}/Calls/{call_sid}/Events.json"
    res = requests.get(url, auth=(account_sid, auth_token), timeout=timeout)

    if not res.ok:
        raise ProviderError(f"Failed to fetch caller number: {res.status_code} {res.reason}")

    try:
        return res.json()["events"][0]["request"]["parameters"]["from"]
    except (KeyError, IndexError, TypeError) as e:
        raise ProviderError(f"Caller number not found in events for call {call_sid}") from e
