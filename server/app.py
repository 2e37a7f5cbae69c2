from flask import Flask, request, jsonify
from werkzeug.utils import secure_filename
from dotenv import load_dotenv
from pathlib import Path
import os, logging

import requests

from encryption import (
    AuthenticationFailed, EncryptionDetails, KeyLoadFailed,
    MalformedInput, UnwrapFailed, decrypt_recording_file,
)
from storage import cleanup_files, log_result
from twilio_api import API_BASE, ProviderError, download_recording, fetch_encryption_details, get_caller_number
from paths import ENCRYPTED_DIR, DECRYPTED_DIR, PRIVATE_KEY_PATH, RESULT_LOG_PATH, ensure_directories


load_dotenv()

logger = logging.getLogger("voicemail.app")

# App config
app = Flask(__name__)
app.config["ENCRYPTED_DIR"] = ENCRYPTED_DIR
app.config["DECRYPTED_DIR"] = DECRYPTED_DIR
app.config["PRIVATE_KEY_PATH"] = PRIVATE_KEY_PATH
app.config["RESULT_LOG_PATH"] = RESULT_LOG_PATH
app.config["TWILIO_ACCOUNT_SID"] = os.getenv("TWILIO_ACCOUNT_SID", "")
app.config["TWILIO_AUTH_TOKEN"] = os.getenv("TWILIO_AUTH_TOKEN", "")
app.config["TWILIO_API_BASE"] = os.getenv("TWILIO_API_BASE", API_BASE)
app.config["REQUEST_TIMEOUT"] = float(os.getenv("REQUEST_TIMEOUT", 30))
app.config["KEEP_ENCRYPTED"] = os.getenv("KEEP_ENCRYPTED", "false").lower() == "true"


def _error_response(e: Exception, status: int):
    body = {"error": getattr(e, "kind", "provider_error")}
    stage = getattr(e, "stage", None)
    if stage is not None:
        body["stage"] = stage.value
    return jsonify(body), status


@app.errorhandler(MalformedInput)
def handle_malformed(e):
    return _error_response(e, 400)


@app.errorhandler(UnwrapFailed)
@app.errorhandler(AuthenticationFailed)
def handle_undecryptable(e):
    return _error_response(e, 422)


@app.errorhandler(KeyLoadFailed)
def handle_key_load(e):
    logger.error("[!] Private key could not be loaded: %s", e)
    return _error_response(e, 500)


@app.errorhandler(ProviderError)
@app.errorhandler(requests.RequestException)
def handle_provider(e):
    logger.error("[!] Provider request failed: %s", e)
    return _error_response(e, 502)


@app.route("/health", methods=["GET"])
def health():
    return "ok"


@app.route("/recording-status", methods=["POST"])
def recording_status():
    form = request.form

    status = form.get("RecordingStatus", "completed")
    recording_sid = form.get("RecordingSid", "")
    if status != "completed":
        logger.info("[SKIP] Recording %s has status %s", recording_sid, status)
        return jsonify({"recording_sid": recording_sid, "status": status}), 202

    recording_url = form.get("RecordingUrl")
    safe_sid = secure_filename(recording_sid)
    if not safe_sid or not recording_url:
        return "Missing RecordingSid or RecordingUrl", 400

    account_sid = form.get("AccountSid") or app.config["TWILIO_ACCOUNT_SID"]
    auth_token = app.config["TWILIO_AUTH_TOKEN"]
    timeout = app.config["REQUEST_TIMEOUT"]

    raw_details = form.get("EncryptionDetails")
    if raw_details:
        details = EncryptionDetails.from_callback(raw_details)
    else:
        details = fetch_encryption_details(
            account_sid, recording_sid, auth_token,
            api_base=app.config["TWILIO_API_BASE"], timeout=timeout,
        )

    encrypted_path = Path(app.config["ENCRYPTED_DIR"]) / f"{safe_sid}.enc"
    decrypted_path = Path(app.config["DECRYPTED_DIR"]) / f"{safe_sid}.wav"

    download_recording(recording_url, encrypted_path, (account_sid, auth_token), timeout=timeout)
    try:
        plaintext = decrypt_recording_file(
            encrypted_path,
            details.encrypted_cek,
            details.iv,
            app.config["PRIVATE_KEY_PATH"],
            output_path=decrypted_path,
            recording_id=recording_sid,
        )
    finally:
        if not app.config["KEEP_ENCRYPTED"]:
            cleanup_files([encrypted_path])

    caller = None
    call_sid = form.get("CallSid")
    if call_sid:
        try:
            caller = get_caller_number(
                account_sid, call_sid, auth_token,
                api_base=app.config["TWILIO_API_BASE"], timeout=timeout,
            )
        except (ProviderError, requests.RequestException) as e:
            logger.warning("[!] Caller lookup failed for %s: %s", call_sid, e)

    log_result({
        "recording_sid": recording_sid,
        "call_sid": call_sid,
        "caller": caller,
        "path": str(decrypted_path),
        "bytes": len(plaintext),
    }, Path(app.config["RESULT_LOG_PATH"]))

    return jsonify({
        "recording_sid": recording_sid,
        "path": str(decrypted_path),
        "bytes": len(plaintext),
    })


if __name__ == "__main__":
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    ensure_directories()
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", 5001)))
