import unittest
import tempfile
import os
import json
import sys
import base64
from unittest.mock import patch
from pathlib import Path

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'server')))

from app import app
from twilio_api import ProviderError
from encryption import EncryptionDetails
from dotenv import load_dotenv

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

dotenv_path = os.path.join(os.path.dirname(__file__), '..', 'server/', '.env')
load_dotenv(dotenv_path)

OAEP_SHA256 = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None
)
AUDIO = b"RIFF\x24\x00\x00\x00WAVEfmt test-audio-bytes"


class FlaskRouteTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        cek = AESGCM.generate_key(bit_length=256)
        iv = os.urandom(12)
        cls.ciphertext = AESGCM(cek).encrypt(iv, AUDIO, None)
        cls.details = {
            "type": "rsa-aes",
            "encrypted_cek": base64.b64encode(
                cls.private_key.public_key().encrypt(cek, OAEP_SHA256)
            ).decode(),
            "iv": base64.b64encode(iv).decode(),
        }

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        key_path = root / "keys" / "private_key.pem"
        key_path.parent.mkdir()
        key_path.write_bytes(self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ))

        app.config["TESTING"] = True
        app.config["ENCRYPTED_DIR"] = root / "encrypted"
        app.config["DECRYPTED_DIR"] = root / "decrypted"
        app.config["PRIVATE_KEY_PATH"] = key_path
        app.config["RESULT_LOG_PATH"] = root / "logs" / "logs.json"
        app.config["TWILIO_ACCOUNT_SID"] = "AC_default"
        app.config["TWILIO_AUTH_TOKEN"] = "token"
        app.config["KEEP_ENCRYPTED"] = False
        self.client = app.test_client()

        # Stand-in for the media download: drop the ciphertext where asked
        self.payload = self.ciphertext
        patcher = patch("app.download_recording", side_effect=self._fake_download)
        self.mock_download = patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        self.temp_dir.cleanup()

    def _fake_download(self, url, output_path, auth, timeout=None):
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(self.payload)
        return output_path

    def _form(self, **overrides):
        form = {
            "AccountSid": "AC123",
            "RecordingSid": "RE123",
            "RecordingUrl": "https://api.twilio.com/2010-04-01/Accounts/AC123/Recordings/RE123",
            "RecordingStatus": "completed",
            "EncryptionDetails": json.dumps(self.details),
        }
        form.update(overrides)
        return {k: v for k, v in form.items() if v is not None}

    def test_health_route(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)

    def test_recording_decrypted(self):
        response = self.client.post("/recording-status", data=self._form())

        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual(body["recording_sid"], "RE123")
        self.assertEqual(body["bytes"], len(AUDIO))

        decrypted = app.config["DECRYPTED_DIR"] / "RE123.wav"
        self.assertEqual(decrypted.read_bytes(), AUDIO)
        # Ciphertext cleaned up after decryption
        self.assertFalse((app.config["ENCRYPTED_DIR"] / "RE123.enc").exists())

        logs = json.loads(app.config["RESULT_LOG_PATH"].read_text())
        self.assertEqual(logs[0]["recording_sid"], "RE123")
        self.assertEqual(self.mock_download.call_args[0][2], ("AC123", "token"))

    def test_keep_encrypted(self):
        app.config["KEEP_ENCRYPTED"] = True
        response = self.client.post("/recording-status", data=self._form())
        self.assertEqual(response.status_code, 200)
        self.assertTrue((app.config["ENCRYPTED_DIR"] / "RE123.enc").exists())

    @patch("app.fetch_encryption_details")
    def test_details_fetched_when_missing(self, mock_fetch):
        mock_fetch.return_value = EncryptionDetails.from_callback(self.details)

        response = self.client.post("/recording-status", data=self._form(EncryptionDetails=None))

        self.assertEqual(response.status_code, 200)
        mock_fetch.assert_called_once()
        self.assertEqual(mock_fetch.call_args[0][:3], ("AC123", "RE123", "token"))

    @patch("app.fetch_encryption_details", side_effect=ProviderError("boom"))
    def test_provider_failure(self, mock_fetch):
        response = self.client.post("/recording-status", data=self._form(EncryptionDetails=None))
        self.assertEqual(response.status_code, 502)

    def test_tampered_recording(self):
        tampered = bytearray(self.ciphertext)
        tampered[-1] ^= 0x01
        self.payload = bytes(tampered)

        response = self.client.post("/recording-status", data=self._form())

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.get_json()["error"], "authentication_failed")
        self.assertFalse((app.config["DECRYPTED_DIR"] / "RE123.wav").exists())
        self.assertFalse((app.config["ENCRYPTED_DIR"] / "RE123.enc").exists())
        self.assertFalse(app.config["RESULT_LOG_PATH"].exists())

    def test_malformed_details(self):
        response = self.client.post("/recording-status", data=self._form(EncryptionDetails="{oops"))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "malformed_input")

    def test_missing_key_file(self):
        app.config["PRIVATE_KEY_PATH"] = Path(self.temp_dir.name) / "missing.pem"
        response = self.client.post("/recording-status", data=self._form())
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json()["error"], "key_load_failed")

    def test_non_completed_status_ignored(self):
        response = self.client.post("/recording-status", data=self._form(RecordingStatus="in-progress"))
        self.assertEqual(response.status_code, 202)
        self.mock_download.assert_not_called()

    def test_missing_recording_sid(self):
        response = self.client.post("/recording-status", data=self._form(RecordingSid=None))
        self.assertEqual(response.status_code, 400)

    @patch("app.get_caller_number", return_value="+15551234567")
    def test_caller_recorded(self, mock_caller):
        response = self.client.post("/recording-status", data=self._form(CallSid="CA1"))
        self.assertEqual(response.status_code, 200)
        logs = json.loads(app.config["RESULT_LOG_PATH"].read_text())
        self.assertEqual(logs[0]["caller"], "+15551234567")

    @patch("app.get_caller_number", side_effect=ProviderError("no events"))
    def test_caller_lookup_failure_does_not_block(self, mock_caller):
        response = self.client.post("/recording-status", data=self._form(CallSid="CA1"))
        self.assertEqual(response.status_code, 200)
        logs = json.loads(app.config["RESULT_LOG_PATH"].read_text())
        self.assertIsNone(logs[0]["caller"])


if __name__ == "__main__":
    unittest.main()
