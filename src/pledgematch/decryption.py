"""AES-256-CBC payload decryption for payment-provider webhooks.

The provider encrypts the JSON event body with a shared key/IV pair and sends
it hex encoded inside the webhook envelope.
"""

import json
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from src.config import config
from src.pledgematch.errors import ConfigurationError, DecryptionError

KEY_BYTES = 32
IV_BYTES = 16


def _load_key_material(key_hex: str, iv_hex: str) -> tuple[bytes, bytes]:
    """Decode and length-check the key and IV.

    Raises:
        ConfigurationError: If either value is not hex or has the wrong length.
    """
    try:
        key = bytes.fromhex(key_hex or "")
        iv = bytes.fromhex(iv_hex or "")
    except ValueError as e:
        raise ConfigurationError("Encryption key and IV must be hex encoded") from e

    if len(key) != KEY_BYTES or len(iv) != IV_BYTES:
        raise ConfigurationError(
            "Invalid encryption key or IV length. The key must be 64 hex chars "
            "(32 bytes) and the IV 32 hex chars (16 bytes)"
        )
    return key, iv


class PayloadDecryptor:
    """Stateless decryptor bound to one key/IV pair."""

    def __init__(self, key_hex: Optional[str] = None, iv_hex: Optional[str] = None):
        """Initialize the decryptor.

        Args:
            key_hex: AES-256 key as hex. Defaults to config.webhook_aes_key.
            iv_hex: CBC IV as hex. Defaults to config.webhook_aes_iv.
        """
        self._key_hex = key_hex if key_hex is not None else config.webhook_aes_key.get_secret_value()
        self._iv_hex = iv_hex if iv_hex is not None else config.webhook_aes_iv.get_secret_value()

    def decrypt(self, hex_ciphertext: str) -> Dict[str, Any]:
        """Decrypt a hex ciphertext into a JSON object.

        Args:
            hex_ciphertext: Hex encoded AES-256-CBC ciphertext (PKCS#7 padded).

        Returns:
            The decrypted event as a dict.

        Raises:
            ConfigurationError: If the configured key/IV are malformed.
            DecryptionError: If the ciphertext, padding or JSON is invalid.
        """
        key, iv = _load_key_material(self._key_hex, self._iv_hex)

        try:
            ciphertext = bytes.fromhex(hex_ciphertext)
        except (TypeError, ValueError) as e:
            raise DecryptionError("Ciphertext is not valid hex") from e

        try:
            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            raise DecryptionError(f"Could not decrypt payload: {e}") from e

        try:
            decoded = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise DecryptionError("Decrypted payload is not valid JSON") from e

        if not isinstance(decoded, dict):
            raise DecryptionError("Decrypted payload is not a JSON object")
        return decoded


def encrypt_payload(payload: Dict[str, Any], key_hex: str, iv_hex: str) -> str:
    """Encrypt an event the way the provider does (inverse of ``decrypt``).

    Args:
        payload: Event body to encrypt.
        key_hex: AES-256 key as hex.
        iv_hex: CBC IV as hex.

    Returns:
        Hex encoded ciphertext.
    """
    key, iv = _load_key_material(key_hex, iv_hex)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(json.dumps(payload).encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return (encryptor.update(padded) + encryptor.finalize()).hex()
