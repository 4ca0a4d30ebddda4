# autotrader/trading/credentials.py
import hashlib
import logging
import re

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from autotrader.errors import ConfigurationError, CredentialsMissing
from autotrader.trading.models import AccountCredential, AccountSettings

logger = logging.getLogger(__name__)

_NON_PRINTABLE = re.compile(r"[^\x20-\x7E]")


def derive_key(master_key: str) -> bytes:
    """32-byte AES key from an arbitrary master secret (SHA-256)."""
    return hashlib.sha256(master_key.encode()).digest()


def decrypt(ciphertext: str, master_key: str) -> str:
    """Decrypt ``"<iv-hex>:<cipher-hex>"`` (AES-256-GCM, tag appended to the cipher text)."""
    try:
        iv_hex, cipher_hex = ciphertext.split(":", 1)
        iv = bytes.fromhex(iv_hex)
        data = bytes.fromhex(cipher_hex)
    except (AttributeError, ValueError) as e:
        raise ValueError("Malformed encrypted value, expected '<iv>:<ciphertext>' hex pair") from e
    return AESGCM(derive_key(master_key)).decrypt(iv, data, None).decode("utf-8", errors="ignore")


def encrypt(plaintext: str, master_key: str, iv: bytes) -> str:
    """Inverse of :func:`decrypt`, used by the tests to build stored values."""
    data = AESGCM(derive_key(master_key)).encrypt(iv, plaintext.encode(), None)
    return f"{iv.hex()}:{data.hex()}"


def sanitize(value: str) -> str:
    return _NON_PRINTABLE.sub("", value).strip()


def load_credential(settings: AccountSettings, master_key: str) -> AccountCredential:
    if not master_key:
        raise ConfigurationError("Server config error: encryption key missing")
    if not settings.encrypted_api_key or not settings.encrypted_api_secret:
        raise CredentialsMissing(settings.account_id)

    api_key = sanitize(decrypt(settings.encrypted_api_key, master_key))
    api_secret = sanitize(decrypt(settings.encrypted_api_secret, master_key))
    if not api_key or not api_secret:
        raise CredentialsMissing(settings.account_id)

    logger.debug(f"Decrypted credentials for account {settings.account_id}")
    return AccountCredential(api_key=api_key, api_secret=api_secret)
