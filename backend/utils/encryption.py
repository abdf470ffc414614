import os
import base64
import hashlib
import logging
from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

# Fernet needs 32 url-safe base64-encoded bytes; derive them from whichever key is set
RAW_KEY = os.getenv("ENCRYPTION_KEY") or os.getenv("SECRET_KEY", "fallback-secret-key-at-least-32-chars-long")
FERNET_KEY = base64.urlsafe_b64encode(hashlib.sha256(RAW_KEY.encode()).digest())
cipher_suite = Fernet(FERNET_KEY)

# Integration setting keys stored encrypted at rest
SECRET_SETTING_KEYS = {"password", "api_key", "client_secret", "write_key", "access_token", "app_secret"}

def encrypt_token(token: str) -> str:
    """Encrypts a string token using Fernet."""
    if not token:
        return None
    return cipher_suite.encrypt(token.encode()).decode()

def decrypt_token(encrypted_token: str) -> str:
    """Decrypts a Fernet encrypted string; None if it was written with another key."""
    if not encrypted_token:
        return None
    try:
        return cipher_suite.decrypt(encrypted_token.encode()).decode()
    except InvalidToken:
        logger.error("Decryption failed: token does not match the configured ENCRYPTION_KEY")
        return None

def encrypt_settings(settings: dict) -> dict:
    return {k: encrypt_token(v) if k in SECRET_SETTING_KEYS and v else v for k, v in (settings or {}).items()}

def decrypt_settings(settings: dict) -> dict:
    return {k: decrypt_token(v) if k in SECRET_SETTING_KEYS and v else v for k, v in (settings or {}).items()}
