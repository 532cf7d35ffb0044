"""
Forging identities.

Derives a delegate's public identity from its forging secret the way the
chain does (secp256k1 key whose private scalar is sha256(passphrase)), and
keeps forging secrets on disk encrypted with a password-derived Fernet key.
"""

import base64
import json
import os
from pathlib import Path
from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


def sha256(data: bytes) -> bytes:
    digest = hashes.Hash(hashes.SHA256(), backend=default_backend())
    digest.update(data)
    return digest.finalize()


def public_key_from_passphrase(passphrase: str) -> str:
    """Return the compressed secp256k1 public key (hex) for a passphrase.

    Raises ValueError for an empty passphrase or one that does not map to a
    valid private scalar.
    """
    if not isinstance(passphrase, str) or not passphrase:
        raise ValueError("passphrase must be a non-empty string")
    private_value = int.from_bytes(sha256(passphrase.encode("utf-8")), "big")
    private_key = ec.derive_private_key(private_value, ec.SECP256K1(), default_backend())
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint,
    )
    return public_bytes.hex()


# ── Encrypted secret storage ─────────────────────────────────────────────────

def _get_encryption_key(password: str, salt_file: Path) -> bytes:
    """Derive the Fernet key from password using PBKDF2, creating the salt once."""
    if salt_file.exists():
        salt = salt_file.read_bytes()
    else:
        salt = os.urandom(16)
        salt_file.write_bytes(salt)
        os.chmod(salt_file, 0o600)

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=100000,
        backend=default_backend()
    )
    return base64.urlsafe_b64encode(kdf.derive(password.encode()))


def _salt_file_for(secrets_file: Path) -> Path:
    return secrets_file.with_name(secrets_file.name + ".salt")


def save_encrypted_secrets(secrets_file: Path, secrets: List[str], password: str) -> None:
    """Encrypt and write forging secrets (mode 600)."""
    secrets_file = Path(secrets_file)
    fernet = Fernet(_get_encryption_key(password, _salt_file_for(secrets_file)))
    encrypted = fernet.encrypt(json.dumps(list(secrets)).encode())
    secrets_file.write_bytes(encrypted)
    os.chmod(secrets_file, 0o600)


def load_encrypted_secrets(secrets_file: Path, password: str) -> Optional[List[str]]:
    """Decrypt forging secrets.

    Returns [] when the file does not exist and None when the password is
    wrong or the content is not a JSON list of strings.
    """
    secrets_file = Path(secrets_file)
    if not secrets_file.exists():
        return []
    fernet = Fernet(_get_encryption_key(password, _salt_file_for(secrets_file)))
    try:
        data = json.loads(fernet.decrypt(secrets_file.read_bytes()).decode())
    except (InvalidToken, ValueError):
        return None
    if not isinstance(data, list):
        return None
    return [s for s in data if isinstance(s, str)]
