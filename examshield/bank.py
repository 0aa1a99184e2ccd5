"""
Exam bank loading.

A bank is a JSON document {"exams": [...]} holding exam definitions. It may
be stored as plain .json or encrypted with Fernet, either with a generated
key (key file format) or with a password (SALT prefix + 16-byte salt,
PBKDF2-HMAC-SHA256).
"""

import base64
import json
import os
from pathlib import Path
from typing import List, Optional, Union

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .models import ExamConfig


SALT_PREFIX = b'SALT'
SALT_SIZE = 16
KDF_ITERATIONS = 480000  # OWASP recommendation for 2024


def derive_key_from_password(password: str, salt: bytes) -> bytes:
    """Derive a Fernet key from a password using PBKDF2."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    key_material = kdf.derive(password.encode('utf-8'))
    return base64.urlsafe_b64encode(key_material)


def parse_bank(bank_dict: Union[dict, list]) -> List[ExamConfig]:
    """
    Build validated exams from a decoded bank document.

    Raises:
        ValueError: If an exam is malformed or inconsistent
    """
    entries = bank_dict.get("exams", []) if isinstance(bank_dict, dict) else bank_dict
    exams = []
    for entry in entries:
        try:
            exam = ExamConfig.from_dict(entry)
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed exam entry: {e}")
        is_valid, err = exam.validate()
        if not is_valid:
            raise ValueError(f"Invalid exam '{exam.exam_id}': {err}")
        exams.append(exam)
    return exams


def decrypt_bank(encrypted_data: bytes, key_input: str) -> dict:
    """
    Decrypt an encrypted bank.

    Args:
        encrypted_data: File contents
        key_input: Password (for SALT-prefixed files) or base64 Fernet key

    Raises:
        ValueError: If the key is wrong or the data is corrupted
    """
    # Check if password-based encryption (has SALT prefix)
    if encrypted_data.startswith(SALT_PREFIX):
        start = len(SALT_PREFIX)
        salt = encrypted_data[start:start + SALT_SIZE]
        encrypted_data = encrypted_data[start + SALT_SIZE:]
        key = derive_key_from_password(key_input, salt)
    else:
        # Key file format - use input as-is (base64 encoded key)
        key = key_input.encode('utf-8')

    try:
        fernet = Fernet(key)
        decrypted_data = fernet.decrypt(encrypted_data)
    except (InvalidToken, ValueError) as e:
        raise ValueError("Wrong key/password or corrupted bank file") from e

    return json.loads(decrypted_data)


def load_bank(bank_path: Path, key_input: Optional[str] = None) -> List[ExamConfig]:
    """
    Load (and decrypt if needed) an exam bank.

    Plain .json files are loaded directly and key_input is ignored.

    Raises:
        ValueError: If the bank can't be decrypted or is invalid
        OSError: If the file can't be read
    """
    bank_path = Path(bank_path)
    if bank_path.suffix.lower() == '.json':
        with open(bank_path, 'r', encoding='utf-8') as f:
            return parse_bank(json.load(f))

    if not key_input:
        raise ValueError("A key or password is required for encrypted banks")

    with open(bank_path, 'rb') as f:
        encrypted_data = f.read()
    return parse_bank(decrypt_bank(encrypted_data, key_input))


def encrypt_bank(bank_dict: dict, key: Optional[bytes] = None, password: Optional[str] = None) -> bytes:
    """
    Encrypt a bank document.

    Exactly one of key or password must be given. Password-based output is
    prefixed with SALT and the random salt so load_bank can re-derive the key.
    """
    if (key is None) == (password is None):
        raise ValueError("Provide either a key or a password")

    payload = json.dumps(bank_dict, indent=2).encode('utf-8')
    if password is not None:
        salt = os.urandom(SALT_SIZE)
        fernet = Fernet(derive_key_from_password(password, salt))
        return SALT_PREFIX + salt + fernet.encrypt(payload)
    return Fernet(key).encrypt(payload)
