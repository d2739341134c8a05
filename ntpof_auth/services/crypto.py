from cryptography.fernet import Fernet, InvalidToken


def get_fernet(encryption_key: str) -> Fernet | None:
    if not encryption_key:
        return None
    key = encryption_key.encode() if isinstance(encryption_key, str) else encryption_key
    return Fernet(key)


def encrypt_value(value: str, encryption_key: str) -> str:
    if not value:
        return ""
    f = get_fernet(encryption_key)
    if f is None:
        return value  # dev: no key → store plaintext
    return f.encrypt(value.encode()).decode()


def decrypt_value(encrypted: str, encryption_key: str) -> str:
    if not encrypted:
        return ""
    f = get_fernet(encryption_key)
    if f is None:
        return encrypted  # dev: no key
    try:
        return f.decrypt(encrypted.encode()).decode()
    except InvalidToken:
        return ""
