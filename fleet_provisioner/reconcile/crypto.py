from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization

from .errors import ConfigError

OPENSSH_PUBLIC_PREFIXES = (b"ssh-", b"ecdsa-", b"sk-")


def _load_private_key(key_data: bytes, path: str):
    try:
        return serialization.load_pem_private_key(key_data, password=None, backend=default_backend())
    except ValueError:
        pass
    try:
        return serialization.load_ssh_private_key(key_data, password=None, backend=default_backend())
    except ValueError as exc:
        raise ConfigError(f"{path} is neither an OpenSSH public key nor an unencrypted private key: {exc}") from exc


def get_public_key_body(path: str) -> str:
    """
    OpenSSH public key of a key file.

    A ``.pub`` file is returned as is, a private key (PEM or OpenSSH, without
    passphrase) has its public half derived.
    """
    try:
        with open(path, 'rb') as f:
            key_data = f.read()
    except OSError as exc:
        raise ConfigError(f"cannot read key file {path}: {exc}") from exc

    if key_data.lstrip().startswith(OPENSSH_PUBLIC_PREFIXES):
        return key_data.decode('utf-8').strip()

    public_key = _load_private_key(key_data, path).public_key()
    return public_key.public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH
    ).decode('utf-8')
