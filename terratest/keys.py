"""RSA key pair generation for EC2 key pairs."""
from __future__ import annotations

from dataclasses import dataclass

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


@dataclass(frozen=True)
class KeyPair:
    """Public key in OpenSSH format and private key in PEM format."""
    public_key: str
    private_key: str


def generate_rsa_key_pair(bits: int = 2048) -> KeyPair:
    """Generate an RSA key pair in memory. Nothing is written to disk."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_ssh = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return KeyPair(public_key=public_ssh.decode("utf-8"), private_key=private_pem.decode("utf-8"))
