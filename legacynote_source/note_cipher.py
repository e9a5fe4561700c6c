# AES-GCM encryption of note content at rest, with a single server-side key
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag
from errors import DecryptionError
import os, base64, binascii

NONCE_SIZE = 12

def generate_key(bit_length: int = 256) -> str:
    return base64.urlsafe_b64encode(AESGCM.generate_key(bit_length=bit_length)).decode()

def load_key(key) -> bytes:
    # The key comes from the config as urlsafe base64 text, or already as raw bytes
    if isinstance(key, str):
        try:
            key = base64.urlsafe_b64decode(key.encode())
        except (binascii.Error, ValueError):
            raise ValueError('ENCRYPTION_KEY is not valid base64')
    if key is None or len(key) not in (16, 24, 32):
        raise ValueError('ENCRYPTION_KEY must decode to 16, 24 or 32 bytes')
    return key

def encrypt_bytes(data: bytes, key: bytes) -> bytes:
    aesgcm = AESGCM(key)
    nonce = os.urandom(NONCE_SIZE)
    return nonce + aesgcm.encrypt(nonce, data, None)

def decrypt_bytes(data: bytes, key: bytes) -> bytes:
    # GCM appends a 16 byte tag, anything shorter than nonce + tag can't be ours
    if len(data) < NONCE_SIZE + 16:
        raise DecryptionError('Ciphertext is too short')
    aesgcm = AESGCM(key)
    nonce = data[:NONCE_SIZE]
    ciphertext = data[NONCE_SIZE:]
    try:
        return aesgcm.decrypt(nonce, ciphertext, None)
    except InvalidTag:
        raise DecryptionError('Ciphertext does not match the key')

def encrypt(plaintext: str, key) -> str:
    return base64.b64encode(encrypt_bytes(plaintext.encode('utf-8'), load_key(key))).decode('utf-8')

def decrypt(ciphertext: str, key) -> str:
    if not ciphertext:
        raise DecryptionError('No ciphertext')
    try:
        data = base64.b64decode(ciphertext.encode('utf-8'), validate=True)
    except (binascii.Error, ValueError):
        raise DecryptionError('Ciphertext is not valid base64')
    plaintext = decrypt_bytes(data, load_key(key))
    try:
        return plaintext.decode('utf-8')
    except UnicodeDecodeError:
        raise DecryptionError('Decrypted content is not valid UTF-8')
