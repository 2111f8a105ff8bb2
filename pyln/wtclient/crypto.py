"""Signing, recovery and blob encryption for the watchtower protocol.

Signatures follow the scheme lightningd's `signmessage` uses: a recoverable
ECDSA signature over `sha256d("Lightning Signed Message:" || message)`,
zbase32-encoded with the recovery id (offset by 31) as the first byte.
"""
from hashlib import sha256
from typing import Tuple, Union

import coincurve
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from pyln.proto import zbase32
from pyln.proto.primitives import PrivateKey, PublicKey

LN_MESSAGE_PREFIX = b"Lightning Signed Message:"

# The penalty blob is encrypted once per commitment, so a fixed nonce is
# fine as long as the key is derived from the commitment txid.
CHACHA20_NONCE = bytes(12)


class SignatureError(Exception):
    pass


class EncryptionError(Exception):
    pass


def sha256d(message: bytes) -> bytes:
    return sha256(sha256(message).digest()).digest()


def generate_keypair() -> Tuple[PrivateKey, PublicKey]:
    sk = PrivateKey(coincurve.PrivateKey().secret)
    return sk, sk.public_key()


def sign(message: bytes, sk: PrivateKey) -> str:
    """Signs `message` with `sk`.

    Returns:
        :obj:`str`: the zbase32-encoded recoverable signature.
    """
    if not isinstance(message, bytes):
        raise TypeError("message must be bytes, {} received".format(type(message)))

    rsig = sk.key.sign_recoverable(sha256d(LN_MESSAGE_PREFIX + message), hasher=None)
    # coincurve returns r || s || recid; the wire format puts the header first.
    sig = bytes([rsig[64] + 31]) + rsig[:64]
    return zbase32.encode(sig).decode("ascii")


def recover_pk(message: bytes, zbase32_sig: Union[str, bytes]) -> PublicKey:
    """Recovers the public key that produced `zbase32_sig` over `message`.

    Raises:
        :obj:`SignatureError`: if the signature is malformed or no key can be
        recovered from it.
    """
    try:
        sig = zbase32.decode(zbase32_sig)
    except (TypeError, ValueError) as e:
        raise SignatureError("Signature is not zbase32 encoded: {}".format(e))

    if len(sig) != 65:
        raise SignatureError("Wrong signature length: {}".format(len(sig)))

    recid = sig[0] - 31
    if recid not in range(4):
        raise SignatureError("Wrong recovery id: {}".format(recid))

    try:
        pk = coincurve.PublicKey.from_signature_and_message(
            sig[1:] + bytes([recid]), sha256d(LN_MESSAGE_PREFIX + message), hasher=None
        )
    except ValueError as e:
        raise SignatureError("Cannot recover a public key: {}".format(e))

    return PublicKey(pk)


def verify(message: bytes, zbase32_sig: Union[str, bytes], pk: PublicKey) -> bool:
    try:
        return recover_pk(message, zbase32_sig).to_bytes() == pk.to_bytes()
    except SignatureError:
        return False


def encrypt(penalty_tx: bytes, commitment_txid: bytes) -> bytes:
    """Encrypts a penalty transaction so only someone who has seen the
    breaching commitment can decrypt it."""
    key = sha256(commitment_txid).digest()
    return ChaCha20Poly1305(key).encrypt(CHACHA20_NONCE, penalty_tx, None)


def decrypt(encrypted_blob: bytes, commitment_txid: bytes) -> bytes:
    key = sha256(commitment_txid).digest()
    try:
        return ChaCha20Poly1305(key).decrypt(CHACHA20_NONCE, encrypted_blob, None)
    except InvalidTag:
        raise EncryptionError("Cannot decrypt blob with the given key")
