from hashlib import sha256

import pytest  # type: ignore
from pyln.proto import zbase32

from pyln.wtclient import crypto


def test_sign_and_recover():
    sk, pk = crypto.generate_keypair()
    message = b"appointment data"

    sig = crypto.sign(message, sk)
    assert isinstance(sig, str)
    assert zbase32.is_zbase32_encoded(sig)
    assert len(zbase32.decode(sig)) == 65

    assert crypto.recover_pk(message, sig).to_bytes() == pk.to_bytes()
    assert crypto.verify(message, sig, pk)


def test_verify_wrong_key_or_message():
    sk, pk = crypto.generate_keypair()
    _, other_pk = crypto.generate_keypair()
    sig = crypto.sign(b"message", sk)

    assert not crypto.verify(b"message", sig, other_pk)
    assert not crypto.verify(b"another message", sig, pk)


def test_sign_requires_bytes():
    sk, _ = crypto.generate_keypair()
    with pytest.raises(TypeError):
        crypto.sign("not bytes", sk)


def test_recover_malformed_signatures():
    # Not zbase32
    with pytest.raises(crypto.SignatureError):
        crypto.recover_pk(b"message", "0000")

    # Right encoding, wrong length
    with pytest.raises(crypto.SignatureError):
        crypto.recover_pk(b"message", zbase32.encode(b"\x1f" * 10))

    # Wrong recovery id
    with pytest.raises(crypto.SignatureError):
        crypto.recover_pk(b"message", zbase32.encode(b"\x00" + b"\x01" * 64))

    assert not crypto.verify(b"message", "0000", crypto.generate_keypair()[1])


def test_encrypt_decrypt():
    commitment_txid = sha256(b"commitment").digest()
    penalty_tx = bytes.fromhex("0200000001") + b"\x00" * 100

    blob = crypto.encrypt(penalty_tx, commitment_txid)
    assert blob != penalty_tx
    # Poly1305 tag
    assert len(blob) == len(penalty_tx) + 16
    assert crypto.decrypt(blob, commitment_txid) == penalty_tx

    with pytest.raises(crypto.EncryptionError):
        crypto.decrypt(blob, sha256(b"another commitment").digest())
