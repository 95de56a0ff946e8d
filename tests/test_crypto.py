import codecs

import pytest

from sqlrecover.crypto import derive_key, decrypt_stream, decode_source, key_material
from sqlrecover.errors import DecodeError

from conftest import ZERO_GUID, SOURCE, encrypt_source


def test_key_material_layout():
    guid = bytes(range(16))
    buf = key_material(guid, 0x01020304, 0x0506)
    assert len(buf) == 22
    assert buf[:16] == guid
    assert buf[16:20] == b'\x04\x03\x02\x01'
    assert buf[20:] == b'\x06\x05'


def test_derive_key_is_sha1_of_material():
    import hashlib
    expected = hashlib.sha1(ZERO_GUID + b'\x01\x00\x00\x00' + b'\x00\x00').digest()
    key = derive_key(ZERO_GUID, 1, 0)
    assert key == expected
    assert len(key) == 20


def test_derive_key_deterministic():
    assert derive_key(ZERO_GUID, 7, 3) == derive_key(ZERO_GUID, 7, 3)


def test_derive_key_sensitivity():
    base = derive_key(ZERO_GUID, 1, 0)
    changed_guid = bytes([1]) + ZERO_GUID[1:]
    assert derive_key(changed_guid, 1, 0) != base
    assert derive_key(ZERO_GUID[:15] + b'\x01', 1, 0) != base
    assert derive_key(ZERO_GUID, 2, 0) != base
    assert derive_key(ZERO_GUID, 1, 1) != base


@pytest.mark.parametrize('guid, object_id, sub', [
    (bytes(15), 1, 0),
    (bytes(17), 1, 0),
    (bytes(16), -1, 0),
    (bytes(16), 2 ** 32, 0),
    (bytes(16), 1, 2 ** 16),
])
def test_derive_key_rejects_bad_widths(guid, object_id, sub):
    with pytest.raises(ValueError):
        derive_key(guid, object_id, sub)


@pytest.mark.parametrize('length', [0, 1, 2, 17, 1000])
def test_decrypt_preserves_length(length):
    key = derive_key(ZERO_GUID, 1, 0)
    assert len(decrypt_stream(key, bytes(length))) == length


def test_round_trip_fixture():
    ciphertext = encrypt_source(SOURCE, ZERO_GUID, 1, 0)
    key = derive_key(ZERO_GUID, 1, 0)
    assert decode_source(decrypt_stream(key, ciphertext)) == SOURCE


def test_wrong_key_changes_output():
    ciphertext = encrypt_source(SOURCE, ZERO_GUID, 1, 0)
    good = decrypt_stream(derive_key(ZERO_GUID, 1, 0), ciphertext)
    bad = decrypt_stream(derive_key(ZERO_GUID, 2, 0), ciphertext)
    assert good != bad
    assert len(good) == len(bad)


def test_decode_odd_length():
    with pytest.raises(DecodeError) as exc:
        decode_source(b'a\x00b')
    assert 'key' in str(exc.value)


def test_decode_unpaired_surrogate():
    with pytest.raises(DecodeError):
        decode_source(b'\x00\xd8a\x00')


def test_decode_bom_is_dropped():
    raw = SOURCE.encode('utf-16-le')
    assert decode_source(codecs.BOM_UTF16_LE + raw) == decode_source(raw) == SOURCE


def test_decode_big_endian_bom():
    assert decode_source(codecs.BOM_UTF16_BE + 'SELECT 1'.encode('utf-16-be')) == 'SELECT 1'


def test_decode_non_ascii():
    text = "SELECT N'Größe ✓ 😀'"
    assert decode_source(text.encode('utf-16-le')) == text


def test_decode_empty():
    assert decode_source(b'') == ''
