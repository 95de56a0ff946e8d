#!/usr/bin/env python3
"""
Key derivation, RC4 and UTF-16 decoding for SQL Server encrypted modules.

SQL Server keeps the text of an object created WITH ENCRYPTION in
sys.sysobjvalues.imageval, RC4-encrypted. The RC4 key is the SHA-1 of

    family_guid : 16 bytes (as stored)
    object_id   : u32 little-endian
    subobjid    : u16 little-endian

and the plaintext is the module definition in UTF-16LE.
"""

import codecs
import logging
import struct

try:
    from Cryptodome.Hash import SHA1
    from Cryptodome.Cipher import ARC4
except ImportError:
    from Crypto.Hash import SHA1
    from Crypto.Cipher import ARC4

from sqlrecover.errors import DecodeError


log = logging.getLogger(__name__)

FAMILY_GUID_SIZE = 16
KEY_MATERIAL_FMT = '<16sIH'  # family guid, object id, subobjid
KEY_SIZE = SHA1.digest_size


def key_material(family_guid, object_id, subobject_id):
    """Build the 22 byte buffer that is hashed into the RC4 key"""
    if len(family_guid) != FAMILY_GUID_SIZE:
        raise ValueError(f'family GUID must be {FAMILY_GUID_SIZE} bytes, got {len(family_guid)}')
    if not 0 <= object_id <= 0xffffffff:
        raise ValueError(f'object id out of range: {object_id}')
    if not 0 <= subobject_id <= 0xffff:
        raise ValueError(f'sub-object id out of range: {subobject_id}')
    return struct.pack(KEY_MATERIAL_FMT, bytes(family_guid), object_id, subobject_id)


def derive_key(family_guid, object_id, subobject_id):
    """RC4 key = SHA1(family_guid || object_id || subobjid)"""
    h = SHA1.new()
    h.update(key_material(family_guid, object_id, subobject_id))
    key = h.digest()
    log.debug('derived key %s for object %d/%d', key.hex(), object_id, subobject_id)
    return key


def decrypt_stream(key, ciphertext):
    """Run RC4 over the whole blob. Output is the same length as the input."""
    if not ciphertext:
        return b''
    return ARC4.new(key).decrypt(bytes(ciphertext))


def decode_source(raw):
    """
    Decode the decrypted module text.

    The text is UTF-16LE. A leading byte order mark is dropped; a big-endian
    mark switches the rest of the buffer to UTF-16BE.
    """
    if len(raw) % 2:
        raise DecodeError(f'odd byte length {len(raw)} is not UTF-16')

    encoding = 'utf-16-le'
    if raw.startswith(codecs.BOM_UTF16_LE):
        raw = raw[len(codecs.BOM_UTF16_LE):]
    elif raw.startswith(codecs.BOM_UTF16_BE):
        raw = raw[len(codecs.BOM_UTF16_BE):]
        encoding = 'utf-16-be'

    try:
        return bytes(raw).decode(encoding)
    except UnicodeDecodeError as e:
        raise DecodeError(f'invalid UTF-16 at byte {e.start}: {e.reason}') from e
