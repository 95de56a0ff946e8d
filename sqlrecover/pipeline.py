#!/usr/bin/env python3
"""
Recover the source of an encrypted object:

    resolve name -> fetch family GUID -> fetch imageval -> derive key
    -> RC4 -> UTF-16 decode

Only the three catalog lookups touch the store; everything after them is
computed from the fetched values.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from sqlrecover.crypto import FAMILY_GUID_SIZE, derive_key, decrypt_stream, decode_source
from sqlrecover.errors import RecoveryError, ResolutionError, CatalogReadError


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncryptedPayload:
    ciphertext: bytes
    subobject_id: int


@dataclass(frozen=True)
class DecryptedObject:
    name: str
    object_id: int
    subobject_ids: Tuple[int, ...]
    text: str


@dataclass
class BatchResult:
    name: str
    result: Optional[DecryptedObject] = None
    error: Optional[RecoveryError] = None

    @property
    def ok(self):
        return self.error is None


def resolve_object_id(store, name):
    """Map an object name to its object id"""
    if not name:
        raise ResolutionError(name, 'empty object name')
    try:
        object_id = store.lookup_object_id(name)
    except Exception as e:
        raise ResolutionError(name, f'lookup failed: {e}') from e
    if object_id is None:
        raise ResolutionError(name)
    if not isinstance(object_id, int) or not 0 <= object_id <= 0xffffffff:
        raise ResolutionError(name, f'object id out of range: {object_id!r}')
    return object_id


def fetch_family_identifier(store):
    """Family GUID of the database the store is bound to"""
    try:
        guid = store.lookup_family_identifier()
    except Exception as e:
        raise CatalogReadError(f'family GUID lookup failed: {e}') from e
    if guid is None:
        raise CatalogReadError('no family GUID row for the current database')
    if len(guid) != FAMILY_GUID_SIZE:
        raise CatalogReadError(f'family GUID is {len(guid)} bytes, expected {FAMILY_GUID_SIZE}')
    return bytes(guid)


def _to_payload(object_id, row):
    imageval, subobjid = row
    if imageval is None:
        raise CatalogReadError(f'object {object_id}: imageval is NULL')
    if not 0 <= subobjid <= 0xffff:
        raise CatalogReadError(f'object {object_id}: subobjid {subobjid} out of range')
    return EncryptedPayload(bytes(imageval), subobjid)


def fetch_payload(store, object_id):
    """The encrypted blob and its subobjid, exactly as stored"""
    try:
        row = store.lookup_encrypted_payload(object_id)
    except Exception as e:
        raise CatalogReadError(f'object {object_id}: payload lookup failed: {e}') from e
    if row is None:
        raise CatalogReadError(f'object {object_id}: no row in sys.sysobjvalues (not encrypted?)')
    return _to_payload(object_id, row)


def fetch_payloads(store, object_id):
    """Every encrypted fragment of an object, ordered by subobjid"""
    try:
        rows = store.lookup_encrypted_payloads(object_id)
    except Exception as e:
        raise CatalogReadError(f'object {object_id}: payload lookup failed: {e}') from e
    if not rows:
        raise CatalogReadError(f'object {object_id}: no row in sys.sysobjvalues (not encrypted?)')
    payloads = [_to_payload(object_id, row) for row in rows]
    return sorted(payloads, key=lambda p: p.subobject_id)


def decrypt_payload(family_guid, object_id, payload):
    key = derive_key(family_guid, object_id, payload.subobject_id)
    return decode_source(decrypt_stream(key, payload.ciphertext))


def decrypt_object(store, name, family_guid=None, all_fragments=False):
    """
    Decrypt one object.

    family_guid may be passed in when it was already fetched from the same
    database. With all_fragments the texts of every subobjid are joined in
    subobjid order, otherwise only the first fragment is decrypted.
    """
    object_id = resolve_object_id(store, name)
    if family_guid is None:
        family_guid = fetch_family_identifier(store)

    if all_fragments:
        payloads = fetch_payloads(store, object_id)
    else:
        payloads = [fetch_payload(store, object_id)]

    log.info('decrypting %s (object %d, %d fragment(s))', name, object_id, len(payloads))
    text = ''.join(decrypt_payload(family_guid, object_id, p) for p in payloads)
    return DecryptedObject(
        name=name,
        object_id=object_id,
        subobject_ids=tuple(p.subobject_id for p in payloads),
        text=text,
    )


def decrypt_objects(store, names, all_fragments=False):
    """
    Decrypt several objects from one database.

    The family GUID is read once. A failure on one object is recorded in
    its BatchResult and the rest are still processed.
    """
    family_guid = fetch_family_identifier(store)
    results = []
    for name in names:
        try:
            obj = decrypt_object(store, name, family_guid=family_guid, all_fragments=all_fragments)
            results.append(BatchResult(name, result=obj))
        except RecoveryError as e:
            log.warning('%s: %s', name, e)
            results.append(BatchResult(name, error=e))
    return results
