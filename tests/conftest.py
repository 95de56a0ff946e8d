import hashlib
import struct

import pytest

try:
    from Cryptodome.Cipher import ARC4
except ImportError:
    from Crypto.Cipher import ARC4

from sqlrecover.catalog import CatalogStore, SnapshotCatalogStore


ZERO_GUID = bytes(16)
SOURCE = "CREATE PROC p AS SELECT 1"


def encrypt_source(text, family_guid, object_id, subobject_id, bom=False):
    """Encrypt module text the way the server stores it"""
    key = hashlib.sha1(family_guid + struct.pack('<IH', object_id, subobject_id)).digest()
    raw = text.encode('utf-16-le')
    if bom:
        raw = b'\xff\xfe' + raw
    return ARC4.new(key).encrypt(raw)


class MemoryCatalog(CatalogStore):
    """In-memory catalog double that records every lookup"""

    def __init__(self, family_guid=ZERO_GUID, objects=None, fragments=None):
        self.family_guid = family_guid
        self.objects = objects or {}
        self.fragments = fragments or {}
        self.calls = []

    def lookup_object_id(self, name):
        self.calls.append(('object_id', name))
        return self.objects.get(name)

    def lookup_family_identifier(self):
        self.calls.append(('family',))
        return self.family_guid

    def lookup_encrypted_payloads(self, object_id):
        self.calls.append(('payloads', object_id))
        return sorted(self.fragments.get(object_id, []), key=lambda row: row[1])


@pytest.fixture
def memory_catalog():
    return MemoryCatalog(
        objects={'p': 1},
        fragments={1: [(encrypt_source(SOURCE, ZERO_GUID, 1, 0), 0)]},
    )


@pytest.fixture
def snapshot(tmp_path):
    guid = bytes(range(16))
    path = tmp_path / 'catalog.db'
    store = SnapshotCatalogStore.create(path, guid)
    store.add_object(1001, 'usp_secret', {0: encrypt_source("CREATE PROCEDURE usp_secret AS SELECT 42", guid, 1001, 0)})
    store.add_object(1002, 'v_hidden', {0: encrypt_source("CREATE VIEW sales.v_hidden AS SELECT 1 AS x", guid, 1002, 0)},
                     schema='sales')
    store.add_object(1003, 'usp_numbered', {
        2: encrypt_source(" -- part two", guid, 1003, 2),
        1: encrypt_source("CREATE PROCEDURE usp_numbered;1 AS SELECT 1", guid, 1003, 1),
    })
    store.close()
    return path
