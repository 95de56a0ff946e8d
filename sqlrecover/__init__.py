"""
Recover the source of SQL Server objects created WITH ENCRYPTION
"""

from sqlrecover.errors import RecoveryError, ResolutionError, CatalogReadError, DecodeError
from sqlrecover.crypto import derive_key, decrypt_stream, decode_source
from sqlrecover.catalog import CatalogStore, SqlServerCatalogStore, SnapshotCatalogStore
from sqlrecover.pipeline import (
    EncryptedPayload,
    DecryptedObject,
    BatchResult,
    resolve_object_id,
    fetch_family_identifier,
    fetch_payload,
    fetch_payloads,
    decrypt_object,
    decrypt_objects,
)

__version__ = '1.0.0'
