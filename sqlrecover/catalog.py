#!/usr/bin/env python3
"""
Catalog stores answer the three lookups the decryptor needs:

    lookup_object_id(name)            -> int or None
    lookup_family_identifier()        -> 16 bytes or None
    lookup_encrypted_payload(objid)   -> (imageval, subobjid) or None

SqlServerCatalogStore runs them over a live DB-API connection. The
connection must be a dedicated admin connection (DAC): sys.sysobjvalues is
not visible otherwise. Opening that connection is left to the caller.

SnapshotCatalogStore replays the same lookups from a SQLite file, so objects
can be recovered offline from a copy of the catalog rows.
"""

import logging
import sqlite3
from pathlib import Path

from sqlrecover.pipeline import resolve_object_id, fetch_family_identifier, fetch_payloads


log = logging.getLogger(__name__)

DEFAULT_SCHEMA = 'dbo'

OBJECT_ID_QUERY = "SELECT OBJECT_ID(?)"
FAMILY_GUID_QUERY = (
    "SELECT CONVERT(binary(16), family_guid) "
    "FROM sys.database_recovery_status WHERE database_id = DB_ID()"
)
PAYLOAD_QUERY = (
    "SELECT imageval, subobjid FROM sys.sysobjvalues "
    "WHERE objid = ? ORDER BY subobjid"
)

SNAPSHOT_SCHEMA = """
CREATE TABLE IF NOT EXISTS objects (
    object_id   INTEGER PRIMARY KEY,  -- signed, as in sys.objects
    schema_name TEXT NOT NULL DEFAULT 'dbo',
    name        TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS family (
    family_guid BLOB NOT NULL
);
CREATE TABLE IF NOT EXISTS sysobjvalues (
    objid    INTEGER NOT NULL,  -- signed, as in sys.sysobjvalues
    subobjid INTEGER NOT NULL DEFAULT 0,
    imageval BLOB NOT NULL,
    PRIMARY KEY (objid, subobjid)
);
"""


class CatalogStore:
    """Interface the decryption pipeline queries. Subclasses do the I/O."""

    def lookup_object_id(self, name):
        raise NotImplementedError

    def lookup_family_identifier(self):
        raise NotImplementedError

    def lookup_encrypted_payloads(self, object_id):
        """All (imageval, subobjid) rows of an object, ordered by subobjid"""
        raise NotImplementedError

    def lookup_encrypted_payload(self, object_id):
        rows = self.lookup_encrypted_payloads(object_id)
        if rows:
            return rows[0]
        return None


def _as_uint32(value):
    # OBJECT_ID() returns a signed int
    return value & 0xffffffff


def _as_int32(value):
    # objid columns are signed int
    value = _as_uint32(value)
    return value - 0x100000000 if value > 0x7fffffff else value


def split_object_name(name, default_schema=DEFAULT_SCHEMA):
    """Split 'schema.name', '[schema].[name]' or 'name' into (schema, name)"""
    parts = [p.strip() for p in name.split('.')]
    parts = [p[1:-1] if p.startswith('[') and p.endswith(']') else p for p in parts]
    if len(parts) == 1:
        return default_schema, parts[0]
    # database.schema.name: the database part is implied by the snapshot
    return parts[-2] or default_schema, parts[-1]


class SqlServerCatalogStore(CatalogStore):
    """Catalog lookups over a DB-API connection to SQL Server (DAC)"""

    def __init__(self, connection, paramstyle='qmark'):
        if paramstyle not in ('qmark', 'format', 'pyformat'):
            raise ValueError(f'unsupported paramstyle: {paramstyle}')
        self.connection = connection
        self.paramstyle = paramstyle

    def _query(self, sql, params=()):
        if self.paramstyle != 'qmark':
            sql = sql.replace('?', '%s')
        cur = self.connection.cursor()
        try:
            cur.execute(sql, params)
            return cur.fetchall()
        finally:
            cur.close()

    def lookup_object_id(self, name):
        rows = self._query(OBJECT_ID_QUERY, (name,))
        if not rows or rows[0][0] is None:
            return None
        return _as_uint32(int(rows[0][0]))

    def lookup_family_identifier(self):
        rows = self._query(FAMILY_GUID_QUERY)
        if not rows or rows[0][0] is None:
            return None
        return bytes(rows[0][0])

    def lookup_encrypted_payloads(self, object_id):
        rows = self._query(PAYLOAD_QUERY, (_as_int32(object_id),))
        return [(bytes(imageval), int(subobjid)) for imageval, subobjid in rows]


def init_snapshot(con):
    """Create the snapshot tables on an open sqlite3 connection"""
    con.executescript(SNAPSHOT_SCHEMA)
    con.commit()


class SnapshotCatalogStore(CatalogStore):
    """Catalog lookups replayed from a SQLite snapshot file"""

    def __init__(self, path):
        self.path = Path(path)
        if not self.path.exists():
            raise FileNotFoundError(f"Snapshot not found at {self.path}")
        self.con = sqlite3.connect(str(self.path))

    @classmethod
    def create(cls, path, family_guid):
        """Create an empty snapshot holding only the family GUID"""
        con = sqlite3.connect(str(path))
        try:
            init_snapshot(con)
            con.execute("DELETE FROM family")
            con.execute("INSERT INTO family (family_guid) VALUES (?)", (bytes(family_guid),))
            con.commit()
        finally:
            con.close()
        return cls(path)

    @classmethod
    def capture(cls, source, path, names):
        """
        Copy the catalog rows of the named objects from another store
        (e.g. a SqlServerCatalogStore on a DAC connection) into a new snapshot.

        Nothing is decrypted here. Raises ResolutionError or CatalogReadError
        for the first name that cannot be copied.
        """
        family_guid = fetch_family_identifier(source)
        snapshot = cls.create(path, family_guid)
        try:
            for name in names:
                object_id = resolve_object_id(source, name)
                payloads = fetch_payloads(source, object_id)
                schema, obj = split_object_name(name)
                snapshot.add_object(object_id, obj, {p.subobject_id: p.ciphertext for p in payloads},
                                    schema=schema)
                log.info('captured %s.%s (object %d, %d fragment(s))', schema, obj, object_id, len(payloads))
        except Exception:
            snapshot.close()
            raise
        return snapshot

    def add_object(self, object_id, name, fragments, schema=DEFAULT_SCHEMA):
        """Store an object and its encrypted fragments ({subobjid: imageval})"""
        objid = _as_int32(object_id)
        self.con.execute(
            "INSERT OR REPLACE INTO objects (object_id, schema_name, name) VALUES (?, ?, ?)",
            (objid, schema, name),
        )
        for subobjid, imageval in fragments.items():
            self.con.execute(
                "INSERT OR REPLACE INTO sysobjvalues (objid, subobjid, imageval) VALUES (?, ?, ?)",
                (objid, subobjid, bytes(imageval)),
            )
        self.con.commit()

    def list_objects(self):
        """(object_id, 'schema.name', fragment count) for every encrypted object"""
        cur = self.con.execute(
            "SELECT o.object_id, o.schema_name, o.name, COUNT(v.subobjid) "
            "FROM objects o JOIN sysobjvalues v ON v.objid = o.object_id "
            "GROUP BY o.object_id ORDER BY o.schema_name, o.name"
        )
        return [(_as_uint32(oid), f"{schema}.{name}", count) for oid, schema, name, count in cur]

    def lookup_object_id(self, name):
        schema, obj = split_object_name(name)
        row = self.con.execute(
            "SELECT object_id FROM objects WHERE schema_name = ? AND name = ?",
            (schema, obj),
        ).fetchone()
        if row is None:
            log.debug('%s.%s not in snapshot %s', schema, obj, self.path)
            return None
        return _as_uint32(row[0])

    def lookup_family_identifier(self):
        row = self.con.execute("SELECT family_guid FROM family LIMIT 1").fetchone()
        if row is None:
            return None
        return bytes(row[0])

    def lookup_encrypted_payloads(self, object_id):
        cur = self.con.execute(
            "SELECT imageval, subobjid FROM sysobjvalues WHERE objid = ? ORDER BY subobjid",
            (_as_int32(object_id),),
        )
        return [(bytes(imageval), subobjid) for imageval, subobjid in cur]

    def close(self):
        self.con.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
