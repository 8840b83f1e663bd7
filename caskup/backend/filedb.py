import pathlib
import sqlite3
import time

RECEIPTS_DB_FILENAME = "receipts.db"
TABLES_SCHEMA="""
CREATE TABLE IF NOT EXISTS meta(key TEXT, value BLOB);
CREATE UNIQUE INDEX IF NOT EXISTS meta_key ON meta (key);

CREATE TABLE IF NOT EXISTS receipts(name TEXT, version TEXT, arch TEXT, url TEXT, sha256 TEXT, path TEXT, installed INTEGER);
CREATE UNIQUE INDEX IF NOT EXISTS receipts_name ON receipts (name);
"""

class FileDB:
    '''Installed casks, one receipt per cask name.'''
    _conn: sqlite3.Connection
    def __init__(self, statedir) -> None:
        statedir = pathlib.Path(statedir)
        statedir.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(statedir / RECEIPTS_DB_FILENAME)
        self._populate_tables()
    def _populate_tables(self):
        self._conn.executescript(TABLES_SCHEMA)
    def close(self):
        self._conn.close()
    def __enter__(self):
        return self
    def __exit__(self, exception_type, exception_value, exception_traceback):
        self.close()
    def get_meta(self, key, default=None):
        cur = self._conn.execute("SELECT value FROM meta WHERE key = ? LIMIT 1", (key,))
        result = cur.fetchall()
        cur.close()
        if len(result) == 0:
            return default
        return result[0][0]
    def set_meta(self, key, value):
        self._conn.execute("INSERT INTO meta VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value", (key, value,)).close()
        self._conn.commit()
    def get_receipt(self, name):
        cur = self._conn.execute("SELECT * FROM receipts WHERE name = ? LIMIT 1", (name,))
        result = cur.fetchall()
        cur.close()
        if len(result) == 0:
            return None
        return result[0]
    def get_receipts(self):
        cur = self._conn.execute("SELECT * FROM receipts ORDER BY name")
        receipts = cur.fetchall()
        cur.close()
        return receipts
    def record_receipt(self, name, version, arch, url, sha256, path, installed=None):
        installed = int(time.time()) if installed is None else installed
        self._conn.execute("INSERT INTO receipts VALUES(?, ?, ?, ?, ?, ?, ?) ON CONFLICT(name) DO UPDATE SET "
                           "version=excluded.version, arch=excluded.arch, url=excluded.url, "
                           "sha256=excluded.sha256, path=excluded.path, installed=excluded.installed",
                           (name, version, arch, url, sha256, str(path), installed)).close()
        self._conn.commit()
    def forget_receipt(self, name):
        self._conn.execute("DELETE FROM receipts WHERE name = ?", (name,)).close()
        self._conn.commit()
