"""
Unit tests for persistence backends.

Tests cover:
- The StorageBackend contract, run against every implementation
- SQLite persistence across connections
- Journal replay, torn tails and compaction
"""

import tempfile

import pytest

from pathdb.backend import (
    DeleteWrite,
    InMemoryBackend,
    JournalBackend,
    PutWrite,
    SqliteBackend,
    StorageBackend,
    StoredDocument,
    create_backend,
)
from pathdb.config import BackendKind, StorageConfig
from pathdb.errors import BackendClosedError, BackendError
from pathdb.timestamp import Timestamp


def make_doc(collection, doc_id, data=None, t=1):
    """Build a stored document."""
    return StoredDocument(
        collection_path=collection,
        doc_id=doc_id,
        data=data if data is not None else {"name": doc_id},
        create_time=Timestamp(t, 0),
        update_time=Timestamp(t, 500),
    )


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture(params=["memory", "sqlite", "journal"])
async def backend(request, data_dir):
    """Connected backend of each kind."""
    if request.param == "memory":
        backend = InMemoryBackend()
    elif request.param == "sqlite":
        backend = SqliteBackend(data_dir, wal_mode=False)
    else:
        backend = JournalBackend(data_dir, fsync=False)
    await backend.connect()
    yield backend
    await backend.close()


class TestBackendContract:
    """Behaviour every StorageBackend must share."""

    async def test_implements_protocol(self, backend):
        """Backends satisfy the runtime-checkable protocol."""
        assert isinstance(backend, StorageBackend)
        assert backend.is_connected

    async def test_get_missing(self, backend):
        """Absent documents read as None."""
        assert await backend.get("users", "nobody") is None

    async def test_put_and_get(self, backend):
        """A put document can be read back with its times and values."""
        doc = make_doc("users", "u1", {"name": "Alice", "at": Timestamp(5, 6), "tags": ["a"]})
        await backend.commit([PutWrite(doc)])

        fetched = await backend.get("users", "u1")
        assert fetched == doc
        assert fetched.path == "users/u1"

    async def test_returned_values_not_aliased(self, backend):
        """Mutating a returned document does not change stored state."""
        await backend.commit([PutWrite(make_doc("users", "u1", {"tags": ["a"]}))])
        fetched = await backend.get("users", "u1")
        fetched.data["tags"].append("b")
        assert (await backend.get("users", "u1")).data == {"tags": ["a"]}

    async def test_scan_ordered_by_id_and_direct_children_only(self, backend):
        """scan returns the collection's own documents ordered by ID."""
        await backend.commit(
            [
                PutWrite(make_doc("users", "c")),
                PutWrite(make_doc("users", "a")),
                PutWrite(make_doc("users", "b")),
                PutWrite(make_doc("users/a/items", "i1")),
            ]
        )
        assert [d.doc_id for d in await backend.scan("users")] == ["a", "b", "c"]
        assert [d.doc_id for d in await backend.scan("users/a/items")] == ["i1"]
        assert await backend.scan("empty") == []

    async def test_delete(self, backend):
        """Deletes remove documents; deleting an absent document is ignored."""
        await backend.commit([PutWrite(make_doc("users", "u1"))])
        await backend.commit([DeleteWrite("users", "u1"), DeleteWrite("users", "ghost")])
        assert await backend.get("users", "u1") is None

    async def test_writes_apply_in_order(self, backend):
        """Later writes in one commit win."""
        await backend.commit(
            [
                PutWrite(make_doc("users", "u1", {"v": 1})),
                PutWrite(make_doc("users", "u1", {"v": 2})),
                PutWrite(make_doc("users", "u2")),
                DeleteWrite("users", "u2"),
            ]
        )
        assert (await backend.get("users", "u1")).data == {"v": 2}
        assert await backend.get("users", "u2") is None

    async def test_unknown_write_rejected_atomically(self, backend):
        """A bad write fails the whole commit."""
        with pytest.raises(BackendError):
            await backend.commit([PutWrite(make_doc("users", "u1")), "bogus"])
        assert await backend.get("users", "u1") is None

    async def test_closed_backend_raises(self, backend):
        """Operations after close raise BackendClosedError."""
        await backend.close()
        with pytest.raises(BackendClosedError):
            await backend.get("users", "u1")


class TestInMemoryBackend:
    """In-memory testing helpers."""

    async def test_document_counts(self):
        """Counts cover one collection or everything."""
        backend = InMemoryBackend()
        await backend.connect()
        await backend.commit([PutWrite(make_doc("users", "u1")), PutWrite(make_doc("teams", "t1"))])
        assert backend.get_document_count("users") == 1
        assert backend.get_document_count() == 2
        assert sorted(backend.collection_paths()) == ["teams", "users"]

        await backend.close()
        assert backend.get_document_count() == 0


class TestSqliteBackend:
    """SQLite-specific behaviour."""

    async def test_persists_across_connections(self, data_dir):
        """Data survives close and reconnect."""
        backend = SqliteBackend(data_dir)
        await backend.connect()
        await backend.commit([PutWrite(make_doc("users", "u1", {"at": Timestamp(1, 2)}))])
        await backend.close()

        reopened = SqliteBackend(data_dir)
        await reopened.connect()
        fetched = await reopened.get("users", "u1")
        assert fetched.data == {"at": Timestamp(1, 2)}
        assert await reopened.get_stats() == {"documents": 1, "collections": 1}
        await reopened.close()


class HalfWriteFile:
    """Journal file that writes half of the first line it gets, then fails."""

    def __init__(self, inner):
        self.inner = inner
        self.failed = False

    def write(self, data):
        if not self.failed:
            self.failed = True
            self.inner.write(data[: len(data) // 2])
            self.inner.flush()
            raise OSError(28, "No space left on device")
        return self.inner.write(data)

    def __getattr__(self, name):
        return getattr(self.inner, name)


class TestJournalBackend:
    """Journal-specific behaviour."""

    async def test_replay_rebuilds_state(self, data_dir):
        """Reconnecting replays every commit."""
        backend = JournalBackend(data_dir, fsync=False)
        await backend.connect()
        await backend.commit([PutWrite(make_doc("users", "u1")), PutWrite(make_doc("users", "u2"))])
        await backend.commit([DeleteWrite("users", "u1")])
        await backend.close()

        reopened = JournalBackend(data_dir, fsync=False)
        await reopened.connect()
        assert [d.doc_id for d in await reopened.scan("users")] == ["u2"]
        assert reopened.sequence == 2
        await reopened.close()

    async def test_torn_tail_is_dropped(self, data_dir):
        """A partial last line is ignored and truncated away."""
        backend = JournalBackend(data_dir, fsync=False)
        await backend.connect()
        await backend.commit([PutWrite(make_doc("users", "u1"))])
        await backend.close()

        with open(backend.journal_path, "ab") as f:
            f.write(b'{"seq":2,"writes":[{"op":"pu')

        reopened = JournalBackend(data_dir, fsync=False)
        await reopened.connect()
        assert [d.doc_id for d in await reopened.scan("users")] == ["u1"]
        await reopened.commit([PutWrite(make_doc("users", "u3"))])
        await reopened.close()

        again = JournalBackend(data_dir, fsync=False)
        await again.connect()
        assert [d.doc_id for d in await again.scan("users")] == ["u1", "u3"]
        await again.close()

    async def test_corrupt_middle_line_raises(self, data_dir):
        """Corruption before the last line is an error, not silently skipped."""
        backend = JournalBackend(data_dir, fsync=False)
        await backend.connect()
        await backend.commit([PutWrite(make_doc("users", "u1"))])
        await backend.close()

        with open(backend.journal_path, "rb") as f:
            valid_line = f.readline()
        with open(backend.journal_path, "ab") as f:
            f.write(b"garbage\n" + valid_line)

        with pytest.raises(BackendError):
            await JournalBackend(data_dir, fsync=False).connect()

    async def test_failed_append_does_not_swallow_next_commit(self, data_dir):
        """A half-written commit is cut away so later commits survive a restart."""
        backend = JournalBackend(data_dir, fsync=False)
        await backend.connect()
        await backend.commit([PutWrite(make_doc("users", "u0"))])
        backend._file = HalfWriteFile(backend._file)

        with pytest.raises(BackendError):
            await backend.commit([PutWrite(make_doc("users", "u1"))])
        assert await backend.get("users", "u1") is None

        await backend.commit([PutWrite(make_doc("users", "u2"))])
        await backend.close()

        reopened = JournalBackend(data_dir, fsync=False)
        await reopened.connect()
        assert [d.doc_id for d in await reopened.scan("users")] == ["u0", "u2"]
        await reopened.close()

    async def test_compact(self, data_dir):
        """compact() keeps only live documents."""
        backend = JournalBackend(data_dir, fsync=False)
        await backend.connect()
        for i in range(5):
            await backend.commit([PutWrite(make_doc("users", "u1", {"v": i}))])
        await backend.commit([PutWrite(make_doc("users/u1/items", "i1"))])

        count = await backend.compact()
        assert count == 2
        with open(backend.journal_path, "rb") as f:
            assert len(f.read().splitlines()) == 2

        await backend.commit([PutWrite(make_doc("users", "u2"))])
        await backend.close()

        reopened = JournalBackend(data_dir, fsync=False)
        await reopened.connect()
        assert (await reopened.get("users", "u1")).data == {"v": 4}
        assert [d.doc_id for d in await reopened.scan("users")] == ["u1", "u2"]
        assert reopened.sequence == 3
        await reopened.close()


class TestCreateBackend:
    """Tests for the backend factory."""

    def test_memory(self):
        """Memory is the default."""
        assert isinstance(create_backend(StorageConfig()), InMemoryBackend)

    def test_file_backends(self, data_dir):
        """File-backed kinds use data_dir."""
        sqlite = create_backend(StorageConfig(backend=BackendKind.SQLITE, data_dir=data_dir))
        journal = create_backend(StorageConfig(backend=BackendKind.JOURNAL, data_dir=data_dir))
        assert isinstance(sqlite, SqliteBackend)
        assert isinstance(journal, JournalBackend)

    def test_missing_data_dir(self):
        """File-backed kinds without data_dir are rejected."""
        with pytest.raises(ValueError):
            create_backend(StorageConfig(backend=BackendKind.JOURNAL))
