"""
Append-only journal backend for PathDB.

Every commit is appended to a JSON-lines journal as one line, so a
multi-document batch is either fully in the journal or not at all. The
live state is kept in memory and rebuilt by replaying the journal on
connect().

Journal line format:
    {"seq": 7, "ts": 1730000000000000000, "writes": [
        {"op": "put", "document": {...StoredDocument...}},
        {"op": "delete", "collection_path": "users", "doc_id": "u1"}
    ]}

Invariants:
    - The journal is the source of truth; memory is a derived view
    - One line per commit
    - A torn final line (crash mid-append) is dropped on replay
    - A corrupt line anywhere else aborts connect()
    - A failed append is cut back to the previous commit before the error
      propagates, so the journal never holds a fragment followed by a commit

How to change safely:
    - Keep replay able to read every line format ever written
    - compact() must write the snapshot fully before replacing the journal
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import IO, Any

from .. import codec
from ..errors import BackendClosedError, BackendError, CodecError
from .base import DeleteWrite, PutWrite, StoredDocument, Write
from .memory import InMemoryBackend

logger = logging.getLogger(__name__)


def _encode_write(write: Write) -> dict[str, Any]:
    if isinstance(write, PutWrite):
        return {"op": "put", "document": write.document.to_dict()}
    if isinstance(write, DeleteWrite):
        return {
            "op": "delete",
            "collection_path": write.collection_path,
            "doc_id": write.doc_id,
        }
    raise BackendError(f"Unknown write type: {type(write).__name__}")


def _decode_write(data: dict[str, Any]) -> Write:
    op = data.get("op")
    if op == "put":
        return PutWrite(StoredDocument.from_dict(data["document"]))
    if op == "delete":
        return DeleteWrite(data["collection_path"], data["doc_id"])
    raise BackendError(f"Unknown journal op: {op}")


class JournalBackend:
    """Append-only journal implementation of StorageBackend.

    Example:
        >>> backend = JournalBackend("/var/lib/pathdb")
        >>> await backend.connect()   # replays pathdb.journal
        >>> await backend.commit([PutWrite(doc)])
    """

    def __init__(
        self,
        data_dir: str,
        database_name: str = "pathdb",
        fsync: bool = True,
    ) -> None:
        """Initialize the journal backend.

        Args:
            data_dir: Directory for the journal file
            database_name: File stem of the journal
            fsync: fsync after every appended commit
        """
        self.data_dir = Path(data_dir)
        safe_name = "".join(c for c in database_name if c.isalnum() or c in "-_")
        self.journal_path = self.data_dir / f"{safe_name}.journal"
        self.fsync = fsync
        self._state = InMemoryBackend()
        self._file: IO[bytes] | None = None
        self._seq = 0

    @property
    def is_connected(self) -> bool:
        return self._file is not None

    @property
    def sequence(self) -> int:
        """Sequence number of the last applied commit."""
        return self._seq

    async def connect(self) -> None:
        """Replay the journal and open it for appending."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        await self._state.connect()
        replayed = await self._replay()
        self._file = open(self.journal_path, "ab")
        logger.info(
            "Journal backend connected",
            extra={"journal_path": str(self.journal_path), "replayed_commits": replayed},
        )

    async def _replay(self) -> int:
        if not self.journal_path.exists():
            return 0

        with open(self.journal_path, "rb") as f:
            lines = f.read().split(b"\n")

        good_bytes = 0
        replayed = 0
        for index, line in enumerate(lines):
            if not line.strip():
                good_bytes += len(line) + 1
                continue
            is_last = all(not rest.strip() for rest in lines[index + 1 :])
            try:
                entry = codec.loads(line)
                writes = [_decode_write(w) for w in entry["writes"]]
            except (CodecError, KeyError, TypeError) as e:
                if is_last:
                    logger.warning(
                        "Dropping torn journal tail",
                        extra={"journal_path": str(self.journal_path), "error": str(e)},
                    )
                    break
                raise BackendError(
                    f"Corrupt journal entry at line {index + 1}: {e}",
                    details={"journal_path": str(self.journal_path)},
                )
            await self._state.commit(writes)
            self._seq = entry.get("seq", self._seq + 1)
            replayed += 1
            good_bytes += len(line) + 1

        size = self.journal_path.stat().st_size
        if good_bytes < size:
            with open(self.journal_path, "r+b") as f:
                f.truncate(good_bytes)
        return replayed

    async def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
        await self._state.close()
        self._seq = 0
        logger.info("Journal backend closed", extra={"journal_path": str(self.journal_path)})

    def _check_connected(self) -> IO[bytes]:
        if self._file is None:
            raise BackendClosedError("Not connected")
        return self._file

    async def get(self, collection_path: str, doc_id: str) -> StoredDocument | None:
        self._check_connected()
        return await self._state.get(collection_path, doc_id)

    async def scan(self, collection_path: str) -> list[StoredDocument]:
        self._check_connected()
        return await self._state.scan(collection_path)

    async def commit(self, writes: list[Write]) -> None:
        f = self._check_connected()
        entry = {
            "seq": self._seq + 1,
            "ts": time.time_ns(),
            "writes": [_encode_write(w) for w in writes],
        }
        line = codec.dumps(entry).encode("utf-8") + b"\n"

        offset = f.tell()
        try:
            f.write(line)
            f.flush()
            if self.fsync:
                os.fsync(f.fileno())
        except OSError as e:
            self._discard_partial(f, offset)
            raise BackendError(
                f"Journal append failed: {e}",
                details={"journal_path": str(self.journal_path)},
            ) from e

        await self._state.commit(writes)
        self._seq += 1
        logger.debug("Appended commit to journal", extra={"seq": self._seq, "writes": len(writes)})

    def _discard_partial(self, f: IO[bytes], offset: int) -> None:
        """Cut a failed append back to the last complete commit.

        If the journal cannot be truncated the backend is closed, so no
        later commit is appended onto the fragment.
        """
        try:
            f.truncate(offset)
            f.seek(offset)
            f.flush()
            if self.fsync:
                os.fsync(f.fileno())
        except (OSError, ValueError):
            logger.exception(
                "Could not truncate journal after failed append",
                extra={"journal_path": str(self.journal_path), "seq": self._seq},
            )
            try:
                f.close()
            except OSError:
                pass
            self._file = None

    async def compact(self) -> int:
        """Rewrite the journal as one snapshot line per live document.

        Returns:
            Number of documents written
        """
        f = self._check_connected()
        tmp_path = self.journal_path.with_suffix(".journal.tmp")
        count = 0
        with open(tmp_path, "wb") as out:
            for collection_path in self._state.collection_paths():
                for doc in await self._state.scan(collection_path):
                    count += 1
                    entry = {
                        "seq": count,
                        "ts": time.time_ns(),
                        "writes": [_encode_write(PutWrite(doc))],
                    }
                    out.write(codec.dumps(entry).encode("utf-8") + b"\n")
            out.flush()
            os.fsync(out.fileno())

        f.close()
        os.replace(tmp_path, self.journal_path)
        self._file = open(self.journal_path, "ab")
        self._seq = count
        logger.info("Compacted journal", extra={"documents": count})
        return count
