"""Eternal conversation memory: append-only turn log plus a semantic index.

Purpose:
- Persist every completed Turn per session, durably and in order.
- Serve bounded recent-context windows for a session.
- Answer similarity queries over all turns of all sessions.
- Export point-in-time backups and restore from them.

Data flow:
1. `open()` reads `turns.jsonl` (source of truth) and `turns.index` (FAISS).
2. The index is reconciled against the log by count: a shorter index is extended
   with embeddings for the missing tail, an inconsistent one is rebuilt.
3. `store_conversation` embeds the turn text, then appends the log line, the index
   vector and the in-memory record, in that order.
4. `get_session_context` and `semantic_search` read in-memory state.

Index lifecycle:
- `IndexFlatIP` over L2-normalized vectors (inner product == cosine similarity).
- Index position `i` always corresponds to `self._turns[i]`; both are only appended
  under `_index_lock`.
- The index file is rewritten with a temporary file and `os.replace` every
  `INDEX_FLUSH_EVERY` appends and on `flush()`/`close()`. A crash between flushes
  leaves a shorter index, which `open()` extends from the log.

Concurrency:
- One `threading.Lock` per session serializes timestamp assignment and append for
  that session. Appends to different sessions only contend on the short
  `_index_lock` section (log write + index add); embedding happens outside it.
- Reads snapshot under `_index_lock` and do their work outside it.

Failure modes:
- Any call on a store that is not open raises `Unavailable`.
- Log write failures raise `Unavailable`; nothing is appended in memory.
- Unknown sessions and empty stores are not errors: they return empty results.
"""

import json
import logging
import os
import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone

import faiss

from agenthub.errors import InvalidArgument, Unavailable
from agenthub.memory.models import ContextWindow, SearchHit, Turn


logger = logging.getLogger(__name__)


LOG_FILENAME = "turns.jsonl"
INDEX_FILENAME = "turns.index"

BACKUP_FORMAT = "agenthub.eternal-memory"
BACKUP_VERSION = 1

INDEX_FLUSH_EVERY = 50
LOG_SCAN_CHUNK = 4096
MAX_SEARCH_LIMIT = 100
TIMESTAMP_EPSILON = 1e-6
SCORE_PRECISION = 6


def _iso(ts):
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def atomic_json_save(path, data):
    """Persist JSON data atomically via temporary file replacement."""
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    os.replace(tmp, path)


class EternalMemory:
    """Durable per-session turn store with semantic search.

    Args:
        embedder: `Embedder`-compatible object (`dimension`, `embed_query`,
            `embed_passage`, `embed_passages`).
        data_dir: Directory for the turn log and index; `None` keeps state in
            memory only.
        backup_dir: Directory where `create_backup` writes export files; `None`
            returns the export without writing it.
        registry: Optional `AgentRegistry`; when set, every Turn's `agent_id`
            must resolve before it is persisted.
    """

    def __init__(self, embedder, data_dir=None, backup_dir=None, registry=None):
        self._embedder = embedder
        self._dimension = embedder.dimension
        self._data_dir = data_dir
        self._backup_dir = backup_dir
        self._registry = registry

        self._index = faiss.IndexFlatIP(self._dimension)
        self._turns = []
        self._sessions = {}

        self._index_lock = threading.Lock()
        self._session_locks = {}
        self._session_locks_guard = threading.Lock()

        self._unflushed = 0
        self._available = False
        self._opened_at = None

    # =========================================================
    # LIFECYCLE
    # =========================================================

    @property
    def available(self):
        return self._available

    @property
    def log_path(self):
        if not self._data_dir:
            return None
        return os.path.join(self._data_dir, LOG_FILENAME)

    @property
    def index_path(self):
        if not self._data_dir:
            return None
        return os.path.join(self._data_dir, INDEX_FILENAME)

    def open(self):
        """Load persisted state and mark the store available.

        Raises:
            Unavailable: When the data directory cannot be created or read.
        """
        if self._available:
            return self

        if self._data_dir:
            try:
                os.makedirs(self._data_dir, exist_ok=True)
                self._repair_log_tail()
                turns = self._read_log()
            except OSError as err:
                logger.exception("Failed to open memory directory %s", self._data_dir)
                raise Unavailable("Memory system not available") from err

            with self._index_lock:
                for turn in turns:
                    self._turns.append(turn)
                    self._sessions.setdefault(turn.session_id, []).append(turn)
                self._index = self._reconcile_index(self._load_index(), self._turns)

        self._available = True
        self._opened_at = time.time()
        logger.info(
            "Eternal memory open: %d turns in %d sessions (dir=%s)",
            len(self._turns),
            len(self._sessions),
            self._data_dir or "<memory>",
        )
        return self

    def flush(self):
        """Write the FAISS index to disk if it has unflushed entries."""
        if not self._data_dir:
            return
        with self._index_lock:
            if self._unflushed:
                self._write_index()

    def close(self):
        """Flush and mark the store unavailable. Later calls raise `Unavailable`."""
        if not self._available:
            return
        try:
            self.flush()
        except OSError:
            logger.exception("Failed to flush memory index on close")
        self._available = False

    def _require_available(self):
        if not self._available:
            raise Unavailable("Memory system not available")

    def _repair_log_tail(self):
        """Cut an unterminated trailing line left by an interrupted append."""
        path = self.log_path
        if not os.path.exists(path):
            return

        with open(path, "rb+") as f:
            size = f.seek(0, os.SEEK_END)
            if size == 0:
                return
            f.seek(size - 1)
            if f.read(1) == b"\n":
                return

            keep = 0
            end = size
            while end > 0:
                start = max(0, end - LOG_SCAN_CHUNK)
                f.seek(start)
                pos = f.read(end - start).rfind(b"\n")
                if pos != -1:
                    keep = start + pos + 1
                    break
                end = start

            logger.warning(
                "Truncating torn trailing line in %s (%d -> %d bytes)", path, size, keep
            )
            f.truncate(keep)
            f.flush()
            os.fsync(f.fileno())

    def _read_log(self):
        path = self.log_path
        if not os.path.exists(path):
            return []

        turns = []
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    turns.append(Turn.from_dict(json.loads(line)))
                except (ValueError, KeyError):
                    logger.warning("Skipping unreadable turn log line %d in %s", lineno, path)
        return turns

    def _load_index(self):
        path = self.index_path
        if path and os.path.exists(path):
            try:
                return faiss.read_index(path)
            except Exception:
                logger.exception("Failed to load memory FAISS index from %s", path)
        return faiss.IndexFlatIP(self._dimension)

    def _reconcile_index(self, index, turns):
        """Make `index` describe exactly `turns`, extending or rebuilding it."""
        if getattr(index, "d", self._dimension) != self._dimension or index.ntotal > len(turns):
            logger.warning(
                "Memory index inconsistent with turn log (ntotal=%s, turns=%d, d=%s). Rebuilding.",
                index.ntotal,
                len(turns),
                getattr(index, "d", "unknown"),
            )
            index = faiss.IndexFlatIP(self._dimension)

        missing = turns[index.ntotal:]
        if missing:
            logger.info("Embedding %d turns missing from the memory index", len(missing))
            index.add(self._embedder.embed_passages([t.text for t in missing]))
            self._index = index
            self._write_index()

        return index

    def _write_index(self):
        tmp = self.index_path + ".tmp"
        faiss.write_index(self._index, tmp)
        os.replace(tmp, self.index_path)
        self._unflushed = 0

    def _append_log(self, turns):
        """Append turns as JSON lines; a failed write leaves the log unchanged."""
        data = "".join(
            json.dumps(turn.to_dict(), ensure_ascii=False) + "\n" for turn in turns
        ).encode("utf-8")

        fd = os.open(self.log_path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        try:
            start = os.lseek(fd, 0, os.SEEK_END)
            try:
                view = memoryview(data)
                while view:
                    view = view[os.write(fd, view):]
                os.fsync(fd)
            except OSError:
                os.ftruncate(fd, start)
                raise
        finally:
            os.close(fd)

    def _session_lock(self, session_id):
        with self._session_locks_guard:
            lock = self._session_locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._session_locks[session_id] = lock
            return lock

    # =========================================================
    # WRITE PATH
    # =========================================================

    def _validate_turn(self, turn):
        if not isinstance(turn.session_id, str) or not turn.session_id.strip():
            raise InvalidArgument("sessionId is required")
        if not isinstance(turn.user_message, str) or not turn.user_message.strip():
            raise InvalidArgument("userMessage is required")
        if not isinstance(turn.assistant_response, str):
            raise InvalidArgument("assistantResponse must be a string")
        if self._registry is not None:
            # Raises NotFound for unknown agents.
            self._registry.get(turn.agent_id)

        cost = turn.metadata.get("cost")
        if cost is not None and (isinstance(cost, bool) or not isinstance(cost, (int, float)) or cost < 0):
            raise InvalidArgument("metadata.cost must be a non-negative number")

    def store_conversation(self, turn):
        """Append one Turn to its session.

        Args:
            turn: Turn to persist. `timestamp` may be `None` (assigned here) or an
                explicit value that must be greater than the session's last one.

        Returns:
            The stored Turn with `timestamp`, `sequence` and `turn_id` filled in.

        Raises:
            Unavailable: Store not open, or the turn log cannot be written.
            InvalidArgument: Missing fields, negative cost, non-increasing explicit
                timestamp.
            NotFound: `agent_id` does not resolve in the registry.
        """
        self._require_available()
        self._validate_turn(turn)

        vector = self._embedder.embed_passage(turn.text)

        with self._session_lock(turn.session_id):
            history = self._sessions.get(turn.session_id, [])
            last_ts = history[-1].timestamp if history else None

            if turn.timestamp is not None:
                timestamp = float(turn.timestamp)
                if last_ts is not None and timestamp <= last_ts:
                    raise InvalidArgument(
                        f"Turn timestamp {timestamp} is not after the session's last turn ({last_ts})"
                    )
            else:
                timestamp = time.time()
                if last_ts is not None and timestamp <= last_ts:
                    timestamp = last_ts + TIMESTAMP_EPSILON

            stored = replace(
                turn,
                timestamp=timestamp,
                sequence=len(history),
                turn_id=turn.turn_id or uuid.uuid4().hex,
                metadata=dict(turn.metadata),
            )

            with self._index_lock:
                self._require_available()
                if self._data_dir:
                    try:
                        self._append_log([stored])
                    except OSError as err:
                        logger.exception("Failed to append turn to %s", self.log_path)
                        raise Unavailable("Memory system not available") from err

                self._index.add(vector)
                self._turns.append(stored)
                self._sessions.setdefault(stored.session_id, []).append(stored)

                if self._data_dir:
                    self._unflushed += 1
                    if self._unflushed >= INDEX_FLUSH_EVERY:
                        try:
                            self._write_index()
                        except OSError:
                            # The log already holds the turn; open() re-embeds it.
                            logger.exception("Failed to flush memory index")

        logger.debug(
            "Stored turn %s (session=%s, seq=%d)",
            stored.turn_id,
            stored.session_id,
            stored.sequence,
        )
        return stored

    # =========================================================
    # READ PATH
    # =========================================================

    def get_session_context(self, session_id, window=None):
        """Return the most recent turns of a session, oldest first.

        Args:
            session_id: Session to read.
            window: `ContextWindow` bound; defaults to the last 10 turns.

        Returns:
            List of Turns forming a suffix of the session history that fits both
            bounds. Unknown sessions return `[]`.

        Determinism:
            Identical results for identical inputs without intervening writes.
        """
        self._require_available()
        window = window or ContextWindow()

        with self._index_lock:
            history = list(self._sessions.get(session_id, ()))

        selected = []
        tokens = 0
        for turn in reversed(history):
            if window.max_turns is not None and len(selected) >= window.max_turns:
                break
            cost = turn.token_estimate()
            if window.max_tokens is not None and tokens + cost > window.max_tokens:
                break
            selected.append(turn)
            tokens += cost

        selected.reverse()
        return selected

    def semantic_search(self, query, limit=10):
        """Rank all turns by similarity to `query`.

        Args:
            query: Non-empty search text.
            limit: Maximum hits, `1..MAX_SEARCH_LIMIT` (larger values are capped).

        Returns:
            Up to `limit` `SearchHit`s ordered by descending score; equal scores
            are ordered most recent first. An empty store returns `[]`.

        Raises:
            InvalidArgument: Blank query or non-positive limit.
        """
        self._require_available()

        if not isinstance(query, str) or not query.strip():
            raise InvalidArgument("Query is required")
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise InvalidArgument("limit must be a positive integer")
        limit = min(limit, MAX_SEARCH_LIMIT)

        with self._index_lock:
            if self._index.ntotal == 0:
                return []

        qvec = self._embedder.embed_query(query)

        with self._index_lock:
            total = self._index.ntotal
            # Search every entry so ties at the limit boundary are ordered by recency.
            scores, indices = self._index.search(qvec, total)
            turns = self._turns[:total]

        ranked = []
        for score, idx in zip(scores[0], indices[0]):
            if idx < 0 or idx >= len(turns):
                continue
            ranked.append(SearchHit(turn=turns[idx], score=round(float(score), SCORE_PRECISION)))

        ranked.sort(key=lambda hit: (-hit.score, -(hit.turn.timestamp or 0.0)))
        return ranked[:limit]

    # =========================================================
    # BACKUP / STATS
    # =========================================================

    def create_backup(self):
        """Export every session and turn as a self-describing dictionary.

        The turn list is copied under the index lock (a reference copy of
        immutable records); serialization and file writes happen outside it, so
        concurrent appends are blocked only for the copy.

        Returns:
            Export dict. When a backup directory is configured, the export is also
            written there and its path is returned under `file`.
        """
        self._require_available()

        with self._index_lock:
            turns = list(self._turns)

        created = datetime.now(timezone.utc)
        sessions = {}
        for turn in turns:
            sessions.setdefault(turn.session_id, []).append(turn.to_dict())

        backup = {
            "format": BACKUP_FORMAT,
            "version": BACKUP_VERSION,
            "createdAt": created.isoformat(),
            "embedDimension": self._dimension,
            "sessionCount": len(sessions),
            "turnCount": len(turns),
            "sessions": sessions,
        }

        if self._backup_dir:
            try:
                os.makedirs(self._backup_dir, exist_ok=True)
                filename = f"backup_{created.strftime('%Y%m%d_%H%M%S_%f')}.json"
                path = os.path.join(self._backup_dir, filename)
                atomic_json_save(path, backup)
            except OSError as err:
                logger.exception("Failed to write memory backup")
                raise Unavailable("Memory backup could not be written") from err
            backup = dict(backup, file=path)
            logger.info("Memory backup written to %s (%d turns)", path, len(turns))

        return backup

    def load_backup(self, backup):
        """Rebuild an empty store from a `create_backup()` export.

        Turns keep their ids, timestamps and sequences; agent ids are not
        re-validated because the registry may have changed since the export.

        Returns:
            Number of restored turns.

        Raises:
            InvalidArgument: Unknown format/version, malformed turns or a non-empty
                store.
            Unavailable: The restored turns cannot be written to the turn log.
        """
        self._require_available()

        if not isinstance(backup, dict) or backup.get("format") != BACKUP_FORMAT:
            raise InvalidArgument("Not an eternal memory backup")
        if backup.get("version") != BACKUP_VERSION:
            raise InvalidArgument(f"Unsupported backup version {backup.get('version')!r}")

        try:
            turns = [
                Turn.from_dict(entry)
                for entries in (backup.get("sessions") or {}).values()
                for entry in entries
            ]
        except (KeyError, TypeError, AttributeError) as err:
            raise InvalidArgument("Backup contains malformed turns") from err
        turns.sort(key=lambda t: (t.timestamp or 0.0, t.session_id, t.sequence or 0))

        vectors = self._embedder.embed_passages([t.text for t in turns]) if turns else None

        with self._index_lock:
            if self._turns:
                raise InvalidArgument("Backups can only be restored into an empty store")

            if self._data_dir and turns:
                try:
                    self._append_log(turns)
                except OSError as err:
                    logger.exception("Failed to write restored turns to %s", self.log_path)
                    raise Unavailable("Memory system not available") from err

            if turns:
                self._index.add(vectors)
            for turn in turns:
                self._turns.append(turn)
                self._sessions.setdefault(turn.session_id, []).append(turn)

            if self._data_dir and turns:
                try:
                    self._write_index()
                except OSError:
                    logger.exception("Failed to write memory index after restore")

        logger.info("Restored %d turns from backup", len(turns))
        return len(turns)

    def get_stats(self):
        """Summarize sessions, turns and storage footprint."""
        if not self._available:
            return {"status": "unavailable"}

        with self._index_lock:
            turn_count = len(self._turns)
            session_count = len(self._sessions)
            index_size = self._index.ntotal
            oldest = min((t.timestamp for t in self._turns), default=None)
            newest = max((t.timestamp for t in self._turns), default=None)

        storage_bytes = 0
        for path in (self.log_path, self.index_path):
            if path and os.path.exists(path):
                storage_bytes += os.path.getsize(path)

        return {
            "status": "active",
            "sessions": session_count,
            "turns": turn_count,
            "indexSize": index_size,
            "storageBytes": storage_bytes,
            "persistent": bool(self._data_dir),
            "oldestTurnAt": _iso(oldest),
            "newestTurnAt": _iso(newest),
            "ageSeconds": round(time.time() - oldest, 3) if oldest is not None else None,
            "openedAt": _iso(self._opened_at),
        }
