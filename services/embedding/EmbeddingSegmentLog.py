import gzip
import json
import os
import shutil
import threading
import time
import zlib
from typing import Callable

from pydantic import BaseModel, Field

from shared.helper.HelperConfig import HelperConfig

MANIFEST_NAME = "segments.json"
SEGMENT_PREFIX = "segment-"
SEGMENT_SUFFIX = ".ndjson"
GZIP_SUFFIX = ".gz"


class SegmentEntry(BaseModel):
    """
    One manifest line.

    Attributes:
        file (str): Segment file name inside the log directory.
        size (int): Bytes on disk when the manifest was last written.
        created_at (int): Creation time in epoch milliseconds (``createdAt`` in JSON).
    """

    file: str
    size: int = 0
    created_at: int = Field(default=0, alias="createdAt")

    model_config = {"populate_by_name": True}


class EmbeddingSegmentLog:
    """Append-only, segmented NDJSON log of ``{key, embedding}`` records.

    The directory holds segment files ``segment-<ms>-<seq>.ndjson`` (gzip
    compressed to ``.ndjson.gz`` once rotated, when compression is on) and a
    manifest ``segments.json`` listing them in append order. Appends always go
    to the last segment. A batch that would push it past ``segment_max_bytes``
    first rotates to a fresh segment, so one batch never spans two files.

    The manifest is rewritten only after the segment file is closed. A crash
    can therefore leave a manifest entry without a finished file, or a file
    without a manifest entry; :meth:`load` tolerates both.

    Writes are blocking file I/O; async callers run them in a worker thread.
    """

    def __init__(
        self,
        helper_config: HelperConfig,
        directory: str | None = None,
        segment_size_mb: float | None = None,
        compress: bool | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.logging = helper_config.get_logger()
        self.directory = directory or helper_config.get_path_val("RAG_EMBEDDINGS_DIR", os.path.join("data", "embeddings"))
        size_mb = segment_size_mb if segment_size_mb is not None else helper_config.get_number_val("RAG_EMB_SEGMENT_SIZE_MB", default=16)
        self.segment_max_bytes = max(1, int(size_mb * 1024 * 1024))
        self.compress = compress if compress is not None else helper_config.get_bool_val("RAG_EMB_COMPRESS", default=True)
        self._clock = clock

        self._lock = threading.Lock()
        self._segments: list[SegmentEntry] | None = None
        self._current_size = 0
        self._seq = 0

    ##########################################
    ################ WRITER ##################
    ##########################################

    def append_batch(self, records: list[tuple[str, list[float]]]) -> None:
        """Append one batch of records contiguously to the current segment.

        Args:
            records (list[tuple[str, list[float]]]): ``(key, embedding)`` pairs in batch order.
        """
        if not records:
            return
        data = "".join(
            json.dumps({"key": key, "embedding": embedding}, separators=(",", ":")) + "\n"
            for key, embedding in records
        ).encode("utf-8")

        with self._lock:
            self._ensure_open()
            if self._current_size > 0 and self._current_size + len(data) > self.segment_max_bytes:
                self._rotate()

            current = self._segments[-1]
            path = os.path.join(self.directory, current.file)
            with open(path, "ab") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            self._current_size += len(data)
            current.size = self._current_size
            self._write_manifest()

    def get_segments(self) -> list[SegmentEntry]:
        with self._lock:
            return [s.model_copy() for s in (self._segments or self._read_manifest() or [])]

    ##########################################
    ################ READER ##################
    ##########################################

    def load(self, sink: Callable[[str, list[float]], None]) -> int:
        """Stream every well-formed record into ``sink``.

        Segments are read in manifest order, then any segment files the
        manifest does not mention. Missing files, undecodable lines and
        truncated gzip members are skipped.

        Args:
            sink (Callable[[str, list[float]], None]): Receives ``(key, embedding)``.

        Returns:
            int: Number of records delivered.
        """
        if not os.path.isdir(self.directory):
            return 0
        manifest = self._read_manifest()
        if manifest is None:
            return 0

        names: list[str] = []
        for entry in manifest:
            name = self._resolve_existing(entry.file)
            if name is not None and name not in names:
                names.append(name)
        for name in sorted(os.listdir(self.directory)):
            if self._is_segment_name(name) and name not in names and self._counterpart(name) not in names:
                names.append(name)

        loaded = 0
        for name in names:
            loaded += self._load_segment(os.path.join(self.directory, name), sink)
        self.logging.info("Loaded %d persisted embeddings from %d segments in %s", loaded, len(names), self.directory)
        return loaded

    ##########################################
    ############### HELPERS ##################
    ##########################################

    def _ensure_open(self) -> None:
        if self._segments is not None:
            return
        os.makedirs(self.directory, exist_ok=True)
        self._segments = self._read_manifest() or []

        if self._segments:
            current = self._segments[-1]
            path = os.path.join(self.directory, current.file)
            if current.file.endswith(SEGMENT_SUFFIX) and os.path.isfile(path):
                self._current_size = os.path.getsize(path)
                self._terminate_partial_line(path)
                return
        self._start_segment()

    def _terminate_partial_line(self, path: str) -> None:
        # a crashed writer may have left a line without its newline
        if self._current_size == 0:
            return
        with open(path, "rb+") as f:
            f.seek(-1, os.SEEK_END)
            if f.read(1) != b"\n":
                f.write(b"\n")
                self._current_size += 1

    def _rotate(self) -> None:
        current = self._segments[-1]
        if self.compress:
            source = os.path.join(self.directory, current.file)
            target_name = current.file + GZIP_SUFFIX
            target = os.path.join(self.directory, target_name)
            tmp = target + ".tmp"
            with open(source, "rb") as src, gzip.open(tmp, "wb") as dst:
                shutil.copyfileobj(src, dst)
            os.replace(tmp, target)
            os.remove(source)
            current.file = target_name
            current.size = os.path.getsize(target)
            self._write_manifest()
        self.logging.debug("Rotated embedding segment %s", current.file)
        self._start_segment()

    def _start_segment(self) -> None:
        created_at = int(self._clock() * 1000)
        self._seq += 1
        name = f"{SEGMENT_PREFIX}{created_at}-{self._seq:04d}{SEGMENT_SUFFIX}"
        open(os.path.join(self.directory, name), "ab").close()
        self._segments.append(SegmentEntry(file=name, size=0, created_at=created_at))
        self._current_size = 0
        self._write_manifest()

    def _write_manifest(self) -> None:
        path = os.path.join(self.directory, MANIFEST_NAME)
        tmp = path + ".tmp"
        payload = {"segments": [s.model_dump(by_alias=True) for s in self._segments]}
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f)
        os.replace(tmp, path)

    def _read_manifest(self) -> list[SegmentEntry] | None:
        path = os.path.join(self.directory, MANIFEST_NAME)
        if not os.path.isfile(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            self.logging.warning("Unreadable embedding manifest %s: %s", path, e)
            return []
        entries: list[SegmentEntry] = []
        for item in raw.get("segments", []) if isinstance(raw, dict) else []:
            if not isinstance(item, dict) or not isinstance(item.get("file"), str):
                continue
            name = item["file"].strip()
            if not name or os.path.basename(name) != name:
                continue
            entries.append(SegmentEntry(file=name, size=int(item.get("size") or 0), created_at=int(item.get("createdAt") or 0)))
        return entries

    def _resolve_existing(self, name: str) -> str | None:
        for candidate in (name, self._counterpart(name)):
            if os.path.isfile(os.path.join(self.directory, candidate)):
                return candidate
        return None

    @staticmethod
    def _counterpart(name: str) -> str:
        return name[: -len(GZIP_SUFFIX)] if name.endswith(GZIP_SUFFIX) else name + GZIP_SUFFIX

    @staticmethod
    def _is_segment_name(name: str) -> bool:
        return name.startswith(SEGMENT_PREFIX) and (name.endswith(SEGMENT_SUFFIX) or name.endswith(SEGMENT_SUFFIX + GZIP_SUFFIX))

    def _load_segment(self, path: str, sink: Callable[[str, list[float]], None]) -> int:
        loaded = 0
        try:
            if path.endswith(GZIP_SUFFIX):
                handle = gzip.open(path, "rt", encoding="utf-8", errors="replace")
            else:
                handle = open(path, "r", encoding="utf-8", errors="replace")
            with handle as f:
                for line in f:
                    record = self._parse_line(line)
                    if record is not None:
                        sink(*record)
                        loaded += 1
        except (OSError, EOFError, zlib.error) as e:
            self.logging.warning("Stopped reading embedding segment %s early: %s", path, e)
        return loaded

    @staticmethod
    def _parse_line(line: str) -> tuple[str, list[float]] | None:
        line = line.strip()
        if not line:
            return None
        try:
            record = json.loads(line)
        except ValueError:
            return None
        if not isinstance(record, dict):
            return None
        key, embedding = record.get("key"), record.get("embedding")
        if not isinstance(key, str) or not isinstance(embedding, list):
            return None
        return key, embedding
