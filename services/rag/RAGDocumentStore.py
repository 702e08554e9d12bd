import asyncio
import hashlib
import json
import math
import os
import secrets
from collections import deque

from services.embedding.EmbeddingQueue import EmbeddingQueue
from services.embedding.EmbeddingSegmentLog import EmbeddingSegmentLog
from services.rag.models.ChunkDocument import ChunkDocument, ChunkMetadata, RetrievalResult
from services.rag.models.IndexJob import IndexJob, IndexOptions
from shared.clients.llm.LLMOperations import LLMOperations
from shared.helper.HelperConfig import HelperConfig
from shared.models.errors import BackpressureError, InvalidRequestError
from shared.resilience.LruTtlCache import LruTtlCache

SUPPORTED_EXTENSIONS: dict[str, str] = {
    ".js": "javascript",
    ".ts": "typescript",
    ".py": "python",
    ".java": "java",
    ".md": "markdown",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".html": "html",
    ".css": "css",
    ".sql": "sql",
    ".sh": "shell",
}


def categorize_file(path: str) -> str:
    """Classify a path as "test", "doc" or "source"."""
    lowered = path.lower()
    if "test" in lowered or "__tests__" in lowered:
        return "test"
    if "readme" in lowered or "doc" in lowered:
        return "doc"
    return "source"


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine of the angle between two vectors; 0 for mismatched lengths or a zero vector."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def chunk_id(file_path: str, text: str) -> str:
    return hashlib.md5((file_path + text).encode("utf-8")).hexdigest()


def split_into_chunks(text: str, size: int) -> list[str]:
    return [text[i:i + size] for i in range(0, len(text), size)] if text else []


class RAGDocumentStore:
    """Content-addressed chunk store with a category index, semantic/keyword retrieval and an indexing job queue.

    Chunks are keyed by ``md5(file_path + chunk_text)``; the category index
    holds ids only. Chunk embeddings are produced asynchronously by the
    :class:`EmbeddingQueue` and looked up in the shared embedding cache at
    query time, so a chunk becomes semantically searchable once its embedding
    has landed. Indexing jobs are drained one at a time by a single worker.
    """

    def __init__(
        self,
        helper_config: HelperConfig,
        upstream: LLMOperations,
        embedding_cache: LruTtlCache | None = None,
        embedding_queue: EmbeddingQueue | None = None,
        segment_log: EmbeddingSegmentLog | None = None,
        snapshot_path: str | None = None,
        embed_model: str | None = None,
        query_embedding_timeout_ms: float = 5000,
    ):
        self.logging = helper_config.get_logger()
        self.upstream = upstream
        self.embed_model = embed_model or helper_config.get_string_val("RAG_EMBED_MODEL", default="embed-english-v3.0")
        self.snapshot_path = snapshot_path or helper_config.get_path_val("RAG_SNAPSHOT_PATH", os.path.join("data", "rag-index.json"))
        self.query_embedding_timeout_ms = query_embedding_timeout_ms

        self.embedding_cache = embedding_cache or LruTtlCache(
            max_size=int(helper_config.get_number_val("RAG_EMBEDDING_CACHE_MAX", default=5000)),
            ttl_ms=helper_config.get_number_val("RAG_EMBEDDING_CACHE_TTL_MS", default=3_600_000),
            name="rag_embeddings",
        )
        if segment_log is None and helper_config.get_bool_val("RAG_PERSIST_EMBEDDINGS", default=False):
            segment_log = EmbeddingSegmentLog(helper_config)
        self.segment_log = segment_log
        self.embedding_queue = embedding_queue or EmbeddingQueue(
            helper_config,
            upstream=upstream,
            cache=self.embedding_cache,
            segment_log=segment_log,
            model=self.embed_model,
        )

        self.documents: dict[str, ChunkDocument] = {}
        self.document_index: dict[str, set[str]] = {}
        self._file_chunks: dict[str, set[str]] = {}

        self._jobs: dict[str, IndexJob] = {}
        self._job_queue: deque[IndexJob] = deque()
        self._worker: asyncio.Task | None = None

    ##########################################
    ############### INDEXING #################
    ##########################################

    async def index_codebase(self, root_path: str, options: IndexOptions | dict | None = None) -> dict:
        """Queue an indexing job for ``root_path`` and return immediately.

        Returns:
            dict: ``{"jobId": ..., "status": "queued"}``

        Raises:
            InvalidRequestError: If no path is given or the options are invalid.
        """
        if not root_path:
            raise InvalidRequestError("projectPath required")
        if not isinstance(options, IndexOptions):
            try:
                options = IndexOptions.model_validate(options or {})
            except ValueError as e:
                raise InvalidRequestError(f"Invalid index options: {e}")

        job = IndexJob(job_id=secrets.token_hex(8), root_path=os.path.abspath(root_path), options=options)
        self._jobs[job.job_id] = job
        self._job_queue.append(job)
        self.logging.info("Queued index job %s for %s", job.job_id, job.root_path)
        self._ensure_worker()
        return {"jobId": job.job_id, "status": job.status}

    def get_job(self, job_id: str) -> dict | None:
        job = self._jobs.get(job_id)
        return job.to_status() if job else None

    def is_indexing(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def join(self) -> None:
        """Wait until queued index jobs and pending chunk embeddings are processed."""
        while self._worker is not None and not self._worker.done():
            await asyncio.wait({self._worker})
        await self.embedding_queue.join()

    def _ensure_worker(self) -> None:
        if self.is_indexing():
            return
        self._worker = asyncio.get_running_loop().create_task(self._process_jobs())

    async def _process_jobs(self) -> None:
        while self._job_queue:
            job = self._job_queue.popleft()
            job.status = "running"
            try:
                await self._run_job(job)
                job.status = "completed"
                self.logging.info(
                    "Index job %s completed: %d files, %d chunks", job.job_id, job.files_indexed, job.chunks_indexed
                )
            except Exception as e:
                job.status = "failed"
                job.error = str(e)
                self.logging.error("Index job %s failed: %s", job.job_id, e)
            try:
                await self.save_snapshot()
            except OSError as e:
                self.logging.error("Could not save RAG snapshot after job %s: %s", job.job_id, e)

    async def _run_job(self, job: IndexJob) -> None:
        if not os.path.isdir(job.root_path):
            raise FileNotFoundError(f"Not a directory: {job.root_path}")
        files = await asyncio.to_thread(self._read_files, job)
        for file_path, category, language, chunks in files:
            self._store_file_chunks(file_path, category, language, chunks)
            job.files_indexed += 1
            job.chunks_indexed += len(chunks)

    def _read_files(self, job: IndexJob) -> list[tuple[str, str, str, list[str]]]:
        """Walk the job root and read every eligible file. Runs in a worker thread."""
        options = job.options
        excluded = set(options.exclude_dirs)
        results = []
        for dirpath, dirnames, filenames in os.walk(job.root_path):
            dirnames[:] = sorted(d for d in dirnames if d not in excluded)
            for name in sorted(filenames):
                file_path = os.path.join(dirpath, name)
                ext = os.path.splitext(name)[1].lower()
                if ext not in SUPPORTED_EXTENSIONS:
                    continue
                # categorise relative to the job root so the root's own location does not count
                category = categorize_file(os.path.relpath(file_path, job.root_path))
                if category == "test" and not options.include_tests:
                    continue
                try:
                    if not os.path.isfile(file_path) or os.path.getsize(file_path) > options.max_file_size:
                        continue
                    with open(file_path, "r", encoding="utf-8") as f:
                        content = f.read()
                except (OSError, UnicodeDecodeError) as e:
                    self.logging.warning("Skipping file %s: %s", file_path, e)
                    continue
                results.append((file_path, category, SUPPORTED_EXTENSIONS[ext], split_into_chunks(content, options.chunk_size)))
        return results

    def _store_file_chunks(self, file_path: str, category: str, language: str, chunks: list[str]) -> None:
        metadata = ChunkMetadata(file_path=file_path, language=language, category=category)
        new_ids: set[str] = set()
        for text in chunks:
            doc_id = chunk_id(file_path, text)
            new_ids.add(doc_id)
            self.documents[doc_id] = ChunkDocument(content=text, metadata=metadata)
            self._index_by_category(category, doc_id)
            if doc_id not in self.embedding_cache:
                try:
                    self.embedding_queue.enqueue(doc_id, text)
                except BackpressureError as e:
                    self.logging.warning("Chunk %s of %s not queued for embedding: %s", doc_id, file_path, e)

        for stale_id in self._file_chunks.get(file_path, set()) - new_ids:
            self._remove_document(stale_id)
        self._file_chunks[file_path] = new_ids

    ##########################################
    ############### RETRIEVAL ################
    ##########################################

    async def retrieve(
        self,
        query: str,
        max_results: int = 5,
        min_similarity: float = 0.3,
        use_semantic_search: bool = True,
    ) -> list[RetrievalResult]:
        """Return the chunks most relevant to ``query``.

        Semantic search runs first; when it yields nothing or fails, a keyword
        search over content and metadata is used instead.
        """
        if not query:
            return []
        results: list[RetrievalResult] = []
        if use_semantic_search and self.documents:
            try:
                results = await self.semantic_search(query, max_results=max_results, min_similarity=min_similarity)
            except Exception as e:
                self.logging.warning("Semantic search failed, falling back to keyword search: %s", e)
                results = []
        if not results:
            results = self.keyword_search(query, max_results=max_results)
        return results[:max_results]

    async def semantic_search(self, query: str, max_results: int = 10, min_similarity: float = 0.3) -> list[RetrievalResult]:
        query_embedding = await self.get_embedding(query)
        if query_embedding is None:
            return []
        scored = []
        for doc_id, document in self.documents.items():
            embedding = self.embedding_cache.get(doc_id)
            if embedding is None:
                continue
            score = cosine_similarity(query_embedding, embedding)
            if score >= min_similarity:
                scored.append((score, document))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [RetrievalResult(document=doc, score=score, match_type="semantic") for score, doc in scored[:max_results]]

    def keyword_search(self, query: str, max_results: int = 10) -> list[RetrievalResult]:
        terms = {t for t in query.lower().split() if len(t) > 2}
        if not terms:
            return []
        scored = []
        for document in self.documents.values():
            text = (document.content + " " + json.dumps(document.metadata.model_dump(by_alias=True))).lower()
            score = sum(1 for term in terms if term in text)
            if score > 0:
                scored.append((score, document))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [RetrievalResult(document=doc, score=score, match_type="keyword") for score, doc in scored[:max_results]]

    async def get_embedding(self, text: str) -> list[float] | None:
        """Embed a query text, caching by the md5 of the text. Returns None if the upstream fails."""
        key = hashlib.md5(text.encode("utf-8")).hexdigest()
        cached = self.embedding_cache.get(key)
        if cached is not None:
            return cached
        try:
            vectors = await asyncio.wait_for(
                self.upstream.do_embed({"model": self.embed_model, "texts": [text], "input_type": "search_query"}),
                timeout=self.query_embedding_timeout_ms / 1000,
            )
        except Exception as e:
            self.logging.warning("Query embedding failed: %s", e)
            return None
        embedding = vectors[0] if isinstance(vectors, list) and vectors else None
        if embedding is not None:
            self.embedding_cache.set(key, embedding)
        return embedding

    ##########################################
    ############## PERSISTENCE ###############
    ##########################################

    async def load_embeddings(self) -> int:
        """Load persisted chunk embeddings into the embedding cache (no-op without a segment log)."""
        if self.segment_log is None:
            return 0
        loop = asyncio.get_running_loop()

        def sink(key: str, embedding: list[float]) -> None:
            loop.call_soon_threadsafe(self.embedding_cache.set, key, embedding)

        return await asyncio.to_thread(self.segment_log.load, sink)

    async def save_snapshot(self) -> None:
        data = {
            "documents": [[doc_id, doc.to_snapshot()] for doc_id, doc in self.documents.items()],
            "documentIndex": [[category, sorted(ids)] for category, ids in self.document_index.items()],
        }
        await asyncio.to_thread(self._write_snapshot, data)

    def _write_snapshot(self, data: dict) -> None:
        directory = os.path.dirname(self.snapshot_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = self.snapshot_path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(tmp, self.snapshot_path)

    def load_snapshot(self) -> int:
        """Restore documents and the category index. A missing or unreadable snapshot leaves the store empty."""
        if not os.path.isfile(self.snapshot_path):
            return 0
        try:
            with open(self.snapshot_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            documents = {doc_id: ChunkDocument.model_validate(raw) for doc_id, raw in data.get("documents", [])}
        except (OSError, ValueError, TypeError) as e:
            self.logging.warning("Could not load RAG snapshot %s: %s", self.snapshot_path, e)
            return 0

        self.documents = documents
        self.document_index = {}
        self._file_chunks = {}
        for doc_id, document in documents.items():
            self._index_by_category(document.metadata.category, doc_id)
            self._file_chunks.setdefault(document.metadata.file_path, set()).add(doc_id)
        self.logging.info("Loaded %d RAG documents from %s", len(documents), self.snapshot_path)
        return len(documents)

    ##########################################
    ################ GETTER ##################
    ##########################################

    def get_documents_by_category(self, category: str) -> list[ChunkDocument]:
        return [self.documents[i] for i in self.document_index.get(category, set()) if i in self.documents]

    def get_stats(self) -> dict:
        return {
            "totalDocuments": len(self.documents),
            "categories": {category: len(ids) for category, ids in self.document_index.items()},
            "embeddingCacheSize": len(self.embedding_cache),
            "indexing": self.is_indexing(),
            "queuedJobs": len(self._job_queue),
            "persistEmbeddings": self.segment_log is not None,
            "embeddingQueue": self.embedding_queue.get_stats(),
        }

    def clear_index(self) -> None:
        self.documents.clear()
        self.document_index.clear()
        self._file_chunks.clear()
        self.embedding_cache.clear()
        self.logging.info("RAG index cleared")

    async def shutdown(self) -> None:
        if self.is_indexing():
            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
        await self.embedding_queue.shutdown()
        await self.save_snapshot()

    ##########################################
    ############### HELPERS ##################
    ##########################################

    def _index_by_category(self, category: str, doc_id: str) -> None:
        self.document_index.setdefault(category, set()).add(doc_id)

    def _remove_document(self, doc_id: str) -> None:
        document = self.documents.pop(doc_id, None)
        if document is None:
            return
        ids = self.document_index.get(document.metadata.category)
        if ids is not None:
            ids.discard(doc_id)
            if not ids:
                del self.document_index[document.metadata.category]
        self.embedding_cache.delete(doc_id)
