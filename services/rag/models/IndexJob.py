from pydantic import BaseModel, ConfigDict, Field

DEFAULT_EXCLUDE_DIRS = ["node_modules", ".git", "dist", "build", "__pycache__", ".venv"]


class IndexOptions(BaseModel):
    """
    Options of one indexing job. JSON clients may use the camelCase aliases.

    Attributes:
        exclude_dirs (list[str]): Directory names skipped while walking.
        max_file_size (int): Files above this many bytes are skipped.
        chunk_size (int): Characters per chunk.
        include_tests (bool): Whether files classified as tests are indexed.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    exclude_dirs: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_DIRS), alias="excludeDirs")
    max_file_size: int = Field(default=500 * 1024, alias="maxFileSize", gt=0)
    chunk_size: int = Field(default=1200, alias="chunkSize", gt=0)
    include_tests: bool = Field(default=True, alias="includeTests")


class IndexJob(BaseModel):
    job_id: str
    root_path: str
    options: IndexOptions
    status: str = "queued"
    files_indexed: int = 0
    chunks_indexed: int = 0
    error: str | None = None

    def to_status(self) -> dict:
        return {
            "jobId": self.job_id,
            "status": self.status,
            "path": self.root_path,
            "filesIndexed": self.files_indexed,
            "chunksIndexed": self.chunks_indexed,
            "error": self.error,
        }
