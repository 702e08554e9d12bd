from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Category = Literal["source", "test", "doc"]


class ChunkMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_path: str = Field(alias="filePath")
    """Absolute path of the file the chunk was cut from"""
    language: str
    """Language tag derived from the file extension, e.g. "python" """
    category: Category
    """Category label the chunk is indexed under"""


class ChunkDocument(BaseModel):
    """A fixed-size slice of a source file, identified by the hash of its path and text."""

    content: str
    metadata: ChunkMetadata

    def to_snapshot(self) -> dict:
        return {"content": self.content, "metadata": self.metadata.model_dump(by_alias=True)}


class RetrievalResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document: ChunkDocument
    score: float
    """Cosine similarity for semantic matches, number of matched terms for keyword matches"""
    match_type: Literal["semantic", "keyword"] = Field(alias="matchType")
