"""
Pydantic models for the Firestore wire payloads the client consumes.

Only the fields the client reads are modelled; unknown keys are ignored.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Status(WireModel):
    """google.rpc.Status as returned per write by BatchWrite."""

    code: int = 0
    message: str = ""


class WriteResult(WireModel):
    """Result of one applied write; ``update_time`` is the server commit time."""

    update_time: Optional[str] = None


class Document(WireModel):
    name: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    create_time: Optional[str] = None
    update_time: Optional[str] = None


class BeginTransactionResponse(WireModel):
    transaction: str


class CommitResponse(WireModel):
    write_results: List[WriteResult] = Field(default_factory=list)
    commit_time: Optional[str] = None


class BatchWriteResponse(WireModel):
    write_results: List[WriteResult] = Field(default_factory=list)
    status: List[Status] = Field(default_factory=list)


class BatchGetResponse(WireModel):
    """One element of the batchGet response stream: ``found`` xor ``missing``."""

    found: Optional[Document] = None
    missing: Optional[str] = None
    transaction: Optional[str] = None
    read_time: Optional[str] = None


class RunQueryResponse(WireModel):
    document: Optional[Document] = None
    transaction: Optional[str] = None
    read_time: Optional[str] = None
    skipped_results: int = 0


class ListCollectionIdsResponse(WireModel):
    collection_ids: List[str] = Field(default_factory=list)
    next_page_token: Optional[str] = None
