"""
Document and collection references.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, List, Mapping, Optional

from .batch import Precondition
from .models import ListCollectionIdsResponse, WriteResult
from .path import ResourcePath
from .query import Query, QueryOptions
from .snapshot import DocumentSnapshot
from .transport import FirestoreMethod
from .utils import auto_id, request_tag

if TYPE_CHECKING:
    from .client import Firestore


class DocumentReference:
    def __init__(self, client: "Firestore", path: ResourcePath):
        if not path.is_document:
            raise ValueError(f"{path.relative_name!r} is not a document path")
        self._client = client
        self._path = path

    @property
    def firestore(self) -> "Firestore":
        return self._client

    @property
    def resource_path(self) -> ResourcePath:
        return self._path

    @property
    def id(self) -> str:
        return self._path.id  # type: ignore[return-value]

    @property
    def path(self) -> str:
        return self._path.relative_name

    @property
    def parent(self) -> "CollectionReference":
        return CollectionReference(self._client, self._path.parent())  # type: ignore[arg-type]

    def collection(self, collection_path: str) -> "CollectionReference":
        path = self._path.append(collection_path)
        if not path.is_collection:
            raise ValueError(f"{collection_path!r} does not point to a collection")
        return CollectionReference(self._client, path)

    async def get(self) -> DocumentSnapshot:
        [snapshot] = await self._client.get_all(self)
        return snapshot

    async def create(self, data: Mapping[str, Any]) -> WriteResult:
        [result] = await self._client.batch().create(self, data).commit()
        return result

    async def set(self, data: Mapping[str, Any], *, merge: bool = False) -> WriteResult:
        [result] = await self._client.batch().set(self, data, merge=merge).commit()
        return result

    async def update(self, data: Mapping[str, Any], precondition: Optional[Precondition] = None) -> WriteResult:
        [result] = await self._client.batch().update(self, data, precondition).commit()
        return result

    async def delete(self, precondition: Optional[Precondition] = None) -> WriteResult:
        [result] = await self._client.batch().delete(self, precondition).commit()
        return result

    async def list_collections(self) -> List["CollectionReference"]:
        return await self._client._list_collections(self._path)

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, DocumentReference)
            and other._client is self._client
            and other._path == self._path
        )

    def __hash__(self) -> int:
        return hash(self._path)

    def __repr__(self) -> str:
        return f"DocumentReference({self.path!r})"


class CollectionReference(Query):
    def __init__(self, client: "Firestore", path: ResourcePath):
        if not path.is_collection:
            raise ValueError(f"{path.relative_name!r} is not a collection path")
        super().__init__(client, QueryOptions(parent_path=path.parent(), collection_id=path.id))  # type: ignore[arg-type]
        self._path = path

    @property
    def resource_path(self) -> ResourcePath:
        return self._path

    @property
    def id(self) -> str:
        return self._path.id  # type: ignore[return-value]

    @property
    def path(self) -> str:
        return self._path.relative_name

    @property
    def parent(self) -> Optional[DocumentReference]:
        parent = self._path.parent()
        if parent is None or len(parent) == 0:
            return None
        return DocumentReference(self._client, parent)

    def doc(self, document_id: Optional[str] = None) -> DocumentReference:
        """Reference a child document; a random id is generated when none is given."""
        path = self._path.append(document_id if document_id is not None else auto_id())
        if not path.is_document:
            raise ValueError(f"{document_id!r} does not point to a document")
        return DocumentReference(self._client, path)

    async def add(self, data: Mapping[str, Any]) -> DocumentReference:
        ref = self.doc()
        await ref.create(data)
        return ref

    async def list_documents(self) -> List[DocumentReference]:
        snapshots = await self.select().get()
        return [s.reference for s in snapshots]

    def __eq__(self, other: object) -> bool:
        return (
            isinstance(other, CollectionReference)
            and other._client is self._client
            and other._path == self._path
        )

    def __hash__(self) -> int:
        return hash(self._path)

    def __repr__(self) -> str:
        return f"CollectionReference({self.path!r})"


async def list_collection_ids(client: "Firestore", parent: ResourcePath, tag: Optional[str] = None) -> List[str]:
    """Page through listCollectionIds for ``parent`` (the database root when empty)."""
    tag = tag or request_tag()
    await client.initialize_if_needed(tag)
    ids: List[str] = []
    page_token: Optional[str] = None
    while True:
        payload: dict = {"parent": client.serializer.document_name(parent)}
        if page_token:
            payload["pageToken"] = page_token
        raw = await client._funnel.request(FirestoreMethod.LIST_COLLECTION_IDS, payload, tag)
        page = ListCollectionIdsResponse.model_validate(raw)
        ids.extend(page.collection_ids)
        if not page.next_page_token:
            return ids
        page_token = page.next_page_token
