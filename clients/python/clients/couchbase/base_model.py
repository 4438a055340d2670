import uuid
from datetime import datetime, timezone
from typing import Optional, TypeVar, Generic, ClassVar
from pydantic import BaseModel
from couchbase.exceptions import DocumentNotFoundException
from couchbase.options import ReplaceOptions, RemoveOptions
from .keyspace import Keyspace, get_keyspace

class BaseCouchbaseEntityData(BaseModel):
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by_user_id: Optional[str] = None

DataT = TypeVar("DataT", bound=BaseCouchbaseEntityData)
T = TypeVar("T", bound="BaseModelCouchbase")

class BaseModelCouchbase(BaseModel, Generic[DataT]):
    id: str
    data: DataT
    cas: Optional[int] = None

    _collection_name: ClassVar[str] = ""

    @staticmethod
    def model_dump_for_storage(data: DataT) -> dict:
        """Converts the entity data to a JSON-safe dictionary for database storage."""
        return data.model_dump(mode='json')

    @classmethod
    def get_keyspace(cls) -> Keyspace:
        if not cls._collection_name:
            raise ValueError(f"_collection_name not set for {cls.__name__}")
        return get_keyspace(cls._collection_name)

    @classmethod
    def from_row(cls: type[T], row: dict) -> Optional[T]:
        """Build an entity from a ``SELECT META().id, *`` query row."""
        data = row.get(cls._collection_name)
        if not data:
            return None
        return cls(id=row["id"], data=data)

    @classmethod
    async def get(cls: type[T], id: str) -> Optional[T]:
        try:
            collection = await cls.get_keyspace().get_collection()
            result = await collection.get(id)
            data = result.content_as[dict]
            return cls(id=id, data=data, cas=result.cas)
        except DocumentNotFoundException:
            return None

    @classmethod
    async def create(cls: type[T], data: DataT, key: Optional[str] = None, user_id: Optional[str] = None) -> T:
        if key is None:
            key = str(uuid.uuid4())

        now = datetime.now(timezone.utc)
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now

        if user_id:
            data.created_by_user_id = user_id

        doc = cls.model_dump_for_storage(data)
        result = await cls.get_keyspace().insert(key, doc)
        return cls(id=key, data=data, cas=result.cas)

    @classmethod
    async def update(cls: type[T], item: T) -> T:
        """Replace the stored document.

        When the item carries a CAS value the replace is conditional on it and
        raises ``CASMismatchException`` if the document changed since it was read.
        """
        collection = await cls.get_keyspace().get_collection()

        item.data.updated_at = datetime.now(timezone.utc)

        doc = cls.model_dump_for_storage(item.data)
        if item.cas:
            result = await collection.replace(item.id, doc, ReplaceOptions(cas=item.cas))
        else:
            result = await collection.replace(item.id, doc)
        item.cas = result.cas
        return item

    @classmethod
    async def delete(cls: type[T], id: str, cas: Optional[int] = None) -> bool:
        try:
            if cas:
                await cls.get_keyspace().remove(id, RemoveOptions(cas=cas))
            else:
                await cls.get_keyspace().remove(id)
            return True
        except DocumentNotFoundException:
            return False
