"""Persistence adapter interface consumed by the import engine."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Sequence


class ContentStore(ABC):
    """The only component that writes to the target content datastore."""

    @abstractmethod
    def create_entity(self, fields: dict[str, Any], *, kind: str = "property") -> int:
        ...

    @abstractmethod
    def update_entity(self, entity_id: int, fields: dict[str, Any]) -> bool:
        ...

    @abstractmethod
    def attach_media(self, entity_id: int, url: str, role: str, *, position: int = 0) -> int:
        ...

    @abstractmethod
    def get_media(self, entity_id: int) -> list[dict[str, Any]]:
        """Attached media rows with media_id, url, role and position, oldest first."""

    @abstractmethod
    def update_media(self, media_id: int, role: str, *, position: int = 0) -> bool:
        ...

    @abstractmethod
    def detach_media(self, entity_id: int, media_ids: Sequence[int]) -> int:
        ...

    @abstractmethod
    def set_taxonomy(self, entity_id: int, taxonomy: str, values: Sequence[str]) -> None:
        ...

    @abstractmethod
    def set_relation(self, entity_id: int, relation_key: str, target_id: int | None) -> None:
        ...

    @abstractmethod
    def find_by_external_id(self, external_id: int, *, kind: str = "property") -> int | None:
        ...

    @abstractmethod
    def get_fields(self, entity_id: int) -> dict[str, Any] | None:
        ...

    @abstractmethod
    def soft_delete_entity(self, entity_id: int) -> bool:
        ...

    @abstractmethod
    def delete_entity(self, entity_id: int) -> bool:
        ...

    def close(self) -> None:
        return None
