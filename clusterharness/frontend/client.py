from __future__ import annotations

from typing import Any

from clusterharness.core.connection import ServiceConnection
from clusterharness.core.serialization import JsonSerializer, Serializer
from clusterharness.core.type_aliases import SchemaId, SchemaVersion, SubjectName, UrlString


class FrontEndClient:
    """Client for the front-end service."""

    def __init__(
        self,
        url: UrlString,
        *,
        open_timeout: float = 5.0,
        request_timeout: float = 10.0,
        serializer: Serializer | None = None,
    ) -> None:
        self._connection = ServiceConnection(
            url=url,
            open_timeout=open_timeout,
            request_timeout=request_timeout,
            serializer=serializer or JsonSerializer(),
        )

    def connect(self) -> FrontEndClient:
        self._connection.connect()
        return self

    def close(self) -> None:
        self._connection.close()

    def register(self, subject: SubjectName, schema: str) -> dict[str, int]:
        return self._connection.request("register", subject=subject, schema=schema)

    def schema_by_id(self, schema_id: SchemaId) -> str:
        return self._connection.request("schema_by_id", id=schema_id)

    def subjects(self) -> list[SubjectName]:
        return self._connection.request("subjects")

    def versions(self, subject: SubjectName) -> list[SchemaVersion]:
        return self._connection.request("versions", subject=subject)

    def get_compatibility(self, subject: SubjectName | None = None) -> str:
        return self._connection.request("get_config", subject=subject)["compatibility"]

    def set_compatibility(
        self, compatibility: str, subject: SubjectName | None = None
    ) -> str:
        reply = self._connection.request(
            "set_config", compatibility=compatibility, subject=subject
        )
        return reply["compatibility"]

    def __enter__(self) -> FrontEndClient:
        return self.connect()

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
