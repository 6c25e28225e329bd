from typing import Protocol


class ObjectStoragePort(Protocol):
    def upload(self, *, key: str, data: bytes, content_type: str) -> str:
        """Store the object and return its public URL."""
        ...
