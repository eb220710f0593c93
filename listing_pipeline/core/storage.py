"""
Image Store Abstraction Layer - The Bridge Pattern

Provides a clean interface for blob operations. Raw uploads and enhanced
outputs are addressed by caller-chosen keys so that retries and reruns
never collide (keys carry photo id, tool id and a timestamp).
"""

import os
import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from listing_pipeline.core.config import settings
from listing_pipeline.core.exceptions import InfrastructureError


class IStorage(ABC):
    """Interface for image store operations - The Bridge"""

    @abstractmethod
    async def put(
        self,
        storage_key: str,
        file_data: bytes,
        content_type: str = "image/jpeg"
    ) -> str:
        """
        Durably write bytes under a key.

        Returns:
            The storage key, for chaining
        """
        pass

    @abstractmethod
    async def read(self, storage_key: str) -> bytes:
        """Read the bytes stored under a key. Raises FileNotFoundError if absent."""
        pass

    @abstractmethod
    async def get_url(self, storage_key: str, expires_in: int = 3600) -> str:
        """
        Get a time-limited URL for retrieving the object.

        Args:
            storage_key: Key passed to put()
            expires_in: Seconds until URL expires
        """
        pass

    @abstractmethod
    async def delete(self, storage_key: str) -> bool:
        pass

    @abstractmethod
    async def exists(self, storage_key: str) -> bool:
        """Check if an object exists in storage."""
        pass


class LocalStorage(IStorage):
    """Local filesystem storage implementation for development."""

    def __init__(
        self,
        base_path: str = "./data/storage",
        public_base_url: str = "http://localhost:8000",
        signing_secret: str = "local-dev-signing-secret"
    ):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")
        self.signing_secret = signing_secret

    def _path_for(self, storage_key: str) -> Path:
        path = (self.base_path / storage_key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise ValueError(f"Storage key escapes the storage root: {storage_key}")
        return path

    async def put(
        self,
        storage_key: str,
        file_data: bytes,
        content_type: str = "image/jpeg"
    ) -> str:
        file_path = self._path_for(storage_key)
        tmp_path = file_path.with_suffix(file_path.suffix + ".part")
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "wb") as f:
                f.write(file_data)
                f.flush()
                os.fsync(f.fileno())
            # rename is atomic, readers never observe a half-written object
            os.replace(tmp_path, file_path)
        except OSError as e:
            raise InfrastructureError(
                f"Failed to write {storage_key}: {e}",
                component="image_store"
            )
        return storage_key

    async def read(self, storage_key: str) -> bytes:
        file_path = self._path_for(storage_key)
        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {storage_key}")
        try:
            with open(file_path, "rb") as f:
                return f.read()
        except OSError as e:
            raise InfrastructureError(
                f"Failed to read {storage_key}: {e}",
                component="image_store"
            )

    def _signature(self, storage_key: str, expires_at: int) -> str:
        return hmac.new(
            self.signing_secret.encode("utf-8"),
            f"{storage_key}:{expires_at}".encode("utf-8"),
            hashlib.sha256
        ).hexdigest()[:32]

    async def get_url(self, storage_key: str, expires_in: int = 3600) -> str:
        """Return a signed URL served by the API process until it expires."""
        if not self._path_for(storage_key).exists():
            raise FileNotFoundError(f"File not found: {storage_key}")

        expires_at = int(time.time()) + expires_in
        signature = self._signature(storage_key, expires_at)
        return f"{self.public_base_url}/static/storage/{storage_key}?expires={expires_at}&sig={signature}"

    def resolve_signed(self, storage_key: str, expires_at: int, signature: str) -> Path:
        """
        Path for a URL produced by get_url().

        Raises:
            PermissionError: bad signature or expired URL
            FileNotFoundError: the object is gone
        """
        expected = self._signature(storage_key, expires_at)
        if not hmac.compare_digest(expected, signature or ""):
            raise PermissionError(f"Invalid signature for {storage_key}")
        if expires_at < int(time.time()):
            raise PermissionError(f"URL for {storage_key} has expired")
        path = self._path_for(storage_key)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {storage_key}")
        return path

    async def delete(self, storage_key: str) -> bool:
        file_path = self._path_for(storage_key)
        if not file_path.exists():
            return False
        try:
            file_path.unlink()
        except OSError as e:
            raise InfrastructureError(
                f"Failed to delete {storage_key}: {e}",
                component="image_store"
            )
        return True

    async def exists(self, storage_key: str) -> bool:
        return self._path_for(storage_key).exists()


class StorageFactory:
    """
    Factory for creating storage instances.

    Local filesystem storage in every environment today; a cloud bucket
    implementation plugs in here without touching callers.
    """

    _instance: Optional[IStorage] = None

    @classmethod
    def get_storage(cls) -> IStorage:
        """Get the storage implementation configured for this process."""
        if cls._instance is None:
            cls._instance = LocalStorage(
                base_path=settings.LOCAL_STORAGE_PATH,
                public_base_url=settings.PUBLIC_BASE_URL,
                signing_secret=settings.STORAGE_SIGNING_SECRET
            )
        return cls._instance

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None
