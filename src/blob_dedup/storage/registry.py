"""Lookup of storage services by name."""

from __future__ import annotations

from collections.abc import Iterable

from blob_dedup.config import Settings
from blob_dedup.errors import UnknownServiceError
from blob_dedup.storage.base import BlobStore
from blob_dedup.storage.disk import DiskService


class ServiceRegistry:
    """Named storage services with one default.

    Usage:
        registry = ServiceRegistry([DiskService("local", "/srv/blobs")], default="local")
        registry.get("local").upload(key, io)
    """

    def __init__(self, services: Iterable[BlobStore], *, default: str) -> None:
        self._services = {service.name: service for service in services}
        if default not in self._services:
            raise UnknownServiceError(default)
        self._default = default

    @property
    def default_name(self) -> str:
        return self._default

    @property
    def default(self) -> BlobStore:
        return self._services[self._default]

    @property
    def names(self) -> list[str]:
        return sorted(self._services)

    def get(self, name: str | None = None) -> BlobStore:
        """Return the named service, or the default when ``name`` is None."""
        if name is None:
            return self.default
        try:
            return self._services[name]
        except KeyError:
            raise UnknownServiceError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._services


def build_registry(source: Settings) -> ServiceRegistry:
    """Registry with the configured local-disk service as default."""
    disk = DiskService(source.default_service_name, source.storage_root)
    return ServiceRegistry([disk], default=source.default_service_name)
