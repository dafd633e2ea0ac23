"""Deduplication policy: process-wide configuration plus per-slot overrides.

Precedence when deciding whether an upload is deduplicated:

1. Master switch off -> never deduplicate (overrides are ignored)
2. Slot override registered for (owner_type, name) -> use it
3. Otherwise -> deduplicate_by_default

Slots are registered while the application binds its schema (the
equivalent of declaring ``has_one_attached :avatar`` on a model). The
configuration is replaced only through ``configure()`` at startup and
is read-only afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any

from blob_dedup.config import Settings, settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DedupConfiguration:
    """Process-wide deduplication flags."""

    enabled: bool = True
    """Master switch. When False no deduplication or lifecycle management happens."""

    deduplicate_by_default: bool = True
    """Policy for slots that registered no override."""

    auto_purge_orphans: bool = True
    """Purge a blob when its reference_count reaches zero."""

    @classmethod
    def from_settings(cls, source: Settings) -> DedupConfiguration:
        return cls(
            enabled=source.dedup_enabled,
            deduplicate_by_default=source.dedup_by_default,
            auto_purge_orphans=source.auto_purge_orphans,
        )


@dataclass(frozen=True)
class AttachmentSlot:
    """A declared attachment slot on an owner type."""

    owner_type: str
    name: str
    deduplicate: bool | None = None
    """Explicit override; None means "use the global default"."""

    service_name: str | None = None
    """Storage service uploads to this slot go to, if not the default."""

    multiple: bool = False
    """has-many slot. Single slots replace their previous attachment."""


def owner_type_name(owner_type: str | type[Any]) -> str:
    """Normalize an owner type given as a name or a class."""
    if isinstance(owner_type, str):
        return owner_type
    return owner_type.__name__


@dataclass(frozen=True)
class AttachmentContext:
    """Where an upload is going: an owner and one of its slots."""

    owner_type: str
    owner_id: str
    name: str

    @classmethod
    def of(cls, owner_type: str | type[Any], owner_id: object, name: str) -> AttachmentContext:
        return cls(owner_type=owner_type_name(owner_type), owner_id=str(owner_id), name=name)


class PolicyStore:
    """Holds the dedup configuration and the registry of attachment slots.

    Usage:
        policy = PolicyStore()
        policy.has_one_attached("User", "avatar")
        policy.has_many_attached("Product", "photos", deduplicate=False)
        policy.deduplicate_enabled_for("Product", "photos")  # False
    """

    def __init__(self, configuration: DedupConfiguration | None = None) -> None:
        self._configuration = configuration or DedupConfiguration()
        self._slots: dict[tuple[str, str], AttachmentSlot] = {}

    @property
    def configuration(self) -> DedupConfiguration:
        return self._configuration

    @property
    def enabled(self) -> bool:
        return self._configuration.enabled

    def configure(self, **changes: bool) -> DedupConfiguration:
        """Replace configuration flags. Meant to be called once at startup."""
        self._configuration = replace(self._configuration, **changes)
        logger.info(
            "Dedup configuration updated: enabled=%s, deduplicate_by_default=%s, "
            "auto_purge_orphans=%s",
            self._configuration.enabled,
            self._configuration.deduplicate_by_default,
            self._configuration.auto_purge_orphans,
        )
        return self._configuration

    # -------------------------------------------------------------------------
    # Slot registry
    # -------------------------------------------------------------------------

    def register_attachment(
        self,
        owner_type: str | type[Any],
        name: str,
        *,
        deduplicate: bool | None = None,
        service_name: str | None = None,
        multiple: bool = False,
    ) -> AttachmentSlot:
        """Record an attachment slot declaration.

        Re-registering the same (owner_type, name) replaces the earlier
        declaration.
        """
        slot = AttachmentSlot(
            owner_type=owner_type_name(owner_type),
            name=name,
            deduplicate=deduplicate,
            service_name=service_name,
            multiple=multiple,
        )
        self._slots[(slot.owner_type, slot.name)] = slot
        logger.debug(
            "Registered attachment %s#%s (deduplicate=%s, service=%s, multiple=%s)",
            slot.owner_type,
            slot.name,
            deduplicate,
            service_name,
            multiple,
        )
        return slot

    def has_one_attached(
        self,
        owner_type: str | type[Any],
        name: str,
        *,
        deduplicate: bool | None = None,
        service_name: str | None = None,
    ) -> AttachmentSlot:
        return self.register_attachment(
            owner_type, name, deduplicate=deduplicate, service_name=service_name
        )

    def has_many_attached(
        self,
        owner_type: str | type[Any],
        name: str,
        *,
        deduplicate: bool | None = None,
        service_name: str | None = None,
    ) -> AttachmentSlot:
        return self.register_attachment(
            owner_type, name, deduplicate=deduplicate, service_name=service_name, multiple=True
        )

    def slot(self, owner_type: str | type[Any], name: str) -> AttachmentSlot | None:
        return self._slots.get((owner_type_name(owner_type), name))

    def reset(self) -> None:
        """Forget all registered slots."""
        self._slots.clear()

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    def deduplicate_enabled_for(self, owner_type: str | type[Any], name: str) -> bool:
        """Whether uploads to this slot are deduplicated."""
        if not self._configuration.enabled:
            logger.debug("Deduplication disabled globally (enabled=False)")
            return False

        slot = self.slot(owner_type, name)
        if slot is None or slot.deduplicate is None:
            result = self._configuration.deduplicate_by_default
            logger.debug(
                "Deduplication for %s#%s: %s (default)", owner_type_name(owner_type), name, result
            )
        else:
            result = slot.deduplicate
            logger.debug(
                "Deduplication for %s#%s: %s (slot override)",
                owner_type_name(owner_type),
                name,
                result,
            )
        return result

    def should_deduplicate(self, context: AttachmentContext | None) -> bool:
        """Decision for an upload; anonymous uploads follow the master switch."""
        if context is None:
            return self._configuration.enabled
        return self.deduplicate_enabled_for(context.owner_type, context.name)

    def manages_lifecycle(self, owner_type: str, name: str) -> bool:
        """Whether removing an attachment from this slot may purge its blob."""
        return self._configuration.auto_purge_orphans and self.deduplicate_enabled_for(
            owner_type, name
        )


policy = PolicyStore(DedupConfiguration.from_settings(settings))
