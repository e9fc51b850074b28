from __future__ import annotations

"""Capability registry.

The registry maps a capability name to its descriptor and executable
implementation. Local capabilities are registered with ``source=None``; remote
capabilities are tagged with the identity of the server that advertised them
so they can be diffed on rediscovery and bulk-removed when the server goes
away.

Mutations are serialized by a single lock, so registration and
bulk-unregistration for one server never interleave with another writer.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from ..errors import CapabilityNotFoundError, DuplicateCapabilityError
from .base import Capability, CapabilityDescriptor, PermissionClass

logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass(frozen=True)
class _Entry:
    capability: Capability
    source: Optional[str]

    @property
    def descriptor(self) -> CapabilityDescriptor:
        return self.capability.descriptor


class CapabilityView(Iterable[CapabilityDescriptor]):
    """Lazy, finite, restartable listing of registry descriptors.

    Each iteration takes a fresh snapshot of the registry and applies the
    filter while iterating, so the same view can be iterated repeatedly and
    always reflects the registry at the time iteration started.
    """

    def __init__(self, snapshot: Callable[[], List[_Entry]], predicate: Callable[[_Entry], bool]) -> None:
        self._snapshot = snapshot
        self._predicate = predicate

    def __iter__(self) -> Iterator[CapabilityDescriptor]:
        for entry in self._snapshot():
            if self._predicate(entry):
                yield entry.descriptor


class CapabilityRegistry:
    """
    In-memory mapping of capability names to implementations.

    Notes:
        - ``register`` overwrites an existing mapping unless the registry was
          created with ``allow_overwrite=False``; overwrites are logged.
        - ``resolve`` returns the descriptor, ``get`` the executable capability.
        - Both raise ``CapabilityNotFoundError`` for unknown names.
    """

    def __init__(self, *, allow_overwrite: bool = True) -> None:
        """Initialize an empty capability registry."""
        self._entries: Dict[str, _Entry] = {}
        self._allow_overwrite = allow_overwrite
        self._lock = threading.RLock()
        self._version = 0

    @property
    def version(self) -> int:
        """Monotonic counter bumped on every mutation."""
        return self._version

    def register(self, cap: Capability, *, source: Optional[str] = None) -> None:
        """
        Register a capability implementation.

        Args:
            cap: The capability to register; its ``descriptor.name`` is the key.
            source: Server identity for remote capabilities. Defaults to
                ``cap.descriptor.source``.

        Raises:
            DuplicateCapabilityError: If the name is taken and overwrite is disabled.
        """
        name = cap.descriptor.name
        tag = source if source is not None else cap.descriptor.source
        with self._lock:
            existing = self._entries.get(name)
            if existing is not None:
                if not self._allow_overwrite:
                    raise DuplicateCapabilityError(name)
                logger.warning(
                    "Capability '%s' re-registered (source %s -> %s)",
                    name,
                    existing.source or "local",
                    tag or "local",
                )
            self._entries[name] = _Entry(capability=cap, source=tag)
            self._version += 1

    def unregister(self, name: str) -> bool:
        """Remove one capability. Returns False if it was not registered."""
        with self._lock:
            removed = self._entries.pop(name, None)
            if removed is not None:
                self._version += 1
            return removed is not None

    def unregister_source(self, source: str) -> List[str]:
        """Remove every capability tagged with ``source`` and nothing else.

        Returns:
            The names that were removed.
        """
        with self._lock:
            names = [name for name, entry in self._entries.items() if entry.source == source]
            for name in names:
                del self._entries[name]
            if names:
                self._version += 1
        if names:
            logger.info("Unregistered %d capabilities from source '%s'", len(names), source)
        return names

    def sync_source(self, source: str, caps: Sequence[Capability]) -> Tuple[List[str], List[str]]:
        """Make the capabilities tagged ``source`` match ``caps`` exactly.

        New names are added, existing ones replaced with the fresh
        implementation, and names no longer advertised are removed.

        Returns:
            ``(added, removed)`` name lists.

        Raises:
            DuplicateCapabilityError: If a name collides with a capability from a
                different source while overwrite is disabled.
        """
        with self._lock:
            current = {name for name, entry in self._entries.items() if entry.source == source}
            incoming = {cap.descriptor.name: cap for cap in caps}
            if not self._allow_overwrite:
                for name in incoming:
                    entry = self._entries.get(name)
                    if entry is not None and entry.source != source:
                        raise DuplicateCapabilityError(name)
            removed = sorted(current - incoming.keys())
            added = sorted(incoming.keys() - current)
            for name in removed:
                del self._entries[name]
            for name, cap in incoming.items():
                other = self._entries.get(name)
                if other is not None and other.source != source:
                    logger.warning("Capability '%s' from source '%s' replaces one from '%s'", name, source, other.source or "local")
                self._entries[name] = _Entry(capability=cap, source=source)
            self._version += 1
        if added or removed:
            logger.info("Source '%s' capabilities synced: +%s -%s", source, added, removed)
        return added, removed

    def resolve(self, name: str) -> CapabilityDescriptor:
        """
        Return the descriptor registered under ``name``.

        Raises:
            CapabilityNotFoundError: If no capability is registered with the given name.
        """
        return self._entry(name).descriptor

    def get(self, name: str) -> Capability:
        """
        Retrieve a registered capability by name.

        Raises:
            CapabilityNotFoundError: If no capability is registered with the given name.
        """
        return self._entry(name).capability

    def has(self, name: str) -> bool:
        return name in self._entries

    def source_of(self, name: str) -> Optional[str]:
        return self._entry(name).source

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    def list(
        self,
        predicate: Optional[Callable[[CapabilityDescriptor], bool]] = None,
        *,
        source: object = _UNSET,
        permission_class: Optional[PermissionClass] = None,
    ) -> CapabilityView:
        """List descriptors, optionally filtered.

        Args:
            predicate: Arbitrary filter over descriptors.
            source: Only capabilities with this source tag (``None`` = local only).
            permission_class: Only capabilities with this permission class.

        Returns:
            A restartable ``CapabilityView``.
        """

        def _match(entry: _Entry) -> bool:
            if source is not _UNSET and entry.source != source:
                return False
            if permission_class is not None and entry.descriptor.permission_class != permission_class:
                return False
            return predicate is None or predicate(entry.descriptor)

        return CapabilityView(self._snapshot, _match)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def _snapshot(self) -> List[_Entry]:
        with self._lock:
            return [self._entries[name] for name in sorted(self._entries)]

    def _entry(self, name: str) -> _Entry:
        entry = self._entries.get(name)
        if entry is None:
            raise CapabilityNotFoundError(name)
        return entry
