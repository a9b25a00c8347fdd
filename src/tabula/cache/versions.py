# src/tabula/cache/versions.py
"""Namespace version counters.

Every cache key embeds its namespace's current version. Bumping the counter
makes every earlier key unreachable at once, which stands in for the
wildcard delete the shared cache does not offer.
"""

from __future__ import annotations

from tabula.contracts.errors import PropertyStoreError
from tabula.contracts.protocols import PropertyStore


class NamespaceVersions:
    """Reads and bumps ``cache_version:<namespace>`` in a PropertyStore.

    No value is memoized: each read goes to the store, so a bump made by
    another process is seen on the very next access.
    """

    def __init__(self, properties: PropertyStore) -> None:
        self._properties = properties

    @staticmethod
    def key(namespace: str) -> str:
        return f"cache_version:{namespace}"

    def current(self, namespace: str) -> int:
        """Current version (0 if never bumped).

        Raises:
            PropertyStoreError: If the store fails or holds a non-integer
        """
        raw = self._properties.get(self.key(namespace))
        if raw is None:
            return 0
        try:
            return int(raw)
        except ValueError as e:
            raise PropertyStoreError(f"{self.key(namespace)} holds non-integer {raw!r}") from e

    def bump(self, namespace: str) -> int:
        """Atomically increment and return the new version.

        Raises:
            PropertyStoreError: If the store fails
        """
        return self._properties.increment(self.key(namespace))
