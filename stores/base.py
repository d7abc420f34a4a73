"""
Base profile-store interface and factory.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence

from errors import SchemaDriftDegraded

from .normalizer import Profile

if TYPE_CHECKING:
    from app.core.settings import Settings

RELATIONAL = "relational"
DOCUMENT = "document"
HIERARCHICAL = "hierarchical"

# Tie-break order for ranking: strongest integrity guarantees first.
PREFERENCE_ORDER = (RELATIONAL, DOCUMENT, HIERARCHICAL)
CRITICAL_STORES = frozenset({RELATIONAL, DOCUMENT})


@dataclass(frozen=True)
class StoreWrite:
    """Result of one successful upsert against one store."""

    profile: Profile
    drift: Optional[SchemaDriftDegraded] = None


class ProfileStore(ABC):
    """
    Abstract base class for one physical profile store.

    Implementations translate canonical profile records to and from their
    native representation. Every method raises StoreUnavailableError on
    connectivity problems and never a driver-specific exception.
    """

    def __init__(self, name: str) -> None:
        self.name = name

    @property
    def critical(self) -> bool:
        return self.name in CRITICAL_STORES

    @abstractmethod
    def get_profile(self, user_id: str) -> Optional[Profile]:
        """Return the stored profile, or None when absent."""
        pass

    @abstractmethod
    def write_profile(self, user_id: str, profile: Profile) -> StoreWrite:
        """Insert-or-replace the profile; safe to repeat with identical content."""
        pass

    def put_profile(self, user_id: str, profile: Profile) -> Profile:
        return self.write_profile(user_id, profile).profile

    @abstractmethod
    def list_feed_candidates(self, exclude_user_id: str, limit: int) -> List[Profile]:
        """Active, non-suspended profiles other than `exclude_user_id`."""
        pass

    @abstractmethod
    def list_user_ids(self) -> List[str]:
        pass

    @abstractmethod
    def upsert_many(self, collection: str, records: Sequence[Mapping[str, Any]], id_field: str) -> Dict[str, int]:
        """Bulk keyed upsert; returns {"inserted": n, "updated": m}."""
        pass

    @abstractmethod
    def ping(self) -> bool:
        """Cheap liveness check."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


def build_profile_stores(settings: "Settings") -> "OrderedDict[str, ProfileStore]":
    """
    Build the three profile stores from settings.

    - STORE_BACKEND=memory: three in-process stores (dev and tests)
    - STORE_BACKEND=sql: SQLAlchemy relational + document stores and a Redis
      hierarchical store
    """
    timeout = settings.STORE_TIMEOUT_SECONDS

    if settings.STORE_BACKEND == "memory":
        from .memory_store import InMemoryProfileStore

        return OrderedDict((name, InMemoryProfileStore(name)) for name in PREFERENCE_ORDER)

    from .document_store import DocumentStore
    from .postgres_store import RelationalStore
    from .redis_store import HierarchicalStore

    return OrderedDict(
        [
            (RELATIONAL, RelationalStore(settings.RELATIONAL_DATABASE_URL, timeout=timeout)),
            (DOCUMENT, DocumentStore(settings.DOCUMENT_DATABASE_URL, timeout=timeout)),
            (HIERARCHICAL, HierarchicalStore(settings.REDIS_URL, timeout=timeout)),
        ]
    )
