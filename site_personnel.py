"""
Live "who is clocked in where" view.

The per-site grouping is recomputed from the full active_sessions snapshot
on every change notification; nothing is counted incrementally.
"""
import logging
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional

from kv_store import ACTIVE_SESSIONS, SITE_PERSONNEL, Store
from models import ActiveSession, SitePersonnel

logger = logging.getLogger(__name__)

BySite = Dict[str, List[ActiveSession]]


def group_by_site(sessions: Iterable[ActiveSession]) -> BySite:
    by_site: BySite = defaultdict(list)
    for session in sessions:
        by_site[session.site_id].append(session)
    for site_sessions in by_site.values():
        site_sessions.sort(key=lambda s: s.clock_in_at, reverse=True)
    return dict(by_site)


class ActiveSessionAggregator:
    def __init__(self, store: Store):
        self.store = store
        self._sessions: List[ActiveSession] = []
        self._by_site: BySite = {}
        self._listeners: List[Callable[[BySite], None]] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(ACTIVE_SESSIONS, self._on_snapshot)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_snapshot(self, snapshot: Dict[str, dict]) -> None:
        sessions = []
        for worker_id, doc in snapshot.items():
            sessions.append(ActiveSession(**{"worker_id": worker_id, **doc}))
        self._sessions = sessions
        self._by_site = group_by_site(sessions)
        for listener in list(self._listeners):
            listener(self._by_site)

    def add_listener(self, listener: Callable[[BySite], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        listener(self._by_site)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    @property
    def sessions(self) -> List[ActiveSession]:
        return list(self._sessions)

    @property
    def by_site(self) -> BySite:
        return {site_id: list(sessions) for site_id, sessions in self._by_site.items()}

    @property
    def total_count(self) -> int:
        return len(self._sessions)

    def personnel(self, site_id: str) -> List[ActiveSession]:
        return list(self._by_site.get(site_id, []))

    def count(self, site_id: str) -> int:
        return len(self._by_site.get(site_id, []))


async def load_site_personnel(store: Store, site_id: str) -> List[SitePersonnel]:
    """Read the denormalized per-site mirror directly, newest clock-in first"""
    personnel = [SitePersonnel(**doc) for doc in await store.find(SITE_PERSONNEL, site_id=site_id)]
    personnel.sort(key=lambda p: p.clock_in_at, reverse=True)
    return personnel
