"""
Feed Store.

Process-wide published state describing the last feed fetch and the last sync
failure, plus the directory identities already handed to the UI. The UI
collaborator reads `snapshot()` or subscribes to change notifications; the
fetch and flush paths are the only writers.

`reset_for_sign_out()` clears every diagnostic field but keeps the directory
identities, so author names rendered right after a sign-out/sign-in cycle on
the same device do not flicker back to opaque ids.
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from core.logging_config import get_logger
from core.models import BackendPost, DirectoryIdentity, utc_now

logger = get_logger(__name__)

SAMPLE_SIZE = 5

Listener = Callable[["FeedFetchState"], None]


@dataclass(frozen=True)
class FeedFetchState:
    """Immutable snapshot of feed fetch diagnostics"""

    is_fetching: bool = False
    owner_key: Optional[str] = None
    scope: Optional[str] = None
    target_owners: List[str] = field(default_factory=list)
    last_error: Optional[str] = None
    last_fetch_at: Optional[datetime] = None
    raw_count: int = 0
    mine_count: int = 0
    all_count: int = 0
    raw_sample: List[str] = field(default_factory=list)
    mine_sample: List[str] = field(default_factory=list)
    all_sample: List[str] = field(default_factory=list)
    last_sync_error: Optional[str] = None
    last_sync_error_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("last_fetch_at", "last_sync_error_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


def _sample(posts: Sequence[BackendPost]) -> List[str]:
    return [str(post.id) for post in posts[:SAMPLE_SIZE]]


class FeedStore:
    """Observable feed state for UI binding"""

    def __init__(self):
        self._state = FeedFetchState()
        self._directory_accounts: Dict[str, DirectoryIdentity] = {}
        self._listeners: List[Listener] = []

    @property
    def state(self) -> FeedFetchState:
        return self._state

    def snapshot(self) -> dict:
        data = self._state.to_dict()
        data["directory_accounts"] = len(self._directory_accounts)
        return data

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, state: FeedFetchState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Feed store listener failed: {e}")

    # Fetch lifecycle

    def begin_fetch(self, owner_key: Optional[str], scope: str, target_owners: Sequence[str] = ()) -> None:
        self._publish(
            replace(
                self._state,
                is_fetching=True,
                owner_key=owner_key,
                scope=scope,
                target_owners=list(target_owners),
            )
        )

    def end_fetch_success(
        self,
        raw: Sequence[BackendPost],
        mine: Sequence[BackendPost],
        all_posts: Sequence[BackendPost],
    ) -> None:
        self._publish(
            replace(
                self._state,
                is_fetching=False,
                last_error=None,
                last_fetch_at=utc_now(),
                raw_count=len(raw),
                mine_count=len(mine),
                all_count=len(all_posts),
                raw_sample=_sample(raw),
                mine_sample=_sample(mine),
                all_sample=_sample(all_posts),
            )
        )
        logger.info(f"Feed fetch ok raw={len(raw)} mine={len(mine)} all={len(all_posts)}")

    def end_fetch_failure(self, error: Exception) -> None:
        self._publish(
            replace(
                self._state,
                is_fetching=False,
                last_error=str(error),
                last_fetch_at=utc_now(),
            )
        )
        logger.warning(f"Feed fetch failed: {error}")

    # Sync errors

    def record_sync_error(self, message: str) -> None:
        self._publish(
            replace(self._state, last_sync_error=message, last_sync_error_at=utc_now())
        )

    def clear_sync_error(self) -> None:
        if self._state.last_sync_error is not None:
            self._publish(replace(self._state, last_sync_error=None, last_sync_error_at=None))

    # Directory identities

    @property
    def directory_accounts(self) -> Dict[str, DirectoryIdentity]:
        return dict(self._directory_accounts)

    def merge_directory_accounts(self, accounts: Mapping[str, DirectoryIdentity]) -> None:
        if not accounts:
            return
        merged = dict(self._directory_accounts)
        merged.update(accounts)
        self._directory_accounts = merged
        self._publish(self._state)

    def reset_for_sign_out(self) -> None:
        self._publish(FeedFetchState())
        logger.info(
            f"Feed store reset for sign-out; kept {len(self._directory_accounts)} directory accounts"
        )
