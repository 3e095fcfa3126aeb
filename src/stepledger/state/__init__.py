from stepledger.state.lock import LockManager, with_lock
from stepledger.state.store import SessionStore, recompute_metrics

__all__ = ["LockManager", "SessionStore", "recompute_metrics", "with_lock"]
