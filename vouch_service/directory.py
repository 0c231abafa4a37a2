from typing import List

from vouch_service.store import AccountSnapshot, AccountStore

MIN_QUERY_LENGTH = 2

class Directory:
    """Display-name lookup returning the same projection as the leaderboard"""

    def __init__(self, store: AccountStore):
        self.store = store

    def search(self, query: str, limit: int = None) -> List[AccountSnapshot]:
        # under two characters matches nothing
        text = (query or "").strip()
        if len(text) < MIN_QUERY_LENGTH:
            return []
        return self.store.find_by_name(text, limit)
