"""
Key and tag builders for ledger data.

Keys and tags for the savings-group contract are always built here so the
read path and the invalidation path agree on spelling.
"""
from typing import Optional


class CacheKeys:
    @staticmethod
    def group(group_id: str) -> str:
        return f"group:{group_id}"

    @staticmethod
    def groups(user_id: Optional[str] = None) -> str:
        return f"groups:user:{user_id}" if user_id else "groups:all"

    @staticmethod
    def group_status(group_id: str) -> str:
        return f"group:{group_id}:status"

    @staticmethod
    def group_members(group_id: str) -> str:
        return f"group:{group_id}:members"

    @staticmethod
    def user_groups(user_id: str) -> str:
        return f"user:{user_id}:groups"

    @staticmethod
    def transactions(group_id: str, cursor: Optional[str] = None, limit: Optional[int] = None) -> str:
        return f"group:{group_id}:transactions:{cursor or 'start'}:{limit or 10}"

    @staticmethod
    def user_transactions(user_id: str) -> str:
        return f"user:{user_id}:transactions"


class CacheTags:
    groups = "groups"
    transactions = "transactions"

    @staticmethod
    def group(group_id: str) -> str:
        return f"group:{group_id}"

    @staticmethod
    def user(user_id: str) -> str:
        return f"user:{user_id}"


# TTLs in seconds per kind of ledger read
GROUP_STATUS_TTL = 30.0    # changes every contribution
GROUP_MEMBERS_TTL = 60.0
GROUP_LIST_TTL = 45.0
TRANSACTIONS_TTL = 120.0   # historical, rarely rewritten
