"""Microsoft Graph API client module.

Provides:
- Base client with retry logic, rate limiting and error mapping
- Delta fetcher producing change events and resumable cursors
- Message operations (sendMail, batched flag/read/category updates)

Usage:
    from mailsync.graph import DeltaFetcher, GraphClient, MessageManager

    client = GraphClient(access_token, account_id=account_id)
    fetcher = DeltaFetcher(client, folders=["Inbox", "SentItems"])
    result = fetcher.fetch_changes(account_id, cursor)
"""

from mailsync.graph.client import GraphClient
from mailsync.graph.delta import ChangeEvent, DeltaFetcher, FetchResult, RemoteMessage
from mailsync.graph.messages import MessageManager

__all__ = [
    "ChangeEvent",
    "DeltaFetcher",
    "FetchResult",
    "GraphClient",
    "MessageManager",
    "RemoteMessage",
]
