"""Write-side message operations for Microsoft Graph.

Local edits (read state, flag, trash, categories) are recorded as pending
mutations by the store and pushed here at the start of each sync cycle.
Scheduled emails leave through send_mail().

Usage:
    from mailsync.graph.client import GraphClient
    from mailsync.graph.messages import MessageManager

    messages = MessageManager(GraphClient(token, account_id))
    messages.send_mail(["someone@example.com"], [], "Hello", "Body text")
"""

from typing import TYPE_CHECKING, Any

from mailsync.core.logging import get_logger
from mailsync.graph.delta import FOLDER_LABELS

if TYPE_CHECKING:
    from mailsync.graph.client import GraphClient

logger = get_logger(__name__)

_FOLDER_LABEL_VALUES = frozenset(FOLDER_LABELS.values())


def labels_to_categories(labels: list[str]) -> list[str]:
    """Outlook categories are the labels that are not folder labels."""
    return [label for label in labels if label not in _FOLDER_LABEL_VALUES]


def mutation_request(remote_id: str, field: str, value: Any) -> dict[str, Any]:
    """Build the Graph request that applies one pending mutation.

    Raises:
        ValueError: For a field that cannot be pushed
    """
    url = f"/me/messages/{remote_id}"
    match field:
        case "is_read":
            return {"method": "PATCH", "url": url, "body": {"isRead": bool(value)}}
        case "is_starred":
            status = "flagged" if value else "notFlagged"
            return {"method": "PATCH", "url": url, "body": {"flag": {"flagStatus": status}}}
        case "labels":
            return {
                "method": "PATCH",
                "url": url,
                "body": {"categories": labels_to_categories(list(value))},
            }
        case "is_trashed":
            if value:
                destination = "deleteditems"
            else:
                destination = "inbox"
            return {"method": "POST", "url": f"{url}/move", "body": {"destinationId": destination}}
    raise ValueError(f"Cannot push mutation for field '{field}'")


class MessageManager:
    """Message operations for one account's GraphClient."""

    def __init__(self, client: "GraphClient"):
        self.client = client

    def send_mail(
        self,
        to_addresses: list[str],
        cc_addresses: list[str],
        subject: str,
        body: str,
        content_type: str = "Text",
    ) -> None:
        """Send a message through /me/sendMail and keep a copy in Sent Items.

        Raises:
            GraphAPIError: If the provider rejects the message
        """
        message = {
            "subject": subject,
            "body": {"contentType": content_type, "content": body},
            "toRecipients": [{"emailAddress": {"address": a}} for a in to_addresses],
            "ccRecipients": [{"emailAddress": {"address": a}} for a in cc_addresses],
        }
        self.client.post("/me/sendMail", json={"message": message, "saveToSentItems": True})
        logger.info(
            "mail_sent",
            account_id=self.client.account_id,
            recipients=len(to_addresses) + len(cc_addresses),
        )

    def push_mutations(self, mutations: list[tuple[str, str, str, Any]]) -> set[str]:
        """Apply local edits on the provider in one $batch round trip.

        Args:
            mutations: (operation id, remote message id, field, value) tuples

        Returns:
            Operation ids the provider accepted
        """
        operations = []
        for op_id, remote_id, field, value in mutations:
            try:
                operations.append({"id": op_id, **mutation_request(remote_id, field, value)})
            except ValueError as e:
                logger.warning("mutation_not_pushable", field=field, error=str(e))

        if not operations:
            return set()

        responses = self.client.batch_request(operations)

        accepted = set()
        for response in responses:
            status = response.get("status", 0)
            if 200 <= status < 300:
                accepted.add(response.get("id", ""))
            else:
                error = (response.get("body") or {}).get("error", {})
                logger.warning(
                    "mutation_push_rejected",
                    account_id=self.client.account_id,
                    status=status,
                    error_code=error.get("code"),
                )

        logger.info(
            "mutations_pushed",
            account_id=self.client.account_id,
            sent=len(operations),
            accepted=len(accepted),
        )
        return accepted
