"""Rule-based email categorization.

Rules are a closed set of variants discriminated by their ``type`` field.
Anything entering from user input or storage is validated here; unknown
types and malformed values never reach the matcher.

Evaluation:
1. Rules are sorted by ascending priority, ties broken by rule id
2. The first rule whose condition matches decides the category
3. No match leaves the email uncategorized (None)

Usage:
    from mailsync.classifier.categorization import categorize, parse_rule

    rule = parse_rule({"type": "sender_domain", "value": "example.com",
                       "category_id": 3, "priority": 1})
    category_id = categorize(email, [rule])
"""

from collections.abc import Iterable, Mapping
from typing import Annotated, Any, Literal, Protocol

import regex
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from mailsync.core.errors import RuleValidationError
from mailsync.core.logging import get_logger

logger = get_logger(__name__)

_DOMAIN_PATTERN = regex.compile(r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)*[a-z0-9-]{1,63}$")
_EMAIL_PATTERN = regex.compile(r"^[^@\s]+@[^@\s]+$")


class Categorizable(Protocol):
    """The email attributes rules are evaluated against."""

    from_email: str | None
    subject: str | None
    labels: list[str]


class _RuleBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int | None = None
    category_id: int
    priority: int = Field(default=100, ge=0, le=100000)
    value: str = Field(min_length=1, max_length=320)

    @field_validator("value")
    @classmethod
    def strip_value(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Rule value cannot be blank")
        return v


class SenderDomainRule(_RuleBase):
    """Matches the sender's domain or any subdomain of it."""

    type: Literal["sender_domain"] = "sender_domain"

    @field_validator("value")
    @classmethod
    def validate_domain(cls, v: str) -> str:
        v = v.strip().lower().lstrip("@")
        if not _DOMAIN_PATTERN.match(v, timeout=1.0):
            raise ValueError(f"'{v}' is not a valid domain")
        return v


class SenderEmailRule(_RuleBase):
    """Matches one sender address exactly (case-insensitive)."""

    type: Literal["sender_email"] = "sender_email"

    @field_validator("value")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not _EMAIL_PATTERN.match(v, timeout=1.0):
            raise ValueError(f"'{v}' is not an email address")
        return v


class SubjectKeywordRule(_RuleBase):
    """Matches a case-insensitive substring of the subject."""

    type: Literal["subject_keyword"] = "subject_keyword"


class LabelRule(_RuleBase):
    """Matches when the email carries the label (case-insensitive)."""

    type: Literal["label"] = "label"


CategorizationRule = Annotated[
    SenderDomainRule | SenderEmailRule | SubjectKeywordRule | LabelRule,
    Field(discriminator="type"),
]

_rule_adapter: TypeAdapter[CategorizationRule] = TypeAdapter(CategorizationRule)


def parse_rule(data: Mapping[str, Any]) -> CategorizationRule:
    """Validate untrusted rule data.

    Raises:
        RuleValidationError: Unknown type or malformed value
    """
    try:
        return _rule_adapter.validate_python(dict(data))
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc']) or 'rule'}: {err['msg']}"
            for err in e.errors()
        )
        raise RuleValidationError(f"Invalid categorization rule: {details}") from e


def load_rules(rows: Iterable[Mapping[str, Any]]) -> list[CategorizationRule]:
    """Parse stored rule rows, skipping (and logging) any that are malformed."""
    rules: list[CategorizationRule] = []
    for row in rows:
        try:
            rules.append(parse_rule(row))
        except RuleValidationError as e:
            logger.warning("invalid_rule_skipped", rule_id=row.get("id"), error=str(e))
    return rules


def _sender_domain(from_email: str) -> str:
    _, _, domain = from_email.rpartition("@")
    return domain


def rule_matches(rule: CategorizationRule, email: Categorizable) -> bool:
    """Evaluate one rule against an email."""
    sender = (email.from_email or "").strip().lower()

    match rule:
        case SenderDomainRule(value=domain):
            actual = _sender_domain(sender)
            return actual == domain or actual.endswith("." + domain)
        case SenderEmailRule(value=address):
            return sender == address
        case SubjectKeywordRule(value=keyword):
            return keyword.lower() in (email.subject or "").lower()
        case LabelRule(value=label):
            wanted = label.casefold()
            return any(existing.casefold() == wanted for existing in email.labels)

    return False


def categorize(email: Categorizable, rules: Iterable[CategorizationRule]) -> int | None:
    """Return the category of the first matching rule, or None.

    Pure and deterministic: depends only on the email and the rule set.
    """
    for rule in sorted(rules, key=lambda r: (r.priority, r.id if r.id is not None else 0)):
        if rule_matches(rule, email):
            return rule.category_id
    return None


# ---------------------------------------------------------------------------
# Defaults seeded for newly registered accounts
# ---------------------------------------------------------------------------

DEFAULT_CATEGORIES: list[dict[str, str]] = [
    {"name": "Work", "color": "#3B82F6", "icon": "briefcase"},
    {"name": "Personal", "color": "#10B981", "icon": "user"},
    {"name": "Newsletters", "color": "#8B5CF6", "icon": "newspaper"},
    {"name": "Notifications", "color": "#F59E0B", "icon": "bell"},
    {"name": "Finance", "color": "#EF4444", "icon": "wallet"},
    {"name": "Other", "color": "#6B7280", "icon": "folder"},
]

# (category name, type, value, priority)
DEFAULT_RULES: list[tuple[str, str, str, int]] = [
    ("Finance", "subject_keyword", "invoice", 10),
    ("Finance", "subject_keyword", "payment", 10),
    ("Finance", "subject_keyword", "receipt", 10),
    ("Newsletters", "sender_domain", "substack.com", 20),
    ("Newsletters", "sender_domain", "mailchimp.com", 20),
    ("Newsletters", "sender_domain", "beehiiv.com", 20),
    ("Newsletters", "label", "Newsletter", 20),
    ("Notifications", "sender_domain", "github.com", 30),
    ("Notifications", "sender_domain", "linkedin.com", 30),
    ("Notifications", "sender_domain", "accountprotection.microsoft.com", 30),
    ("Personal", "sender_domain", "gmail.com", 40),
    ("Personal", "sender_domain", "outlook.com", 40),
    ("Personal", "sender_domain", "hotmail.com", 40),
    ("Personal", "sender_domain", "yahoo.com", 40),
]
