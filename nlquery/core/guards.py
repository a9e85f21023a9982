"""Cheap lexical guards that run before any classification or data access."""

from __future__ import annotations

import re

from nlquery.core.errors import InvalidRequestError, OffTopicError, RestrictedOperationError

MAX_QUESTION_LENGTH = 2000

OFF_TOPIC_PATTERNS = [
    re.compile(r"\b(weather|temperature|rain|sunny|cloudy|forecast|climate)\b", re.IGNORECASE),
    re.compile(
        r"\b(president|election|vote|politician|congress|senate|government|news|headline)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(movie|film|actor|actress|celebrity|song|music|singer|band|concert|tv show|netflix|youtube)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(football|soccer|basketball|baseball|cricket|tennis|match|score|team won|playoff)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(capital of|population of|who invented|when was .* born|how old is|history of)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(tell me a joke|write a poem|translate|recipe|cook|restaurant|food recommendation)\b",
        re.IGNORECASE,
    ),
    re.compile(r"^what is \d+\s*[+\-*/]\s*\d+", re.IGNORECASE),
    re.compile(
        r"^(hi|hello|hey|good morning|good afternoon|good evening|how are you|what's up|sup)\s*[?!.]*$",
        re.IGNORECASE,
    ),
    re.compile(
        r"\bwhat is (a |an |the )?(love|life|happiness|meaning|universe|god|time|space|atom)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(iphone|android|laptop|computer|gaming|playstation|xbox|bitcoin|crypto)\b",
        re.IGNORECASE,
    ),
]

DOMAIN_KEYWORDS = re.compile(
    r"\b(projects?|proposals?|contracts?|clients?|status|won|lost|submitted|pipeline|revenue|"
    r"fees?|pocs?|bids?|rfps?|categor(y|ies)|segments?|states?|cit(y|ies)|regions?|"
    r"agenc(y|ies)|architects?|engineers?|consultants?|construction|buildings?|infrastructure)\b",
    re.IGNORECASE,
)

DANGEROUS_KEYWORDS = [
    "insert",
    "update",
    "delete",
    "drop",
    "truncate",
    "alter",
    "create",
    "grant",
    "revoke",
    "exec",
    "execute",
    "merge",
    "replace",
    "call",
]

_DANGEROUS_RES = [
    (keyword, re.compile(rf"\b{keyword}\b", re.IGNORECASE)) for keyword in DANGEROUS_KEYWORDS
]


def is_off_topic(question: str) -> bool:
    text = question.strip()
    if DOMAIN_KEYWORDS.search(text):
        return False
    return any(pattern.search(text) for pattern in OFF_TOPIC_PATTERNS)


def find_dangerous_keyword(question: str) -> str | None:
    for keyword, pattern in _DANGEROUS_RES:
        if pattern.search(question):
            return keyword
    return None


def check_question(question: object) -> str:
    """Validate a raw question and return it stripped.

    Raises ``InvalidRequestError`` for empty or oversized input,
    ``OffTopicError`` for questions outside the projects domain and
    ``RestrictedOperationError`` when the text asks for a data change.
    """

    if not isinstance(question, str) or not question.strip():
        raise InvalidRequestError("Question is required")
    text = question.strip()
    if len(text) > MAX_QUESTION_LENGTH:
        raise InvalidRequestError(f"Question exceeds {MAX_QUESTION_LENGTH} characters")

    if is_off_topic(text):
        raise OffTopicError(
            "I can only answer questions about the projects data: clients, proposals, "
            "statuses, fees, regions and related pipeline metrics."
        )

    keyword = find_dangerous_keyword(text)
    if keyword is not None:
        raise RestrictedOperationError(
            f'Data changes such as "{keyword}" are not supported; this assistant only reads data.',
            keyword=keyword,
        )
    return text
