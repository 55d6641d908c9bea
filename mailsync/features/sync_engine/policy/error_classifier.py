"""
Map executor failures onto the retry taxonomy.

Order: an explicit category reported by the executor, then the HTTP status
code, then message substrings. Anything left over is a processing_error;
a failure with no message at all is unknown.
"""

from mailsync.features.sync_engine.domain.models import ERROR_CATEGORIES, ExecutorError

TRANSIENT_CATEGORIES = frozenset({"timeout", "rate_limit", "network", "temporary"})
RETRY_ONCE_CATEGORIES = frozenset({"auth", "processing_error", "unknown"})
PERMANENT_CATEGORIES = frozenset({"permission", "not_found", "data_conflict"})

# Categories that say something about upstream health (circuit breaker input)
UPSTREAM_FAILURE_CATEGORIES = frozenset({"timeout", "rate_limit", "network", "temporary", "unknown"})

STATUS_CODE_CATEGORIES: dict[int, str] = {
    408: "timeout",
    504: "timeout",
    429: "rate_limit",
    500: "temporary",
    502: "temporary",
    503: "temporary",
    401: "auth",
    403: "permission",
    404: "not_found",
    409: "data_conflict",
}

# Checked top to bottom; first match wins
MESSAGE_PATTERNS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("timeout", ("timeout", "timed out")),
    ("rate_limit", ("rate limit", "too many requests", "429")),
    ("network", ("network", "connection", "dns")),
    ("temporary", ("temporary", "unavailable", "503", "502")),
    ("auth", ("auth", "token", "401", "403")),
    ("permission", ("permission", "access", "forbidden")),
    ("not_found", ("not found", "404")),
    ("data_conflict", ("duplicate", "conflict", "409")),
)


def categorize_error(error: ExecutorError | str | None, code: int | None = None) -> str:
    """
    Return the error category for an executor failure.

    Args:
        error: ExecutorError, bare message, or None
        code: HTTP status code when error is a bare message

    Returns:
        One of ERROR_CATEGORIES
    """
    reported = None
    message = error
    if isinstance(error, ExecutorError):
        reported = error.category
        message = error.message
        code = error.code if error.code is not None else code

    if reported in ERROR_CATEGORIES and reported != "unknown":
        return reported

    if code is not None and code in STATUS_CODE_CATEGORIES:
        return STATUS_CODE_CATEGORIES[code]

    if not message:
        return "unknown"

    lowered = str(message).lower()
    for category, needles in MESSAGE_PATTERNS:
        if any(needle in lowered for needle in needles):
            return category

    return "processing_error"


def is_transient(category: str) -> bool:
    return category in TRANSIENT_CATEGORIES


def counts_against_circuit(category: str) -> bool:
    return category in UPSTREAM_FAILURE_CATEGORIES
