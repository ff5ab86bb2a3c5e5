import re

TICKET_PREFIX = re.compile(r"^[a-z]+-\d+\s*-\s*", re.IGNORECASE)
NON_ALNUM = re.compile(r"[^a-z0-9]+")
MAX_SLUG_LENGTH = 50


def slug_from_title(title: str) -> str:
    """Turn a PR title into a git-safe branch slug ("JIRA-123 - Fix X" -> "fix-x")."""
    slug = TICKET_PREFIX.sub("", title).lower()
    slug = NON_ALNUM.sub("-", slug).strip("-")
    if len(slug) > MAX_SLUG_LENGTH:
        slug = slug[:MAX_SLUG_LENGTH].rstrip("-")
    return slug
