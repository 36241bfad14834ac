"""Scrub publisher-specific data out of a manifest before it is snapshotted.

Secrets, personal contact details and the publisher's own org id are
replaced in free-text fields. Tenant-specific URLs are only reported:
they are usually intentional and the author decides what to do.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple
from urllib.parse import urlparse

from schemas.manifest import PlaybookManifest

logger = logging.getLogger(__name__)

SECRET_PATTERNS = [
    re.compile(r"\bsk-[A-Za-z0-9_-]{20,}"),                 # OpenAI / Anthropic style keys
    re.compile(r"\bpat-[a-z0-9]{2,4}-[A-Za-z0-9-]{20,}"),   # HubSpot private app tokens
    re.compile(r"\bxox[abprs]-[A-Za-z0-9-]{10,}"),          # Slack tokens
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}"),            # GitHub tokens
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),                    # AWS access key ids
]
EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
PHONE_PATTERN = re.compile(r"(?<![\w-])(?:\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]\d{3}[-.\s]\d{4}\b")
URL_PATTERN = re.compile(r"https?://[^\s)\"'<>\]]+")

SECRET_TOKEN = "[REDACTED_SECRET]"
EMAIL_TOKEN = "[REDACTED_EMAIL]"
PHONE_TOKEN = "[REDACTED_PHONE]"
ORG_TOKEN = "[ORGANIZATION]"

# Hosts whose subdomains identify a single customer tenant
TENANT_HOST_SUFFIXES = (
    "hubspot.com",
    "salesforce.com",
    "force.com",
    "atlassian.net",
    "slack.com",
    "zendesk.com",
    "freshdesk.com",
    "myshopify.com",
    "sharepoint.com",
    "monday.com",
    "notion.site",
)
GENERIC_SUBDOMAINS = {"www", "api", "app", "docs", "help", "developers", "status"}


@dataclass
class HardcodedUrl:
    location: str
    url: str


def _text_fields(manifest: PlaybookManifest) -> Iterator[Tuple[str, object, str]]:
    """Yield (location, owner, attribute) for every free-text field."""
    for agent in manifest.agents:
        for attr in ("description", "instructions", "instructions_template"):
            yield f"agent '{agent.slug}' {attr}", agent, attr
    for skill in manifest.skills:
        for attr in ("description", "instructions", "examples"):
            yield f"skill '{skill.slug}' {attr}", skill, attr
    for document in manifest.documents:
        for attr in ("description", "content"):
            yield f"document '{document.slug}' {attr}", document, attr
    for workflow in manifest.workflows:
        yield f"workflow '{workflow.slug}' description", workflow, "description"
    for network in manifest.networks:
        for attr in ("description", "instructions"):
            yield f"network '{network.slug}' {attr}", network, attr
    for test_case in manifest.test_cases:
        yield f"test case '{test_case.name}' input_text", test_case, "input_text"


def _scrub(text: str, organization_id: Optional[str]) -> Tuple[str, List[str]]:
    found: List[str] = []

    secrets = 0
    for pattern in SECRET_PATTERNS:
        text, count = pattern.subn(SECRET_TOKEN, text)
        secrets += count
    if secrets:
        found.append(f"{secrets} secret(s)")

    text, count = EMAIL_PATTERN.subn(EMAIL_TOKEN, text)
    if count:
        found.append(f"{count} email address(es)")

    text, count = PHONE_PATTERN.subn(PHONE_TOKEN, text)
    if count:
        found.append(f"{count} phone number(s)")

    if organization_id and organization_id in text:
        count = text.count(organization_id)
        text = text.replace(organization_id, ORG_TOKEN)
        found.append(f"{count} organization id reference(s)")

    return text, found


def sanitize_manifest(
    manifest: PlaybookManifest,
    organization_id: Optional[str] = None,
) -> Tuple[PlaybookManifest, List[str]]:
    """Return a scrubbed copy of ``manifest`` and human-readable warnings."""
    clean = manifest.model_copy(deep=True)
    warnings: List[str] = []

    for location, owner, attr in _text_fields(clean):
        value = getattr(owner, attr)
        if not value:
            continue
        scrubbed, found = _scrub(value, organization_id)
        if found:
            setattr(owner, attr, scrubbed)
            warnings.append(f"{location}: removed {', '.join(found)}")

    if warnings:
        logger.info(f"Sanitized manifest: {len(warnings)} field(s) modified")
    return clean, warnings


def _is_tenant_url(url: str, organization_id: Optional[str]) -> bool:
    if organization_id and organization_id in url:
        return True
    host = (urlparse(url).hostname or "").lower()
    for suffix in TENANT_HOST_SUFFIXES:
        if host.endswith("." + suffix):
            subdomain = host[: -len(suffix) - 1].split(".")[0]
            return subdomain not in GENERIC_SUBDOMAINS
    return False


def detect_hardcoded_urls(
    manifest: PlaybookManifest,
    organization_id: Optional[str] = None,
) -> List[HardcodedUrl]:
    """Find URLs that point at one specific tenant's account."""
    hits: List[HardcodedUrl] = []
    for location, owner, attr in _text_fields(manifest):
        value = getattr(owner, attr)
        if not value:
            continue
        for match in URL_PATTERN.finditer(value):
            url = match.group(0).rstrip(".,;:")
            if _is_tenant_url(url, organization_id):
                hits.append(HardcodedUrl(location=location, url=url))
    return hits
