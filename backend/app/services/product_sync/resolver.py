"""FirmwareLinkResolver: turns a wiki firmware cell into a bundle URL.

Recognizes ``{tracker}/{project path}/-/issues/{iid}`` references, reads
the issue description and picks the first "Production bundle" .zip link:

    Production bundle: **[2451-ProDimmer.zip](/uploads/276e95c6/2451-ProDimmer.zip)**

Anything that does not resolve is passed through unchanged.
"""
import logging
import re

from services.product_sync.config import (
    BUNDLE_EXTENSION,
    BUNDLE_LINE_MARKER,
    BUNDLE_LINK_PATTERN,
    TRACKER_ISSUE_MARKER,
    TRACKER_UPLOAD_NAMESPACE,
)
from services.product_sync.tracker import TrackerClient, TrackerError

logger = logging.getLogger("prodhub.sync.resolver")

_ISSUE_IID_RE = re.compile(r"^(\d+)")
_BUNDLE_LINK_RE = re.compile(BUNDLE_LINK_PATTERN)


def find_bundle_line(markdown: str) -> str:
    """First line mentioning a production bundle .zip, or ""."""
    for line in markdown.split("\n"):
        if BUNDLE_LINE_MARKER in line.lower() and BUNDLE_EXTENSION in line:
            return line
    return ""


def bundle_link(line: str) -> str:
    """Relative ``/uploads/...zip`` link target on a bundle line, or ""."""
    match = _BUNDLE_LINK_RE.search(line)
    return match.group(1) if match else ""


class FirmwareLinkResolver:

    def __init__(self, tracker: TrackerClient, project_id: str, project_path: str):
        self.tracker = tracker
        self.project_id = str(project_id)
        self.issue_prefix = (
            f"{tracker.base_url}/{project_path.strip('/')}{TRACKER_ISSUE_MARKER}"
        )

    def is_issue_url(self, value: str) -> bool:
        return bool(self.tracker.base_url) and value.startswith(self.issue_prefix)

    def upload_url(self, upload_path: str) -> str:
        return f"{self.tracker.base_url}{TRACKER_UPLOAD_NAMESPACE}{self.project_id}{upload_path}"

    async def resolve(self, raw: str) -> str:
        """Resolved bundle download URL, or ``raw`` unchanged."""
        if not self.is_issue_url(raw):
            return raw

        match = _ISSUE_IID_RE.match(raw[len(self.issue_prefix):])
        issue_iid = int(match.group(1)) if match else 0
        if not issue_iid:
            logger.warning("Failed to parse issue URL: %s", raw)
            return raw

        try:
            description = await self.tracker.issue_description(self.project_id, issue_iid)
        except TrackerError as exc:
            logger.warning("Firmware issue %d unavailable, keeping %s: %s", issue_iid, raw, exc)
            return raw

        line = find_bundle_line(description)
        if not line:
            logger.warning("No production bundle line in issue %d: %s", issue_iid, raw)
            return raw

        upload_path = bundle_link(line)
        if not upload_path:
            logger.warning("No .zip link on production bundle line of issue %d: %s", issue_iid, raw)
            return raw

        resolved = self.upload_url(upload_path)
        logger.debug("Resolved %s -> %s", raw, resolved)
        return resolved
