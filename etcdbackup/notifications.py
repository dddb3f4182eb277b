"""
Failure notifications via Apprise.

Notifications are optional: they are sent only when APPRISE_URLS is set
(comma or newline separated Apprise URLs). Sending is best-effort and never
affects the outcome of a backup cycle.
"""
import os
import socket
import time
from typing import List, Optional

import apprise

from etcdbackup.utils import get_logger, to_iso_z, now

logger = get_logger(__name__)


def get_notification_urls() -> List[str]:
    raw = os.environ.get('APPRISE_URLS', '')
    return [u.strip() for u in raw.replace(',', '\n').splitlines() if u.strip()]


def get_subject_with_tag(subject: str) -> str:
    """Prefix the subject with NOTIFY_SUBJECT_TAG when set.

    E.g. with NOTIFY_SUBJECT_TAG="[prod]", get_subject_with_tag('Hello') -> '[prod] Hello'
    """
    tag = os.environ.get('NOTIFY_SUBJECT_TAG', '').strip()
    if tag:
        return f"{tag} {subject}"
    return subject


def _make_apobj(urls: List[str]) -> Optional[apprise.Apprise]:
    apobj = apprise.Apprise()
    added = 0
    for u in urls:
        if apobj.add(u):
            added += 1
        else:
            logger.warning("[Notify] Apprise rejected URL scheme for one configured target")
    return apobj if added else None


def send_notification(title: str, body: str, urls: Optional[List[str]] = None) -> bool:
    """Send a plain-text notification. Returns True if Apprise reported success."""
    urls = get_notification_urls() if urls is None else urls
    if not urls:
        return False

    apobj = _make_apobj(urls)
    if apobj is None:
        return False

    for attempt in range(2):
        try:
            if apobj.notify(title=get_subject_with_tag(title), body=body):
                return True
        except Exception as e:
            logger.warning("[Notify] notify failed: attempt=%d error=%s", attempt + 1, e)
        time.sleep(0.5)
    logger.error("[Notify] Failed to send notification: %s", title)
    return False


def send_backup_failure_notification(name: str, stage: str, error) -> bool:
    """Notify that `stage` ('create' or 'upload') failed for snapshot `name`."""
    host = socket.gethostname()
    title = f"etcd backup {stage} failed: {name}"
    body = (
        f"Host: {host}\n"
        f"Snapshot: {name}\n"
        f"Stage: {stage}\n"
        f"Time: {to_iso_z(now())}\n"
        f"Error: {error}"
    )
    return send_notification(title, body)
