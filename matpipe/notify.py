"""
Completion notifications.

The message is rendered from ``templates/notification.txt`` and posted as a
JSON body ``{"text": ...}``, which chat webhooks (Slack and compatibles)
accept as is. Delivery is best effort: callers get ``False`` back on failure,
never an exception.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from jinja2 import Environment, FileSystemLoader

from .pipeline_core.error_handling import retry_on_failure
from .version import __version__

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"


def render_message(summary: Dict[str, Any], template_name: str = "notification.txt") -> str:
    """Render the notification text for a run summary.

    Parameters
    ----------
    summary : dict
        Run summary; see ``stages.output_stages.build_run_summary``
    template_name : str
        Template file in the package's templates directory

    Returns
    -------
    str
        Rendered message
    """
    env = Environment(loader=FileSystemLoader(str(TEMPLATES_DIR)), keep_trailing_newline=False)
    template = env.get_template(template_name)
    return template.render(**summary).strip()


class NotificationRejected(Exception):
    """The endpoint answered with an HTTP error status."""

    def __init__(self, code: int):
        super().__init__(f"HTTP {code}")
        self.code = code


@retry_on_failure(max_attempts=3, delay=2.0, backoff=2.0, exceptions=(URLError,), logger=logger)
def _post_json(url: str, payload: Dict[str, Any], timeout: float) -> None:
    data = json.dumps(payload).encode("utf-8")
    request = Request(
        url,
        data=data,
        method="POST",
        headers={
            "Content-Type": "application/json",
            "User-Agent": f"matpipe/{__version__}",
        },
    )
    try:
        with urlopen(request, timeout=timeout) as response:
            response.read()
    except HTTPError as e:
        # HTTPError subclasses URLError; an answer from the endpoint is final
        raise NotificationRejected(e.code) from e


def send_notification(url: Optional[str], message: str, timeout: float = 10) -> bool:
    """Post ``message`` to ``url``.

    Parameters
    ----------
    url : str or None
        Webhook endpoint; nothing is sent when empty
    message : str
        Message text
    timeout : float
        Per-request timeout in seconds

    Returns
    -------
    bool
        True if the endpoint accepted the message
    """
    if not url:
        logger.debug("No notification endpoint configured")
        return False

    try:
        _post_json(url, {"text": message}, timeout)
    except NotificationRejected as e:
        logger.warning(f"Notification rejected by {url}: HTTP {e.code}")
        return False
    except (URLError, OSError, ValueError) as e:
        logger.warning(f"Notification to {url} failed: {e}")
        return False

    logger.info(f"Notification sent to {url}")
    return True
