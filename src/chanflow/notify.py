"""
Completion notifications.

The engine only builds the message and hands it to a ``Notifier``; the
transport (mail server, chat webhook, ...) lives in the notifier
implementation.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class Notification(BaseModel):
    """
    A message sent to pipeline users.
    """

    sender: Optional[str] = Field(None, description="Sender address")
    recipients: List[str] = Field(..., min_length=1, description="Recipient addresses")
    subject: str = Field(..., description="Message subject")
    body: str = Field(default="", description="Plain text body")
    attachments: List[Path] = Field(default_factory=list)


class Notifier(ABC):
    """
    Delivers notifications. Implementations raise ``NotificationError``
    when the transport fails.
    """

    @abstractmethod
    def send_notification(self, message: Notification) -> None:
        pass


def build_completion_notification(
    pipeline_name: str,
    summary: Dict[str, Any],
    recipients: List[str],
    sender: Optional[str] = None,
    error: Optional[BaseException] = None,
) -> Notification:
    """
    Build the report sent when a pipeline run ends.
    """
    outcome = "failed" if error is not None else "completed"
    lines = [f"Pipeline '{pipeline_name}' {outcome}.", ""]
    lines.append(f"Tasks: {summary.get('total_tasks', 0)}")
    for status, count in sorted(summary.get("status_counts", {}).items()):
        lines.append(f"  {status}: {count}")
    if error is not None:
        lines.extend(["", str(error)])

    return Notification(
        sender=sender,
        recipients=recipients,
        subject=f"[chanflow] {pipeline_name} {outcome}",
        body="\n".join(lines),
    )
