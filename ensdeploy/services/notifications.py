from __future__ import annotations

from dataclasses import dataclass, field
import logging

from ensdeploy.domain.models import Notice, NoticeLevel

_LEVELS = {
    NoticeLevel.SUCCESS: logging.INFO,
    NoticeLevel.INFO: logging.INFO,
    NoticeLevel.ERROR: logging.ERROR,
}


@dataclass
class LoggingNotifier:
    """Publishes user-facing notices as structured log records."""

    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("notices"))

    def notify(self, notice: Notice) -> None:
        self.logger.log(
            _LEVELS[notice.level],
            notice.message,
            extra={"deployment_id": notice.deployment_id, "notice_level": notice.level.value},
        )
