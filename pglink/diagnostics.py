"""
Non-fatal notices collected while building and executing statements.

Pass a :class:`Diagnostics` instance to a builder or executor to inspect what
was skipped (missing auto-timestamp columns, empty transactions) without
intercepting log output. Every notice is also logged at WARNING.
"""

import logging
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger("pglink.diagnostics")

AUTO_SET_TIME_FIELD_MISSING = "auto_set_time_field_missing"
EMPTY_TRANSACTION = "empty_transaction"


class Notice(BaseModel):
    """A single non-fatal event."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    table_name: Optional[str] = None
    field: Optional[str] = None


class Diagnostics:
    """Ordered collector of :class:`Notice` entries."""

    def __init__(self):
        self.notices: List[Notice] = []

    def warn(self, code: str, message: str, **context) -> Notice:
        notice = Notice(code=code, message=message, **context)
        self.notices.append(notice)
        logger.warning(message)
        return notice

    def codes(self) -> List[str]:
        return [notice.code for notice in self.notices]

    def __len__(self) -> int:
        return len(self.notices)

    def __iter__(self):
        return iter(self.notices)


def warn(diagnostics: Optional[Diagnostics], code: str, message: str, **context) -> None:
    """Record a notice on ``diagnostics`` if given, otherwise only log it."""
    if diagnostics is not None:
        diagnostics.warn(code, message, **context)
    else:
        logger.warning(message)
