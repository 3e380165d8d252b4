"""
MonitHQ - Error Taxonomy and Coded Error Handling

Service functions raise the typed errors below; the API layer turns them into
JSON responses. Failures nobody anticipated go through ErrorHandler, which
gives them a code (ERR-<CATEGORY>-<unix time>) that can be looked up later in
memory or in the error_logs table.

Usage:
    from error_handler import ErrorHandler, NotFoundError

    errors = ErrorHandler("MonitHQ", supabase)
    body = errors.handle(exc, context={"path": "/api/cron/monitor"})
"""

import logging
import traceback
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)


class MonitHQError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    category = "SYS"

    def __init__(self, error: str, **details):
        super().__init__(error)
        self.message = error
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.message, **self.details}


class ValidationError(MonitHQError):
    status_code = 400
    category = "VAL"


class AuthError(MonitHQError):
    status_code = 401
    category = "AUTH"


class PermissionDenied(MonitHQError):
    status_code = 403
    category = "PERM"


class PlanLimitError(PermissionDenied):
    """A plan limit (site count, check interval) was exceeded."""


class NotFoundError(MonitHQError):
    status_code = 404
    category = "DB"


@dataclass
class ErrorRecord:
    code: str
    app: str
    category: str
    error_type: str
    message: str
    trace: str
    context: dict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_row(self) -> dict:
        """Shape stored in error_logs (and returned by lookup)."""
        return {
            "error_code": self.code,
            "app": self.app,
            "category": self.category,
            "error_type": self.error_type,
            "error_message": self.message,
            "traceback": self.trace,
            "context": self.context,
            "created_at": self.occurred_at.isoformat(),
        }


class ErrorHandler:
    """
    Coded handling for unexpected failures.

    Categories:
        AUTH - API keys and the cron secret
        DB   - Supabase reads and writes
        API  - Pusher, SMTP, Slack and webhook deliveries
        VAL  - invalid input
        PERM - access and plan limits
        SYS  - everything else
    """

    USER_MESSAGES = {
        "AUTH": "Authentication failed.",
        "DB": "Monitoring data could not be read or saved. Please try again.",
        "API": "A delivery service is temporarily unavailable. Please try again later.",
        "VAL": "Please check your input and try again.",
        "PERM": "You don't have access to this resource.",
        "SYS": "Something went wrong on our side. Please try again.",
    }

    MAX_IN_MEMORY = 1000

    def __init__(self, app_name: str, supabase_client=None):
        self.app_name = app_name
        self.supabase = supabase_client
        self._recent = OrderedDict()

    def handle(self, error: Exception, category: Optional[str] = None,
               context: Optional[dict] = None, custom_message: Optional[str] = None) -> dict:
        """
        Log and record an error, and build the JSON body for the caller.

        The category defaults to the error's own category when it is a
        MonitHQError, SYS otherwise.
        """
        if category is None:
            category = getattr(error, "category", "SYS")

        occurred_at = datetime.now(timezone.utc)
        record = ErrorRecord(
            code=f"ERR-{category}-{int(occurred_at.timestamp())}",
            app=self.app_name,
            category=category,
            error_type=type(error).__name__,
            message=str(error),
            trace="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            context=context or {},
            occurred_at=occurred_at,
        )

        logger.error(f"[{record.code}] {record.error_type}: {record.message}")
        logger.debug(f"[{record.code}] context={record.context}\n{record.trace}")

        self._remember(record)

        return {
            "error": custom_message or self.USER_MESSAGES.get(category, self.USER_MESSAGES["SYS"]),
            "error_code": record.code,
            "user_action": f"If this keeps happening, contact support and quote {record.code}",
        }

    def _remember(self, record: ErrorRecord):
        row = record.to_row()
        self._recent[record.code] = row
        while len(self._recent) > self.MAX_IN_MEMORY:
            self._recent.popitem(last=False)

        if self.supabase is None:
            return
        try:
            self.supabase.table("error_logs").insert(row).execute()
        except Exception as e:
            logger.warning(f"Could not write {record.code} to error_logs: {e}")

    def lookup(self, error_code: str) -> dict:
        """Error details by code: recent errors first, then error_logs."""
        if error_code in self._recent:
            return self._recent[error_code]

        if self.supabase is not None:
            try:
                result = self.supabase.table("error_logs")\
                    .select("*")\
                    .eq("error_code", error_code)\
                    .execute()
                if result.data:
                    return result.data[0]
            except Exception as e:
                logger.warning(f"Could not read {error_code} from error_logs: {e}")

        return {"error": "Not found", "error_code": error_code}
