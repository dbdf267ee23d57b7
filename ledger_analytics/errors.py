from __future__ import annotations

from typing import Optional


class LedgerAnalyticsError(RuntimeError):
    pass


class ImporterConfigError(LedgerAnalyticsError):
    """Process settings are missing or invalid; the importer must not start."""


class InvalidConfig(LedgerAnalyticsError):
    """A custom-column configuration could not be understood."""


class ControlTableMissing(LedgerAnalyticsError):
    """The custom_columns control table does not exist yet (first run)."""


class MigrationError(LedgerAnalyticsError):
    pass


class LedgerTransportError(LedgerAnalyticsError):
    def __init__(self, path: str, message: str) -> None:
        super().__init__(message)
        self.path = path


class LedgerAPIError(LedgerAnalyticsError):
    """Error envelope returned by the ledger API."""

    def __init__(
        self,
        *,
        code: Optional[str],
        message: str,
        detail: Optional[str] = None,
        temporary: bool = False,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> None:
        text = f"{code}: {message}" if code else message
        if detail:
            text = f"{text} ({detail})"
        super().__init__(text)
        self.code = code
        self.chain_message = message
        self.detail = detail
        self.temporary = temporary
        self.status_code = status_code
        self.request_id = request_id
