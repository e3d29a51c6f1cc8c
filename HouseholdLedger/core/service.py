"""Google Sheets transport for the ledger worksheets.

Exposes per-table read, write and clear operations plus the access token used
to authorize them. Writes have full-overwrite semantics: the target ranges are
cleared and rewritten in one batch. HTTP and transport failures are translated
into status exceptions: 401/403 become :class:`status.AuthExpiredException`,
404 becomes :class:`status.RemoteNotFoundException` and timeouts, SSL errors,
5xx and 429 responses become :class:`status.NetworkTransientException`.
"""

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional

import google.oauth2.credentials
import httplib2
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .auth import AccessToken
from .tables import TABLES, TABLE_NAMES, quote_sheet_name, table_for
from ..settings.lib import RemoteConfig
from ..status import status

VALUE_RENDER_OPTION: str = 'UNFORMATTED_VALUE'
VALUE_INPUT_OPTION: str = 'RAW'


def _execute(request: Any, what: str) -> Dict[str, Any]:
    """Execute a Sheets API request, translating failures into status exceptions.

    Args:
        request: The prepared googleapiclient request.
        what: Short description used in log and error messages.

    Raises:
        status.AuthExpiredException: On HTTP 401/403.
        status.RemoteNotFoundException: On HTTP 404.
        status.NetworkTransientException: On transport errors, 5xx and 429.
        status.UnclassifiedException: On any other HTTP error.
    """
    try:
        return request.execute() or {}
    except HttpError as ex:
        code = status.http_status_of(ex)
        logging.debug(f'{what} failed with HTTP {code}: {ex}')
        raise status.to_status_exception(ex) from ex
    except (httplib2.HttpLib2Error, OSError) as ex:
        logging.debug(f'{what} failed with a transport error: {ex}')
        raise status.NetworkTransientException(f'{what}: {ex}') from ex


class SheetsTransport:
    """Authenticated read/write/clear operations against the ledger spreadsheet.

    Safe to call from worker threads. The Sheets client is built on demand and
    cached until the token or the configuration changes.
    """

    def __init__(self, config: Optional[RemoteConfig] = None) -> None:
        self._lock = threading.RLock()
        self._config: RemoteConfig = config or RemoteConfig()
        self._token: Optional[AccessToken] = None
        self._cached_service: Any = None

    @property
    def config(self) -> RemoteConfig:
        return self._config

    def configure(self, config: RemoteConfig) -> None:
        """Point the transport at another spreadsheet or client."""
        with self._lock:
            self._config = config
            self.clear_service()

    def get_token(self) -> Optional[AccessToken]:
        with self._lock:
            return self._token

    def set_token(self, token: Optional[AccessToken]) -> None:
        """Set or clear the access token. The cached client is dropped when the token changes."""
        with self._lock:
            current = self._token.access_token if self._token else None
            new = token.access_token if token else None
            self._token = token
            if current == new:
                return
            self.clear_service()

    def clear_service(self) -> None:
        """
        Clears the cached Sheets API client.
        """
        with self._lock:
            if self._cached_service is not None:
                try:
                    self._cached_service.close()
                except (AttributeError, OSError) as ex:
                    logging.debug(f'Failed closing cached Sheets service client: {ex}')
            self._cached_service = None

    def get_service(self) -> Any:
        """
        Builds (or returns cached) Google Sheets service client.

        Raises:
            status.RemoteNotConfiguredException: If the remote link is incomplete.
            status.AuthExpiredException: If there is no access token.
        """
        with self._lock:
            if not self._config.is_complete():
                raise status.RemoteNotConfiguredException(
                    f'Missing: {", ".join(self._config.missing_keys())}.'
                )
            if self._token is None or not self._token.access_token:
                raise status.AuthExpiredException('No access token.')

            if self._cached_service is not None:
                return self._cached_service

            creds = google.oauth2.credentials.Credentials(token=self._token.access_token)
            self._cached_service = build(
                'sheets', 'v4',
                credentials=creds,
                developerKey=self._config.api_key or None,
                cache_discovery=False,
            )
            logging.debug('Google Sheets service client created successfully.')
            return self._cached_service

    @property
    def spreadsheet_id(self) -> str:
        return self._config.spreadsheet_id

    def sheet_titles(self) -> List[str]:
        """Return the titles of the worksheets in the spreadsheet."""
        service = self.get_service()
        result = _execute(
            service.spreadsheets().get(
                spreadsheetId=self.spreadsheet_id,
                fields='sheets(properties(title))'
            ),
            'Reading spreadsheet metadata'
        )
        return [s.get('properties', {}).get('title', '') for s in result.get('sheets', [])]

    def ensure_tables(self, names: Optional[Iterable[str]] = None) -> List[str]:
        """Add missing worksheets with a frozen header row.

        Returns:
            List[str]: The worksheets that were created.
        """
        names = list(names or TABLE_NAMES)
        existing = set(self.sheet_titles())
        missing = [n for n in names if n not in existing]
        if not missing:
            return []

        requests = [
            {'addSheet': {'properties': {'title': n, 'gridProperties': {'frozenRowCount': 1}}}}
            for n in missing
        ]
        _execute(
            self.get_service().spreadsheets().batchUpdate(
                spreadsheetId=self.spreadsheet_id, body={'requests': requests}
            ),
            'Creating worksheets'
        )
        logging.info(f'Created worksheets: {", ".join(missing)}.')
        return missing

    def read_table(self, name: str) -> List[List[Any]]:
        """Return all rows of a worksheet, header included."""
        return self.read_tables([name])[name]

    def read_tables(self, names: Optional[Iterable[str]] = None) -> Dict[str, List[List[Any]]]:
        """Read several worksheets in one batch request.

        Worksheets that do not exist yet read as empty.

        Returns:
            Dict[str, List[List[Any]]]: Worksheet title to rows.
        """
        names = list(names or TABLE_NAMES)
        existing = set(self.sheet_titles())
        present = [n for n in names if n in existing]
        tables: Dict[str, List[List[Any]]] = {n: [] for n in names}
        if not present:
            logging.debug('None of the ledger worksheets exist yet.')
            return tables

        result = _execute(
            self.get_service().spreadsheets().values().batchGet(
                spreadsheetId=self.spreadsheet_id,
                ranges=[table_for(n).range for n in present],
                valueRenderOption=VALUE_RENDER_OPTION,
                fields='valueRanges(values)',
            ),
            'Reading worksheets'
        )
        for name, value_range in zip(present, result.get('valueRanges', [])):
            tables[name] = value_range.get('values', []) or []

        logging.debug(
            f'Read {len(present)} worksheet(s): '
            f'{", ".join(f"{n}={len(tables[n])}" for n in present)}.'
        )
        return tables

    def write_table(self, name: str, rows: List[List[Any]]) -> None:
        """Overwrite a worksheet with ``rows``."""
        self.write_tables({name: rows})

    def write_tables(self, tables: Dict[str, List[List[Any]]]) -> None:
        """Overwrite several worksheets as one logical unit.

        Missing worksheets are created first. The target ranges are then cleared
        and written with one batchClear and one batchUpdate request.
        """
        if not tables:
            return
        self.ensure_tables(tables.keys())
        service = self.get_service()

        _execute(
            service.spreadsheets().values().batchClear(
                spreadsheetId=self.spreadsheet_id,
                body={'ranges': [table_for(n).range for n in tables]},
            ),
            'Clearing worksheets'
        )
        data = [
            {'range': f'{quote_sheet_name(n)}!A1', 'values': rows}
            for n, rows in tables.items() if rows
        ]
        if data:
            _execute(
                service.spreadsheets().values().batchUpdate(
                    spreadsheetId=self.spreadsheet_id,
                    body={'valueInputOption': VALUE_INPUT_OPTION, 'data': data},
                ),
                'Writing worksheets'
            )
        logging.debug(
            f'Wrote {len(tables)} worksheet(s): '
            f'{", ".join(f"{n}={len(r)}" for n, r in tables.items())}.'
        )

    def clear_table(self, name: str) -> None:
        """Remove every value from a worksheet."""
        _execute(
            self.get_service().spreadsheets().values().clear(
                spreadsheetId=self.spreadsheet_id,
                range=table_for(name).range,
                body={},
            ),
            f'Clearing worksheet "{name}"'
        )

    def clear_tables(self) -> None:
        """Remove every value from all ledger worksheets that exist."""
        existing = set(self.sheet_titles())
        for spec in TABLES:
            if spec.name in existing:
                self.clear_table(spec.name)
