"""Google Sheets and Drive API client.

Wraps the ``googleapiclient`` Sheets v4 and Drive v3 resources held by the
client context and translates transport and HTTP failures into the
application's status exceptions. Also provides the A1 range helpers and the
worker thread used to keep blocking calls off the GUI thread.
"""

import io
import json
import logging
import socket
import ssl
from typing import Any, Callable, Dict, List, Optional

import google.auth.exceptions
from PySide6 import QtCore
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

from ..status import status

SPREADSHEET_MIMETYPE: str = 'application/vnd.google-apps.spreadsheet'
FOLDER_MIMETYPE: str = 'application/vnd.google-apps.folder'
JSON_MIMETYPE: str = 'application/json'

FILE_FIELDS: str = (
    'id,name,mimeType,modifiedTime,createdTime,webViewLink,'
    'owners(displayName,emailAddress,me),sharingUser(displayName,emailAddress),'
    'capabilities(canEdit,canComment)'
)


def idx_to_col(idx: int) -> str:
    """
    Converts a zero-based column index to a spreadsheet column letter (A, B, ..., Z, AA, ...).

    Args:
        idx (int): Zero-based column index.

    Returns:
        str: Column letters.
    """
    if idx < 0:
        raise ValueError(f'Column index must not be negative, got {idx}.')
    letters = ''
    idx += 1
    while idx:
        idx, rem = divmod(idx - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def a1(tab: str, cells: str = '') -> str:
    """Return an A1 range for a tab, quoting the tab title.

    Args:
        tab (str): Tab title. Single quotes are doubled.
        cells (str): Optional cell reference, e.g. ``'A1:B1'`` or ``'1:1'``.

    Returns:
        str: e.g. ``"'Records'!A2:G2"``.
    """
    quoted = "'" + tab.replace("'", "''") + "'"
    return f'{quoted}!{cells}' if cells else quoted


def _error_reason(ex: HttpError) -> str:
    try:
        content = json.loads(ex.content.decode('utf-8'))
        return content.get('error', {}).get('message', '') or str(ex)
    except (ValueError, AttributeError):
        return str(ex)


def _execute(request: Any, what: str) -> Any:
    """Execute a googleapiclient request, translating failures.

    Args:
        request: A prepared ``HttpRequest``.
        what (str): Short description of the call for messages.

    Raises:
        status.NotAuthenticatedException: HTTP 401.
        status.PermissionDeniedException: HTTP 403.
        status.DocumentNotFoundException: HTTP 404.
        status.BadRequestException: HTTP 400.
        status.ServiceUnavailableException: Any other HTTP error, timeouts and transport failures.
    """
    try:
        return request.execute()
    except HttpError as ex:
        stat: Optional[int] = ex.resp.status if ex.resp else None
        reason = _error_reason(ex)
        if stat == 401:
            from .signals import signals
            signals.authenticationRequested.emit()
            raise status.NotAuthenticatedException(f'{what} (HTTP 401): {reason}') from ex
        elif stat == 403:
            raise status.PermissionDeniedException(f'{what} (HTTP 403): {reason}') from ex
        elif stat == 404:
            raise status.DocumentNotFoundException(f'{what} (HTTP 404): {reason}') from ex
        elif stat == 400:
            raise status.BadRequestException(f'{what} (HTTP 400): {reason}') from ex
        else:
            raise status.ServiceUnavailableException(f'{what} (HTTP {stat}): {reason}') from ex
    except socket.timeout as ex:
        raise status.ServiceUnavailableException(f'Timeout error: {what}: {ex}') from ex
    except ssl.SSLError as ex:
        raise status.ServiceUnavailableException(f'SSL error: {what}: {ex}') from ex
    except google.auth.exceptions.TransportError as ex:
        raise status.ServiceUnavailableException(f'Transport error: {what}: {ex}') from ex
    except OSError as ex:
        raise status.ServiceUnavailableException(f'Connection error: {what}: {ex}') from ex


def _as_rows(values: Optional[List[List[Any]]]) -> List[List[str]]:
    return [['' if cell is None else str(cell) for cell in row] for row in (values or [])]


class SheetsClient:
    """Network client over the Sheets v4 and Drive v3 resources.

    The resources come from the client context so they are rebuilt whenever
    the access token changes.

    Args:
        context: The :class:`~KhataBook.core.context.ClientContext`.
    """

    def __init__(self, context: Any) -> None:
        self.context = context

    def _sheets(self) -> Any:
        return self.context.sheets()

    def _drive(self) -> Any:
        return self.context.drive()

    # Spreadsheets

    def get_spreadsheet(self, document_id: str, fields: str = 'properties(title),sheets(properties)') -> Dict[str, Any]:
        """Return the spreadsheet metadata."""
        logging.debug(f'Fetching metadata of "{document_id}"')
        request = self._sheets().spreadsheets().get(spreadsheetId=document_id, fields=fields)
        return _execute(request, f'Reading document "{document_id}"')

    def get_values(self, document_id: str, range_: str,
                   render_option: str = 'FORMATTED_VALUE') -> List[List[str]]:
        """Read a cell range as rows of strings. Trailing empty cells are not returned."""
        logging.debug(f'Reading {range_} from "{document_id}"')
        request = self._sheets().spreadsheets().values().get(
            spreadsheetId=document_id,
            range=range_,
            valueRenderOption=render_option,
        )
        result = _execute(request, f'Reading {range_}')
        return _as_rows(result.get('values'))

    def batch_get_values(self, document_id: str, ranges: List[str],
                         render_option: str = 'FORMATTED_VALUE') -> List[List[List[str]]]:
        """Read several ranges in one request, in the order given."""
        logging.debug(f'Reading {len(ranges)} ranges from "{document_id}"')
        request = self._sheets().spreadsheets().values().batchGet(
            spreadsheetId=document_id,
            ranges=ranges,
            valueRenderOption=render_option,
        )
        result = _execute(request, f'Reading {len(ranges)} ranges')
        return [_as_rows(r.get('values')) for r in result.get('valueRanges', [])]

    def update_values(self, document_id: str, range_: str, values: List[List[Any]],
                      input_option: str = 'USER_ENTERED') -> Dict[str, Any]:
        """Overwrite a cell range."""
        logging.debug(f'Writing {len(values)} rows to {range_} of "{document_id}"')
        request = self._sheets().spreadsheets().values().update(
            spreadsheetId=document_id,
            range=range_,
            valueInputOption=input_option,
            body={'values': values},
        )
        return _execute(request, f'Writing {range_}')

    def append_values(self, document_id: str, range_: str, values: List[List[Any]]) -> Dict[str, Any]:
        """Append rows after the last row of a table, inserting new rows."""
        logging.debug(f'Appending {len(values)} rows to {range_} of "{document_id}"')
        request = self._sheets().spreadsheets().values().append(
            spreadsheetId=document_id,
            range=range_,
            valueInputOption='USER_ENTERED',
            insertDataOption='INSERT_ROWS',
            body={'values': values},
        )
        return _execute(request, f'Appending to {range_}')

    def batch_update(self, document_id: str, requests: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Send structural update requests (tabs, dimensions, formatting)."""
        logging.debug(f'Sending {len(requests)} update requests to "{document_id}"')
        request = self._sheets().spreadsheets().batchUpdate(
            spreadsheetId=document_id,
            body={'requests': requests},
        )
        return _execute(request, 'Updating document structure')

    def delete_rows(self, document_id: str, sheet_id: int, start: int, end: int) -> Dict[str, Any]:
        """Delete rows ``[start, end)`` (zero-based) of a tab."""
        return self.batch_update(document_id, [{
            'deleteDimension': {
                'range': {
                    'sheetId': sheet_id,
                    'dimension': 'ROWS',
                    'startIndex': start,
                    'endIndex': end,
                }
            }
        }])

    def create_spreadsheet(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Create a spreadsheet and return its resource."""
        title = body.get('properties', {}).get('title', '')
        logging.debug(f'Creating spreadsheet "{title}"')
        request = self._sheets().spreadsheets().create(body=body)
        return _execute(request, f'Creating document "{title}"')

    # Drive

    def list_files(self, query: str, fields: str = FILE_FIELDS, page_size: int = 100,
                   order_by: Optional[str] = None, max_results: Optional[int] = None) -> List[Dict[str, Any]]:
        """List Drive files matching a query, following page tokens.

        Args:
            query (str): Drive search query.
            fields (str): File fields to return.
            page_size (int): Files per page.
            order_by (str, optional): Drive sort order.
            max_results (int, optional): Stop after this many files.
        """
        logging.debug(f'Listing files: {query}')
        files: List[Dict[str, Any]] = []
        page_token = None
        while True:
            kwargs = {
                'q': query,
                'pageSize': page_size,
                'fields': f'nextPageToken,files({fields})',
                'spaces': 'drive',
            }
            if order_by:
                kwargs['orderBy'] = order_by
            if page_token:
                kwargs['pageToken'] = page_token

            result = _execute(self._drive().files().list(**kwargs), 'Listing files')
            files.extend(result.get('files', []))
            page_token = result.get('nextPageToken')

            if max_results is not None and len(files) >= max_results:
                return files[:max_results]
            if not page_token:
                return files

    def get_file(self, file_id: str, fields: str = FILE_FIELDS) -> Dict[str, Any]:
        """Return a single file's metadata."""
        request = self._drive().files().get(fileId=file_id, fields=fields)
        return _execute(request, f'Reading file "{file_id}"')

    def create_file(self, metadata: Dict[str, Any], content: Optional[bytes] = None,
                    mimetype: str = JSON_MIMETYPE) -> Dict[str, Any]:
        """Create a file or folder, optionally with content (multipart upload)."""
        logging.debug(f'Creating file "{metadata.get("name")}"')
        kwargs = {'body': metadata, 'fields': 'id,name'}
        if content is not None:
            kwargs['media_body'] = MediaIoBaseUpload(io.BytesIO(content), mimetype=mimetype, resumable=False)
        return _execute(self._drive().files().create(**kwargs), f'Creating file "{metadata.get("name")}"')

    def update_file(self, file_id: str, content: Optional[bytes] = None, mimetype: str = JSON_MIMETYPE,
                    metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Update a file's content and/or metadata in place."""
        logging.debug(f'Updating file "{file_id}"')
        kwargs = {'fileId': file_id, 'body': metadata or {}, 'fields': 'id,name'}
        if content is not None:
            kwargs['media_body'] = MediaIoBaseUpload(io.BytesIO(content), mimetype=mimetype, resumable=False)
        return _execute(self._drive().files().update(**kwargs), f'Updating file "{file_id}"')

    def copy_file(self, file_id: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        """Copy a file."""
        logging.debug(f'Copying file "{file_id}"')
        request = self._drive().files().copy(fileId=file_id, body=metadata, fields='id,name')
        return _execute(request, f'Copying file "{file_id}"')

    def delete_file(self, file_id: str) -> None:
        """Permanently delete a file."""
        logging.debug(f'Deleting file "{file_id}"')
        _execute(self._drive().files().delete(fileId=file_id), f'Deleting file "{file_id}"')

    def download_file(self, file_id: str) -> bytes:
        """Download a file's content."""
        logging.debug(f'Downloading file "{file_id}"')
        data = _execute(self._drive().files().get_media(fileId=file_id), f'Downloading file "{file_id}"')
        if isinstance(data, str):
            return data.encode('utf-8')
        return data


class AsyncWorker(QtCore.QThread):
    """
    Generic worker thread for a blocking core call.

    Failures are delivered once and never retried.

    Signals:
        resultReady (object): Emitted with the function's result on success.
        errorOccurred (object): Emitted with the exception on failure.
    """
    resultReady = QtCore.Signal(object)
    errorOccurred = QtCore.Signal(object)

    def __init__(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        super().__init__()
        self.func = func
        self.args = args
        self.kwargs = kwargs

    def run(self) -> None:
        try:
            result = self.func(*self.args, **self.kwargs)
        except status.BaseStatusException as ex:
            self.errorOccurred.emit(ex)
            return
        except Exception as ex:
            logging.error(f'Unexpected error in worker: {ex}')
            self.errorOccurred.emit(ex)
            return
        self.resultReady.emit(result)
