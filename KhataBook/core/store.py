"""Record store over spreadsheet rows.

Records are rows of the records tab: the header row is row 1 and the first
record lives on row 2. Every mutation is followed by a full reload of the
document so local state always mirrors the remote rows.

The store also lists the documents available to the signed-in user and
keeps the ids of documents linked by hand.
"""

import dataclasses
import enum
import itertools
import json
import logging
import threading
from typing import Any, Dict, List, Optional

import pandas as pd
from PySide6 import QtCore

from .schema import ColumnSchema, SchemaResolver
from .service import SPREADSHEET_MIMETYPE, a1, idx_to_col
from ..status import status

LINKED_DOCUMENTS_KEY: str = 'khata_linked_sheets'

HEADER_BACKGROUND: Dict[str, float] = {'red': 0.2, 'green': 0.4, 'blue': 0.9}
HEADER_FOREGROUND: Dict[str, float] = {'red': 1.0, 'green': 1.0, 'blue': 1.0}


class SyncState(enum.StrEnum):
    """Synchronization state of the loaded document."""
    Idle = enum.auto()
    Syncing = enum.auto()
    Synced = enum.auto()
    Error = enum.auto()


class Permission(enum.StrEnum):
    """Access level of the signed-in user on a document."""
    Owner = enum.auto()
    Editor = enum.auto()
    Commenter = enum.auto()
    Viewer = enum.auto()


@dataclasses.dataclass
class Record:
    """Column values of one row and the row's 1-based position in the tab."""
    fields: Dict[str, str]
    row_position: int

    def __getitem__(self, key: str) -> str:
        return self.fields[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)


@dataclasses.dataclass
class DocumentDescriptor:
    """A spreadsheet visible to the signed-in user."""
    id: str
    name: str
    is_owner: bool
    permission: Permission
    shared_by: Optional[str] = None
    modified: str = ''
    created: Optional[str] = None
    url: Optional[str] = None
    is_linked: bool = False

    @property
    def can_edit(self) -> bool:
        return self.permission in (Permission.Owner, Permission.Editor)


def permission_of(file: Dict[str, Any]) -> Permission:
    """Derive the signed-in user's permission from a Drive file resource."""
    if any(o.get('me') for o in file.get('owners', [])):
        return Permission.Owner
    capabilities = file.get('capabilities', {})
    if capabilities.get('canEdit'):
        return Permission.Editor
    if capabilities.get('canComment'):
        return Permission.Commenter
    return Permission.Viewer


def descriptor_from_file(file: Dict[str, Any], linked_ids: Optional[List[str]] = None) -> DocumentDescriptor:
    """Build a :class:`DocumentDescriptor` from a Drive file resource."""
    permission = permission_of(file)
    is_owner = permission == Permission.Owner

    shared_by = None
    if not is_owner:
        shared_by = file.get('sharingUser', {}).get('displayName')
        if not shared_by:
            owners = file.get('owners', [])
            shared_by = owners[0].get('displayName') if owners else None

    return DocumentDescriptor(
        id=file['id'],
        name=file.get('name', ''),
        is_owner=is_owner,
        permission=permission,
        shared_by=shared_by,
        modified=file.get('modifiedTime', ''),
        created=file.get('createdTime'),
        url=file.get('webViewLink'),
        is_linked=file['id'] in (linked_ids or []),
    )


def to_cell(value: Any) -> str:
    """Project a record value onto a cell string."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'
    return str(value)


def drive_quote(value: str) -> str:
    """Escape a value for use inside a quoted Drive query string."""
    return value.replace('\\', '\\\\').replace("'", "\\'")


def _trim(row: List[str]) -> List[str]:
    row = list(row)
    while row and not row[-1].strip():
        row.pop()
    return row


class RecordStore(QtCore.QObject):
    """CRUD over the rows of a document's records tab.

    Args:
        context: The :class:`~KhataBook.core.context.ClientContext`.
        resolver (SchemaResolver, optional): Defaults to a resolver on the same context.

    Signals:
        syncStateChanged (str): Emitted with the new :class:`SyncState`.
        recordsChanged (str): Emitted with the document id after a load commits.
        documentsChanged (): Emitted after the document listing changes.
    """
    syncStateChanged = QtCore.Signal(str)
    recordsChanged = QtCore.Signal(str)
    documentsChanged = QtCore.Signal()

    def __init__(self, context: Any, resolver: Optional[SchemaResolver] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.context = context
        self.resolver = resolver or SchemaResolver(context)

        self._lock = threading.Lock()
        self._tickets = itertools.count(1)
        self._latest_ticket = 0

        self.document: Optional[Dict[str, Any]] = None
        self.schema: Optional[ColumnSchema] = None
        self.records: List[Record] = []
        self.documents: List[DocumentDescriptor] = []
        self.sync_state: SyncState = SyncState.Idle
        self.error: Optional[str] = None

    @property
    def client(self) -> Any:
        return self.context.client

    @property
    def records_tab(self) -> str:
        return self.context.section('app')['records_tab']

    @property
    def document_id(self) -> Optional[str]:
        return self.document['id'] if self.document else None

    def _set_sync(self, state: SyncState) -> None:
        if state == self.sync_state:
            return
        logging.debug(f'Sync state: {self.sync_state} -> {state}')
        self.sync_state = state
        self.syncStateChanged.emit(str(state))

    def _fail(self, ex: Exception) -> None:
        self.error = getattr(ex, 'message', None) or str(ex)
        self._set_sync(SyncState.Error)

    def _issue_ticket(self) -> int:
        with self._lock:
            ticket = next(self._tickets)
            self._latest_ticket = ticket
            return ticket

    def _is_latest(self, ticket: int) -> bool:
        with self._lock:
            return ticket == self._latest_ticket

    # Records

    def list_records(self, document_id: str) -> List[Record]:
        """Load all records of a document.

        Only the most recently issued load commits its result to the store.
        On failure the previous records are kept, the error message is stored
        and the exception is re-raised.

        Returns:
            list[Record]: The records read by this call.
        """
        ticket = self._issue_ticket()
        self._set_sync(SyncState.Syncing)
        self.error = None

        try:
            metadata = self.client.get_spreadsheet(
                document_id, fields='properties(title),spreadsheetUrl,sheets(properties)')
            schema = self.resolver.resolve(document_id, metadata=metadata)
            rows = self.client.get_values(document_id, a1(self.records_tab))
            header = _trim(rows[0]) if rows else []
            schema = self.resolver.reconcile(schema, header)
        except status.BaseStatusException as ex:
            if self._is_latest(ticket):
                self._fail(ex)
            raise

        names = schema.names
        records = []
        for offset, row in enumerate(rows[1:]):
            fields = {name: (row[i] if i < len(row) else '') for i, name in enumerate(names)}
            records.append(Record(fields=fields, row_position=1 + 1 + offset))

        if not self._is_latest(ticket):
            logging.debug(f'Dropping stale load of "{document_id}" (ticket {ticket}).')
            return records

        self.document = {
            'id': document_id,
            'name': metadata.get('properties', {}).get('title', ''),
            'url': metadata.get('spreadsheetUrl'),
        }
        self.schema = schema
        self.records = records
        self._set_sync(SyncState.Synced)
        logging.debug(f'Loaded {len(records)} records from "{document_id}".')
        self.recordsChanged.emit(document_id)
        return list(records)

    def _schema_for(self, document_id: str) -> ColumnSchema:
        if self.schema is not None and self.document_id == document_id:
            return self.schema
        schema = self.resolver.resolve(document_id)
        return self.resolver.reconcile(schema, self.resolver.read_header(document_id))

    def project(self, schema: ColumnSchema, fields: Dict[str, Any]) -> List[str]:
        """Return the row cells for ``fields`` in column order."""
        return [to_cell(fields.get(name)) for name in schema.names]

    def _mutate(self, document_id: str, description: str, func) -> List[Record]:
        self._set_sync(SyncState.Syncing)
        try:
            func()
        except status.BaseStatusException as ex:
            logging.error(f'{description} failed: {ex}')
            self._fail(ex)
            raise
        return self.list_records(document_id)

    def add_record(self, document_id: str, fields: Dict[str, Any]) -> List[Record]:
        """Append a record after the last row, then reload.

        Returns:
            list[Record]: The reloaded records.
        """

        def _add() -> None:
            schema = self._schema_for(document_id)
            if not self.resolver.read_header(document_id):
                # An empty tab would take the first appended row as its header
                logging.debug(f'Writing header row to empty "{self.records_tab}" tab of "{document_id}".')
                self.client.update_values(
                    document_id, a1(self.records_tab, 'A1'), [schema.names], input_option='RAW')
            self.client.append_values(document_id, a1(self.records_tab), [self.project(schema, fields)])

        return self._mutate(document_id, 'Adding record', _add)

    def update_record(self, document_id: str, row_position: int, fields: Dict[str, Any]) -> List[Record]:
        """Overwrite the row at ``row_position``, then reload."""
        if row_position < 2:
            raise ValueError(f'Row position must be 2 or greater, got {row_position}.')

        def _update() -> None:
            schema = self._schema_for(document_id)
            last = idx_to_col(len(schema) - 1)
            range_ = a1(self.records_tab, f'A{row_position}:{last}{row_position}')
            self.client.update_values(document_id, range_, [self.project(schema, fields)])

        return self._mutate(document_id, 'Updating record', _update)

    def delete_record(self, document_id: str, row_position: int) -> List[Record]:
        """Delete the row at ``row_position``; rows below move up by one. Then reload."""
        if row_position < 2:
            raise ValueError(f'Row position must be 2 or greater, got {row_position}.')

        def _delete() -> None:
            metadata = self.client.get_spreadsheet(document_id)
            sheet_id = next(
                (s['properties']['sheetId'] for s in metadata.get('sheets', [])
                 if s.get('properties', {}).get('title') == self.records_tab), None)
            if sheet_id is None:
                raise status.DocumentNotFoundException(
                    f'Tab "{self.records_tab}" not found in "{document_id}".')
            self.client.delete_rows(document_id, sheet_id, row_position - 1, row_position)

        return self._mutate(document_id, 'Deleting record', _delete)

    def records_frame(self, typed: bool = False) -> pd.DataFrame:
        """Return the loaded records as a DataFrame indexed by row position.

        Args:
            typed (bool): Convert number, date and boolean columns from their cell strings.
        """
        names = self.schema.names if self.schema else []
        index = pd.Index([r.row_position for r in self.records], name='row_position')
        df = pd.DataFrame([r.fields for r in self.records], columns=names, index=index)
        if not typed or not self.schema:
            return df

        for column in self.schema:
            if column.type == 'number':
                df[column.name] = pd.to_numeric(df[column.name].str.replace(',', ''), errors='coerce')
            elif column.type == 'date':
                df[column.name] = pd.to_datetime(df[column.name], errors='coerce')
            elif column.type == 'boolean':
                df[column.name] = df[column.name].str.upper().map({'TRUE': True, 'FALSE': False})
        return df

    def clear_state(self) -> None:
        """Forget the loaded document, records, listing and error."""
        with self._lock:
            # Invalidates any load still in flight
            self._latest_ticket = next(self._tickets)
        self.document = None
        self.schema = None
        self.records = []
        self.documents = []
        self.error = None
        self._set_sync(SyncState.Idle)
        self.documentsChanged.emit()

    # Documents

    def linked_documents(self) -> List[str]:
        """Return the ids of documents linked by hand."""
        value = self.context.storage.get(LINKED_DOCUMENTS_KEY)
        if not value:
            return []
        try:
            ids = json.loads(value)
        except ValueError as ex:
            logging.error(f'Failed to load linked documents: {ex}')
            return []
        return [i for i in ids if isinstance(i, str)] if isinstance(ids, list) else []

    def add_linked_document(self, document_id: str) -> None:
        ids = self.linked_documents()
        if document_id in ids:
            return
        ids.append(document_id)
        self.context.storage.set(LINKED_DOCUMENTS_KEY, json.dumps(ids))

    def remove_linked_document(self, document_id: str) -> None:
        ids = [i for i in self.linked_documents() if i != document_id]
        self.context.storage.set(LINKED_DOCUMENTS_KEY, json.dumps(ids))

    def fetch_documents(self) -> List[DocumentDescriptor]:
        """List spreadsheets named with the document prefix, shared with the user, or linked.

        Returns:
            list[DocumentDescriptor]: Unique documents, most recently modified first.
        """
        prefix = self.context.section('app')['document_prefix']
        base = f"mimeType='{SPREADSHEET_MIMETYPE}' and trashed=false"
        linked_ids = self.linked_documents()

        try:
            files = self.client.list_files(
                f"{base} and name contains '{drive_quote(prefix)}'",
                order_by='modifiedTime desc', page_size=100, max_results=100)
            files += self.client.list_files(
                f'{base} and sharedWithMe=true',
                order_by='modifiedTime desc', page_size=50, max_results=50)
        except status.BaseStatusException as ex:
            self.error = ex.message
            raise

        for document_id in linked_ids:
            try:
                files.append(self.client.get_file(document_id))
            except (status.DocumentNotFoundException, status.PermissionDeniedException) as ex:
                logging.warning(f'Could not fetch linked document "{document_id}": {ex}')

        unique: Dict[str, DocumentDescriptor] = {}
        for file in files:
            if file['id'] not in unique:
                unique[file['id']] = descriptor_from_file(file, linked_ids)

        self.documents = sorted(unique.values(), key=lambda d: d.modified, reverse=True)
        logging.debug(f'Found {len(self.documents)} documents.')
        self.documentsChanged.emit()
        return list(self.documents)

    def create_document(self, name: str, columns: Optional[List[Any]] = None) -> str:
        """Create a spreadsheet with a styled header row and a stored schema.

        Args:
            name (str): Name shown after the document prefix.
            columns (list, optional): Column definitions. Defaults to the configured columns.

        Returns:
            str: The new spreadsheet id.
        """
        app = self.context.section('app')
        schema = ColumnSchema(columns) if columns is not None else self.resolver.default_schema()

        try:
            result = self.client.create_spreadsheet({
                'properties': {'title': f'{app["document_prefix"]} - {name}'},
                'sheets': [
                    {'properties': {'title': app['records_tab'], 'gridProperties': {'frozenRowCount': 1}}},
                    {'properties': {'title': app['settings_tab'], 'hidden': True}},
                ],
            })
            document_id = result['spreadsheetId']
            sheet_id = result['sheets'][0]['properties']['sheetId']

            self.client.update_values(
                document_id, a1(app['records_tab'], 'A1'), [schema.names], input_option='RAW')
            self.client.batch_update(document_id, [
                {
                    'repeatCell': {
                        'range': {'sheetId': sheet_id, 'startRowIndex': 0, 'endRowIndex': 1},
                        'cell': {
                            'userEnteredFormat': {
                                'backgroundColor': HEADER_BACKGROUND,
                                'textFormat': {'bold': True, 'foregroundColor': HEADER_FOREGROUND},
                            }
                        },
                        'fields': 'userEnteredFormat(backgroundColor,textFormat)',
                    }
                },
                {
                    'updateSheetProperties': {
                        'properties': {'sheetId': sheet_id, 'gridProperties': {'frozenRowCount': 1}},
                        'fields': 'gridProperties.frozenRowCount',
                    }
                },
            ])
        except status.BaseStatusException as ex:
            self.error = ex.message
            raise

        self.resolver.persist(document_id, schema)
        logging.info(f'Created document "{name}" ({document_id}).')
        self.fetch_documents()
        return document_id

    def rename_document(self, document_id: str, new_name: str) -> List[DocumentDescriptor]:
        """Rename a document, then refresh the listing."""
        try:
            self.client.update_file(document_id, metadata={'name': new_name})
        except status.BaseStatusException as ex:
            self.error = ex.message
            raise
        if self.document_id == document_id:
            self.document['name'] = new_name
        return self.fetch_documents()

    def duplicate_document(self, document_id: str, new_name: Optional[str] = None) -> str:
        """Copy a document, then refresh the listing.

        Returns:
            str: The id of the copy.
        """
        if not new_name:
            new_name = f'Backup - {pd.Timestamp.now(tz="UTC").isoformat()}'
        try:
            result = self.client.copy_file(document_id, {'name': new_name})
        except status.BaseStatusException as ex:
            self.error = ex.message
            raise
        self.fetch_documents()
        return result['id']

    def remove_document(self, document_id: str) -> List[DocumentDescriptor]:
        """Delete a document, then refresh the listing."""
        try:
            self.client.delete_file(document_id)
        except status.BaseStatusException as ex:
            self.error = ex.message
            raise
        if document_id in self.linked_documents():
            self.remove_linked_document(document_id)
        if self.document_id == document_id:
            self.document = None
            self.schema = None
            self.records = []
            self._set_sync(SyncState.Idle)
        return self.fetch_documents()
