"""Column schema model, inference and persistence.

A document's column model is looked up in this order:
    1. The ``COLUMN_CONFIG`` row of the hidden settings tab.
    2. The header row of the records tab, one inferred column per header.
    3. The default columns from the application settings.
"""

import dataclasses
import json
import logging
from typing import Any, Dict, Iterator, List, Optional

from .service import a1
from ..settings.lib import validate_columns
from ..status import status

CONFIG_MARKER: str = 'COLUMN_CONFIG'

DATE_PATTERNS = ('date', 'time')
NUMBER_PATTERNS = ('amount', 'price', 'cost', 'total', 'rate', 'quantity', 'number', 'credit', 'debit')
BOOLEAN_PATTERNS = ('paid', 'active', 'completed', 'done', 'received', 'pending', 'status')
PARTY_PATTERNS = ('name', 'party', 'customer', 'vendor')
DESCRIPTION_PATTERNS = ('description', 'detail', 'remark', 'note')


@dataclasses.dataclass
class Column:
    """A typed column definition."""
    name: str
    type: str = 'text'
    required: bool = False
    options: Optional[List[str]] = None
    role: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'name': self.name, 'type': self.type, 'required': self.required}
        if self.options is not None:
            data['options'] = list(self.options)
        if self.role is not None:
            data['role'] = self.role
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Column':
        return cls(
            name=data['name'],
            type=data.get('type', 'text'),
            required=bool(data.get('required', False)),
            options=list(data['options']) if data.get('options') is not None else None,
            role=data.get('role'),
        )


class ColumnSchema:
    """Ordered column definitions with unique names.

    Args:
        columns: Column objects or their dict form.

    Raises:
        status.MalformedDataException: If the definitions are invalid.
    """

    def __init__(self, columns: List[Any]) -> None:
        items = [c.to_dict() if isinstance(c, Column) else c for c in columns]
        try:
            validate_columns(items)
        except (TypeError, ValueError) as ex:
            raise status.MalformedDataException(f'Invalid column schema: {ex}') from ex
        self.columns: List[Column] = [Column.from_dict(c) for c in items]

    def __iter__(self) -> Iterator[Column]:
        return iter(self.columns)

    def __len__(self) -> int:
        return len(self.columns)

    def __getitem__(self, idx: int) -> Column:
        return self.columns[idx]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ColumnSchema):
            return NotImplemented
        return self.columns == other.columns

    def __repr__(self) -> str:
        return f'ColumnSchema({self.names})'

    @property
    def names(self) -> List[str]:
        return [c.name for c in self.columns]

    def get(self, name: str) -> Optional[Column]:
        return next((c for c in self.columns if c.name == name), None)

    def by_role(self, role: str) -> Optional[Column]:
        """Return the first column carrying ``role``."""
        return next((c for c in self.columns if c.role == role), None)

    def to_list(self) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self.columns]

    def to_json(self) -> str:
        return json.dumps(self.to_list(), ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str) -> 'ColumnSchema':
        """Parse a serialized schema.

        Raises:
            status.MalformedDataException: If the text is not a valid schema.
        """
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as ex:
            raise status.MalformedDataException(f'Column schema is not valid JSON: {ex}') from ex
        return cls(data)


def infer_column(header: str, defaults: Optional[ColumnSchema] = None) -> Column:
    """Infer a column definition from a header name.

    A header equal to a default column's name (ignoring case) adopts that
    definition. Otherwise the first matching rule wins, in this order:
    date, number, boolean, party, description, then plain text.
    """
    h = header.strip().lower()

    if defaults:
        match = next((c for c in defaults if c.name.lower() == h), None)
        if match:
            return dataclasses.replace(match, name=header)

    if any(p in h for p in DATE_PATTERNS):
        return Column(name=header, type='date')

    if any(p in h for p in NUMBER_PATTERNS):
        if 'credit' in h:
            role = 'credit'
        elif 'debit' in h:
            role = 'debit'
        else:
            role = 'amount'
        return Column(name=header, type='number', role=role)

    if any(p in h for p in BOOLEAN_PATTERNS) or h == 'is' or h.startswith('is_'):
        return Column(name=header, type='boolean')

    if any(p in h for p in PARTY_PATTERNS):
        return Column(name=header, type='text', role='party')

    if any(p in h for p in DESCRIPTION_PATTERNS):
        return Column(name=header, type='text', role='description')

    return Column(name=header, type='text')


class SchemaResolver:
    """Derives and records the column model of documents.

    Args:
        context: The :class:`~KhataBook.core.context.ClientContext`.
    """

    def __init__(self, context: Any) -> None:
        self.context = context

    @property
    def client(self) -> Any:
        return self.context.client

    @property
    def settings_tab(self) -> str:
        return self.context.section('app')['settings_tab']

    @property
    def records_tab(self) -> str:
        return self.context.section('app')['records_tab']

    def default_schema(self) -> ColumnSchema:
        """Return the default columns from the application settings."""
        return ColumnSchema(self.context.section('columns'))

    @staticmethod
    def tab_titles(metadata: Dict[str, Any]) -> List[str]:
        return [s.get('properties', {}).get('title', '') for s in metadata.get('sheets', [])]

    def read_stored(self, document_id: str, metadata: Optional[Dict[str, Any]] = None) -> Optional[ColumnSchema]:
        """Return the schema stored in the settings tab, or None if there is none."""
        if metadata is None:
            metadata = self.client.get_spreadsheet(document_id)
        if self.settings_tab not in self.tab_titles(metadata):
            logging.debug(f'No "{self.settings_tab}" tab in "{document_id}".')
            return None

        rows = self.client.get_values(document_id, a1(self.settings_tab, 'A1:B1'))
        row = rows[0] if rows else []
        if len(row) < 2 or row[0] != CONFIG_MARKER or not row[1]:
            return None

        try:
            data = json.loads(row[1])
        except ValueError as ex:
            logging.error(f'Stored column configuration of "{document_id}" is not valid JSON: {ex}')
            return None
        if not isinstance(data, list) or not data:
            return None
        try:
            validate_columns(data)
        except (TypeError, ValueError) as ex:
            logging.error(f'Stored column configuration of "{document_id}" is invalid: {ex}')
            return None
        return ColumnSchema(data)

    def read_header(self, document_id: str, tab: Optional[str] = None) -> List[str]:
        """Return the header row of a tab, without trailing empty cells."""
        rows = self.client.get_values(document_id, a1(tab or self.records_tab, '1:1'))
        header = list(rows[0]) if rows else []
        while header and not header[-1].strip():
            header.pop()
        return header

    def resolve(self, document_id: str, tab: Optional[str] = None,
                metadata: Optional[Dict[str, Any]] = None) -> ColumnSchema:
        """Return the column model of a document.

        Args:
            document_id (str): Spreadsheet id.
            tab (str, optional): Data tab. Defaults to the records tab.
            metadata (dict, optional): Spreadsheet metadata, if already fetched.
        """
        stored = self.read_stored(document_id, metadata=metadata)
        if stored is not None:
            logging.debug(f'Using stored column configuration of "{document_id}".')
            return stored

        header = self.read_header(document_id, tab)
        if not header:
            logging.debug(f'"{document_id}" has no header row, using the default columns.')
            return self.default_schema()

        logging.debug(f'Inferring columns of "{document_id}" from {len(header)} headers.')
        return self.infer(header)

    def infer(self, headers: List[str]) -> ColumnSchema:
        """Infer one column per header."""
        defaults = self.default_schema()
        columns: List[Column] = []
        seen = set()
        for idx, header in enumerate(headers):
            name = header.strip() or f'Column {idx + 1}'
            # Duplicate headers get a positional suffix to keep names unique
            if name in seen:
                name = f'{name} ({idx + 1})'
            seen.add(name)
            columns.append(infer_column(name, defaults))
        return ColumnSchema(columns)

    def persist(self, document_id: str, schema: ColumnSchema) -> bool:
        """Write the schema to the settings tab, creating the hidden tab if needed.

        Failures are logged and reported through the return value.

        Returns:
            bool: True if the schema was written.
        """
        try:
            metadata = self.client.get_spreadsheet(document_id)
            if self.settings_tab not in self.tab_titles(metadata):
                logging.debug(f'Adding hidden "{self.settings_tab}" tab to "{document_id}".')
                self.client.batch_update(document_id, [{
                    'addSheet': {'properties': {'title': self.settings_tab, 'hidden': True}}
                }])
            self.client.update_values(
                document_id,
                a1(self.settings_tab, 'A1'),
                [[CONFIG_MARKER, schema.to_json()]],
                input_option='RAW',
            )
        except status.BaseStatusException as ex:
            logging.error(f'Failed to save column configuration of "{document_id}": {ex}')
            return False

        logging.debug(f'Saved column configuration of "{document_id}".')
        return True

    @staticmethod
    def verify(schema: ColumnSchema, header: List[str]) -> None:
        """Check that the schema's column names match the header row.

        Raises:
            status.SchemaMismatchException: If they differ.
        """
        if schema.names != header:
            raise status.SchemaMismatchException(
                f'Columns {schema.names} do not match the header row {header}.'
            )

    def reconcile(self, schema: ColumnSchema, header: List[str]) -> ColumnSchema:
        """Return a schema whose columns line up with the header row.

        When they diverge, the header row decides the positions: columns known
        to the schema keep their definition, the rest are inferred.
        """
        if not header or schema.names == header:
            return schema

        logging.debug(f'Columns {schema.names} do not match the header row {header}, following the header.')
        inferred = self.infer(header)
        return ColumnSchema([schema.get(c.name) or c for c in inferred])
