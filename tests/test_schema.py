import json

from KhataBook.core import schema
from KhataBook.core.schema import Column, ColumnSchema, SchemaResolver, infer_column
from KhataBook.settings import lib
from KhataBook.status import status
from tests.base import ContextTestCase


class TestInference(ContextTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.resolver = SchemaResolver(self.context)

    def test_number_pattern_precedes_boolean(self):
        column = infer_column('Amount Paid')
        self.assertEqual(column.type, 'number')
        self.assertEqual(column.role, 'amount')

    def test_boolean_patterns(self):
        self.assertEqual(infer_column('Is Active').type, 'boolean')
        self.assertEqual(infer_column('is_settled').type, 'boolean')
        self.assertEqual(infer_column('IS').type, 'boolean')
        self.assertEqual(infer_column('Received').type, 'boolean')

    def test_date_pattern(self):
        self.assertEqual(infer_column('Txn Date').type, 'date')
        self.assertEqual(infer_column('Timestamp').type, 'date')

    def test_date_precedes_number(self):
        self.assertEqual(infer_column('Payment Date Total').type, 'date')

    def test_credit_and_debit_roles(self):
        self.assertEqual(infer_column('Credit').role, 'credit')
        self.assertEqual(infer_column('Debit Amount').role, 'debit')
        self.assertEqual(infer_column('Credit').type, 'number')

    def test_party_and_description(self):
        self.assertEqual(infer_column('Customer').role, 'party')
        self.assertEqual(infer_column('Remarks').role, 'description')
        self.assertEqual(infer_column('Remarks').type, 'text')

    def test_unknown_is_text(self):
        column = infer_column('Category')
        self.assertEqual(column, Column(name='Category', type='text'))

    def test_default_name_adopts_default_definition(self):
        inferred = self.resolver.infer(['type', 'Paid'])
        self.assertEqual(inferred[0].name, 'type')
        self.assertEqual(inferred[0].type, 'select')
        self.assertEqual(inferred[0].options, ['Credit', 'Debit'])
        self.assertTrue(inferred[1].required)

    def test_duplicate_headers_stay_unique(self):
        inferred = self.resolver.infer(['Note', 'Note', ''])
        self.assertEqual(len(set(inferred.names)), 3)


class TestColumnSchema(ContextTestCase):

    def test_json_omits_unset_fields(self):
        s = ColumnSchema([Column(name='A'), Column(name='B', type='select', options=['x'])])
        data = json.loads(s.to_json())
        self.assertEqual(data[0], {'name': 'A', 'type': 'text', 'required': False})
        self.assertEqual(data[1]['options'], ['x'])
        self.assertEqual(ColumnSchema.from_json(s.to_json()), s)

    def test_duplicate_names_rejected(self):
        with self.assertRaises(status.MalformedDataException):
            ColumnSchema([Column(name='A'), Column(name='A')])

    def test_invalid_json_rejected(self):
        with self.assertRaises(status.MalformedDataException):
            ColumnSchema.from_json('{not json')

    def test_unknown_type_rejected(self):
        with self.assertRaises(status.MalformedDataException):
            ColumnSchema([{'name': 'A', 'type': 'currency', 'required': False}])


class TestResolve(ContextTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.resolver = SchemaResolver(self.context)

    def test_stored_configuration_wins(self):
        stored = [{'name': 'When', 'type': 'date', 'required': True}]
        doc = self.client.add_document('Khata - A', {
            'Records': [['Anything']],
            '_Settings': [[schema.CONFIG_MARKER, json.dumps(stored)]],
        })
        resolved = self.resolver.resolve(doc)
        self.assertEqual(resolved.to_list(), stored)

    def test_malformed_configuration_falls_back_to_header(self):
        doc = self.client.add_document('Khata - A', {
            'Records': [['Txn Date', 'Amount Paid']],
            '_Settings': [[schema.CONFIG_MARKER, '[broken']],
        })
        resolved = self.resolver.resolve(doc)
        self.assertEqual(resolved.names, ['Txn Date', 'Amount Paid'])
        self.assertEqual([c.type for c in resolved], ['date', 'number'])

    def test_missing_settings_tab_infers_from_header(self):
        doc = self.client.add_document('Legacy', {'Records': [['Date', 'Customer', 'Is Active']]})
        resolved = self.resolver.resolve(doc)
        self.assertEqual([c.type for c in resolved], ['date', 'text', 'boolean'])
        self.assertEqual(resolved[1].role, 'party')

    def test_empty_document_uses_defaults(self):
        doc = self.client.add_document('Empty', {'Records': []})
        resolved = self.resolver.resolve(doc)
        self.assertEqual(resolved.to_list(), lib.settings.get_section('columns'))

    def test_persist_creates_hidden_tab(self):
        doc = self.client.add_document('Legacy', {'Records': [['Date']]})
        s = ColumnSchema([Column(name='Date', type='date', required=True)])

        self.assertTrue(self.resolver.persist(doc, s))

        tab = self.client.tab(doc, '_Settings')
        self.assertTrue(tab['hidden'])
        self.assertEqual(tab['grid'][0], [schema.CONFIG_MARKER, s.to_json()])
        self.assertEqual(self.resolver.resolve(doc), s)

        _, args = next(c for c in self.client.calls if c[0] == 'update_values')
        self.assertEqual(args[3], 'RAW')

    def test_persist_failure_is_not_fatal(self):
        self.assertFalse(self.resolver.persist('missing', self.resolver.default_schema()))

    def test_reconcile_uses_header_positions(self):
        stored = ColumnSchema([
            Column(name='Date', type='date', required=True),
            Column(name='Amount', type='number', required=True),
        ])
        result = self.resolver.reconcile(stored, ['Amount', 'Date', 'Remark'])

        self.assertEqual(result.names, ['Amount', 'Date', 'Remark'])
        self.assertTrue(result[0].required)
        self.assertEqual(result[2].role, 'description')

    def test_reconcile_matching_schema_is_unchanged(self):
        stored = ColumnSchema([Column(name='Date', type='date')])
        self.assertIs(self.resolver.reconcile(stored, ['Date']), stored)

    def test_verify_raises_on_mismatch(self):
        with self.assertRaises(status.SchemaMismatchException):
            SchemaResolver.verify(ColumnSchema([Column(name='A')]), ['B'])
