import sys
import tempfile
import unittest
from datetime import date
from decimal import Decimal
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parent))

import app as app_module
from records import Expense, NotFoundError, Project, User

PROJECT_ID = 'recPROJECT0000001'
OWNER = User(id='recOWNER000000001', name='Somchai Jaidee', email='somchai@example.com')


class StubSource:
    def __init__(self, project=None, expenses=(), error=None):
        self.project = project
        self.expenses = list(expenses)
        self.error = error

    def get_project(self, project_id):
        if self.error:
            raise self.error
        return self.project

    def get_expenses(self, project_id, category=None):
        return [e for e in self.expenses if category is None or e.category == category]

    def ping(self):
        return 1


def field_trip_source():
    project = Project(id=PROJECT_ID, name='Field Trip', owner=OWNER)
    expenses = [
        Expense(id='e1', project_id=PROJECT_ID, shop_name='7-Eleven', category='eating',
                amount=Decimal('125.50'), date=date(2025, 1, 10)),
        Expense(id='e2', project_id=PROJECT_ID, shop_name='BTS', category='traveling',
                amount=Decimal('40.00'), date=date(2025, 1, 11)),
    ]
    return StubSource(project, expenses)


class ExportRouteTest(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        patcher = mock.patch.object(app_module, 'UPLOAD_DIR', Path(self._tmp.name))
        patcher.start()
        self.addCleanup(patcher.stop)
        self.addCleanup(self._tmp.cleanup)
        self.client = app_module.app.test_client()

    def use_source(self, source):
        patcher = mock.patch.object(app_module, 'get_record_source', return_value=source)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_pdf_download_headers_and_body(self):
        self.use_source(field_trip_source())
        response = self.client.get(f'/api/export/project/{PROJECT_ID}/pdf')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.mimetype, 'application/pdf')
        disposition = response.headers['Content-Disposition']
        self.assertTrue(disposition.startswith('attachment; filename="expenses-Field-Trip-'))
        self.assertIn(".pdf\"; filename*=UTF-8''expenses-Field-Trip-", disposition)
        self.assertIn('no-store', response.headers['Cache-Control'])
        body = response.data
        self.assertTrue(body.startswith(b'%PDF'))
        self.assertEqual(int(response.headers['Content-Length']), len(body))

    def test_unknown_project_is_404(self):
        self.use_source(StubSource())
        response = self.client.get(f'/api/export/project/{PROJECT_ID}/pdf')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json(), {'error': 'Project not found'})

    def test_category_without_expenses_is_404(self):
        self.use_source(field_trip_source())
        response = self.client.get(f'/api/export/project/{PROJECT_ID}/pdf?type=equipment')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json(), {'error': 'No expenses found for this project'})

    def test_category_filter_is_accepted(self):
        self.use_source(field_trip_source())
        response = self.client.get(f'/api/export/project/{PROJECT_ID}/pdf?type=Traveling')
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data.startswith(b'%PDF'))

    def test_unexpected_failure_is_500_json(self):
        self.use_source(StubSource(error=RuntimeError('Airtable unavailable')))
        with self.assertLogs('app', level='ERROR'):
            response = self.client.get(f'/api/export/project/{PROJECT_ID}/pdf')
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {'error': 'Airtable unavailable'})

    def test_not_found_from_source_is_404(self):
        self.use_source(StubSource(error=NotFoundError('Project not found')))
        response = self.client.get(f'/api/export/project/{PROJECT_ID}/pdf')
        self.assertEqual(response.status_code, 404)

    def test_missing_api_key_is_500(self):
        with mock.patch.object(app_module, 'AIRTABLE_API_KEY', None), self.assertLogs('app', level='ERROR'):
            response = self.client.get(f'/api/export/project/{PROJECT_ID}/pdf')
        self.assertEqual(response.status_code, 500)
        self.assertIn('AIRTABLE_API_KEY', response.get_json()['error'])


class StreamChunksTest(unittest.TestCase):
    def test_chunks_cover_payload(self):
        payload = b'x' * (app_module.STREAM_CHUNK_SIZE * 2 + 10)
        with self.assertLogs('app', level='INFO'):
            chunks = list(app_module._stream_chunks(payload, PROJECT_ID))
        self.assertEqual([len(c) for c in chunks], [app_module.STREAM_CHUNK_SIZE] * 2 + [10])
        self.assertEqual(b''.join(chunks), payload)

    def test_failure_while_sending_is_logged_and_reraised(self):
        chunks = app_module._stream_chunks(b'x' * (app_module.STREAM_CHUNK_SIZE + 1), PROJECT_ID)
        next(chunks)
        with self.assertLogs('app', level='ERROR') as logs, self.assertRaises(ConnectionResetError):
            chunks.throw(ConnectionResetError('client went away'))
        self.assertIn(PROJECT_ID, logs.output[0])


class SupportRouteTest(unittest.TestCase):
    def setUp(self):
        self.client = app_module.app.test_client()

    def test_health_and_version(self):
        self.assertEqual(self.client.get('/api/health').get_json()['status'], 'OK')
        self.assertIn('version', self.client.get('/version').get_json())

    def test_unknown_api_route_returns_json(self):
        response = self.client.get('/api/nope')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json(), {'error': 'Not found', 'path': '/api/nope'})

    def test_wrong_method_returns_json(self):
        response = self.client.post(f'/api/export/project/{PROJECT_ID}/pdf')
        self.assertEqual(response.status_code, 405)
        self.assertEqual(response.get_json()['error'], 'Method not allowed')

    def test_export_check_reports_dependencies(self):
        with mock.patch.object(app_module, 'get_record_source', return_value=StubSource()):
            checks = self.client.get('/api/export.check').get_json()
        self.assertIn('reportlab', checks)
        self.assertIn('regular', checks['fonts'])
        self.assertEqual(checks['airtable'], 'ok (1 accessible)')

    def test_parse_airtable_base(self):
        self.assertEqual(app_module._parse_airtable_base('https://airtable.com/appAbC123/tbl1/viw2'), 'appAbC123')
        self.assertIsNone(app_module._parse_airtable_base(None))

    def test_content_disposition_keeps_utf8_name(self):
        header = app_module._content_disposition('expenses-ทัศนศึกษา-1.pdf')
        self.assertTrue(header.startswith('attachment; filename="expenses--1.pdf"'))
        self.assertIn("filename*=UTF-8''expenses-%E0%B8%97", header)

    def test_uploads_are_served(self):
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / 'r.txt').write_text('receipt')
            with mock.patch.object(app_module, 'UPLOAD_DIR', Path(tmp)):
                response = self.client.get('/uploads/r.txt')
                self.assertEqual(response.data, b'receipt')
                response.close()


if __name__ == '__main__':
    unittest.main()
