import os
import shutil
import sys
import tempfile
import unittest
from datetime import date, datetime, timezone
from unittest.mock import MagicMock, patch

import httpx

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from bridgex import side_index
from bridgex.exceptions import SynapseServiceError, SynapseUnavailableError
from bridgex.metrics import Metrics
from bridgex.record_processor import RecordFilterHelper, RecordIdSource
from bridgex.request import ExporterRequest, SharingMode
from bridgex.schema import FieldDefinition, FieldType, SchemaKey, UploadSchema

from tests.fakes import FakeDynamoHelper, FakeS3Helper, build_exporter, make_record

SCHEMA_Q = SchemaKey('S', 'Q', 1)


class TestRecordFilterHelper(unittest.TestCase):
    """Test cases for record filtering"""

    def setUp(self):
        self.dynamo = FakeDynamoHelper()
        self.dynamo.add_study('S')
        self.helper = RecordFilterHelper(self.dynamo)
        self.metrics = Metrics()

    def request(self, **kwargs):
        kwargs.setdefault('export_date', date(2026, 10, 17))
        return ExporterRequest(**kwargs)

    def test_accepts_shared_record(self):
        record = make_record('rec1', 'S', 'Q')
        self.assertFalse(self.helper.should_exclude_record(self.metrics, self.request(), record))
        self.assertEqual(self.metrics.get_counter('accepted[ALL_QUALIFIED_RESEARCHERS]'), 1)
        self.assertEqual(self.metrics.get_counter('configured[S]'), 1)

    def test_sharing_scope(self):
        """Missing and unparseable scopes count as not sharing"""
        for scope in (None, '', 'NOT_A_SCOPE', 'NO_SHARING'):
            record = make_record('rec1', 'S', 'Q', userSharingScope=scope)
            self.assertTrue(self.helper.should_exclude_record(self.metrics, self.request(), record))
        self.assertEqual(self.metrics.get_counter('excluded[NO_SHARING]'), 4)

        record = make_record('rec1', 'S', 'Q', userSharingScope='NO_SHARING')
        self.assertFalse(self.helper.should_exclude_record(self.metrics, self.request(sharing_mode=SharingMode.ALL),
                                                           record))

    def test_public_only(self):
        record = make_record('rec1', 'S', 'Q', userSharingScope='SPONSORS_AND_PARTNERS')
        request = self.request(sharing_mode=SharingMode.PUBLIC_ONLY)
        self.assertTrue(self.helper.should_exclude_record(self.metrics, request, record))

    def test_study_whitelist(self):
        self.dynamo.add_study('T')
        request = self.request(study_whitelist=frozenset({'T'}))
        self.assertTrue(self.helper.should_exclude_record(self.metrics, request, make_record('rec1', 'S', 'Q')))
        self.assertFalse(self.helper.should_exclude_record(self.metrics, request, make_record('rec2', 'T', 'Q')))
        self.assertEqual(self.metrics.get_counter('excluded[S]'), 1)
        self.assertEqual(self.metrics.get_counter('accepted[T]'), 1)

    def test_table_whitelist(self):
        request = self.request(table_whitelist=frozenset({SCHEMA_Q}))
        self.assertFalse(self.helper.should_exclude_record(self.metrics, request, make_record('rec1', 'S', 'Q')))
        self.assertTrue(self.helper.should_exclude_record(self.metrics, request, make_record('rec2', 'S', 'R')))
        self.assertEqual(self.metrics.get_counter('excluded[S-R-v1]'), 1)

    def test_study_config(self):
        """Unconfigured, disabled and custom schedule studies"""
        self.dynamo.add_study('Off', disable_export=True)
        self.dynamo.add_study('Custom', uses_custom_export_schedule=True)

        for study_id in ('Missing', 'Off', 'Custom'):
            record = make_record('rec1', study_id, 'Q')
            self.assertTrue(self.helper.should_exclude_record(self.metrics, self.request(), record))

        self.assertEqual(self.metrics.get_counter('unconfigured[Missing]'), 1)
        self.assertEqual(self.metrics.get_counter('disabled-export study[Off]'), 1)
        self.assertEqual(self.metrics.get_counter('custom-export-excluded[Custom]'), 1)

        request = self.request(study_whitelist=frozenset({'Custom'}))
        self.assertFalse(self.helper.should_exclude_record(self.metrics, request, make_record('rec2', 'Custom', 'Q')))
        self.assertEqual(self.metrics.get_counter('custom-export-accepted[Custom]'), 1)

    def test_every_filter_counts(self):
        """An exclusion by one filter doesn't stop the others from counting"""
        record = make_record('rec1', 'S', 'Q', userSharingScope='NO_SHARING')
        request = self.request(table_whitelist=frozenset({SchemaKey('S', 'R', 1)}))
        self.assertTrue(self.helper.should_exclude_record(self.metrics, request, record))
        self.assertEqual(self.metrics.get_counter('excluded[NO_SHARING]'), 1)
        self.assertEqual(self.metrics.get_counter('excluded[S-Q-v1]'), 1)
        self.assertEqual(self.metrics.get_counter('configured[S]'), 1)

    def test_blank_study(self):
        with self.assertRaises(ValueError):
            self.helper.should_exclude_record(self.metrics, self.request(), make_record('rec1', ' ', 'Q'))

    def test_study_info_cached_until_clear(self):
        self.dynamo.get_study_info = MagicMock(wraps=self.dynamo.get_study_info)
        for record_id in ('rec1', 'rec2'):
            self.helper.should_exclude_record(self.metrics, self.request(), make_record(record_id, 'S', 'Q'))
        self.assertEqual(self.dynamo.get_study_info.call_count, 1)

        self.helper.clear()
        self.helper.should_exclude_record(self.metrics, self.request(), make_record('rec3', 'S', 'Q'))
        self.assertEqual(self.dynamo.get_study_info.call_count, 2)


class TestRecordIdSource(unittest.TestCase):
    """Test cases for choosing record ids"""

    def setUp(self):
        self.dynamo = FakeDynamoHelper()
        self.s3 = FakeS3Helper()
        self.source = RecordIdSource(self.dynamo, self.s3, 'override-bucket', 'America/Los_Angeles')

    def test_override_file(self):
        self.s3.write_bytes('override-bucket', 'ids', b'rec1\n\n rec2 \n')
        request = ExporterRequest(record_id_s3_override='ids')
        self.assertEqual(list(self.source.get_record_ids(request)), ['rec1', 'rec2'])

    def test_upload_date(self):
        self.dynamo.records = {
            'rec1': {'uploadDate': '2026-10-17'},
            'rec2': {'uploadDate': '2026-10-16'},
        }
        request = ExporterRequest(export_date=date(2026, 10, 17))
        self.assertEqual(list(self.source.get_record_ids(request)), ['rec1'])

    def test_study_date_range_uses_local_day(self):
        """A date with a study whitelist covers the local day, end exclusive"""
        self.dynamo.query_record_ids_for_study = MagicMock(return_value=['rec1'])
        request = ExporterRequest(export_date=date(2026, 10, 17), study_whitelist=frozenset({'B', 'A'}))
        self.assertEqual(list(self.source.get_record_ids(request)), ['rec1', 'rec1'])

        # 2026-10-17 is in PDT (UTC-7)
        start = int(datetime(2026, 10, 17, 7, tzinfo=timezone.utc).timestamp() * 1000)
        end = int(datetime(2026, 10, 18, 7, tzinfo=timezone.utc).timestamp() * 1000) - 1
        calls = [call.args for call in self.dynamo.query_record_ids_for_study.call_args_list]
        self.assertEqual(calls, [('A', start, end), ('B', start, end)])

    def test_study_date_time_range(self):
        self.dynamo.query_record_ids_for_study = MagicMock(return_value=[])
        start = datetime(2026, 10, 17, 0, tzinfo=timezone.utc)
        end = datetime(2026, 10, 17, 6, tzinfo=timezone.utc)
        request = ExporterRequest(start_date_time=start, end_date_time=end, study_whitelist=frozenset({'A'}))
        list(self.source.get_record_ids(request))

        self.dynamo.query_record_ids_for_study.assert_called_once_with(
            'A', int(start.timestamp() * 1000), int(end.timestamp() * 1000) - 1)


class TestRecordProcessor(unittest.TestCase):
    """Test cases for the record loop"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.db_patcher = patch('bridgex.side_index.DB_FILE', os.path.join(self.test_dir, 'side_index.db'))
        self.db_patcher.start()
        side_index.init_db()

        schema = UploadSchema(key=SCHEMA_Q, field_definitions=(FieldDefinition('answer', FieldType.INT),))
        self.ex = build_exporter(self.test_dir, {SCHEMA_Q: schema})
        self.ex.dynamo.add_study('S')

    def tearDown(self):
        self.ex.manager.shutdown()
        self.db_patcher.stop()
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def add_record(self, record_id, **extra):
        record = make_record(record_id, 'S', 'Q', data={'answer': 1}, uploadDate='2026-10-17')
        record.update(extra)
        self.ex.dynamo.records[record_id] = record
        return record

    def uploaded_record_ids(self):
        table_id = self.ex.synapse.table_id_by_name('S-Q-v1')
        return self.ex.synapse.read_uploaded_rows(table_id)['recordId'].to_list()

    def test_processes_date(self):
        for record_id in ('A', 'B'):
            self.add_record(record_id)
        self.add_record('C', userSharingScope='NO_SHARING')

        task = self.ex.processor.process_records_for_request(ExporterRequest(export_date=date(2026, 10, 17)))

        self.assertTrue(task.success)
        self.assertEqual(task.metrics.get_counter('numTotal'), 3)
        self.assertEqual(task.metrics.get_set_counter('uniqueHealthCodes[S]'), 2)
        self.assertEqual(sorted(self.uploaded_record_ids()), ['A', 'B'])
        self.assertFalse(os.path.exists(task.tmp_dir))

    def test_missing_record_is_skipped(self):
        self.add_record('A')
        self.ex.s3.write_bytes('override-bucket', 'ids', b'A\nmissing')

        task = self.ex.processor.process_records_for_request(ExporterRequest(record_id_s3_override='ids'))

        self.assertEqual(task.metrics.get_counter('numTotal'), 2)
        self.assertEqual(self.uploaded_record_ids(), ['A'])
        self.assertEqual(self.ex.publisher.messages, [])

    def test_malformed_record_is_redriven(self):
        """A record that can't be routed is redriven along with the run's other failures"""
        self.add_record('A')
        self.add_record('B', data='{not json')

        self.ex.processor.process_records_for_request(ExporterRequest(export_date=date(2026, 10, 17)))

        self.assertEqual(self.uploaded_record_ids(), ['A'])
        self.assertEqual(len(self.ex.publisher.messages), 1)
        redrive = ExporterRequest.from_json(self.ex.publisher.messages[0][0])
        self.assertEqual(self.ex.s3.read_lines('override-bucket', redrive.record_id_s3_override), ['B'])

    def test_redrive_replays_only_failed_records(self):
        """Replaying a record redrive exports exactly the failed records"""
        for record_id in ('A', 'B', 'C'):
            self.add_record(record_id)

        original_serialize = self.ex.synapse_helper.serialize_to_synapse_type

        def failing_serialize(metrics, tmp_dir, record_id, field_def, value):
            if record_id in ('A', 'C'):
                raise RuntimeError('transient failure')
            return original_serialize(metrics, tmp_dir, record_id, field_def, value)

        with patch.object(self.ex.synapse_helper, 'serialize_to_synapse_type', side_effect=failing_serialize):
            self.ex.processor.process_records_for_request(ExporterRequest(export_date=date(2026, 10, 17),
                                                                          tag='nightly'))
        self.assertEqual(self.uploaded_record_ids(), ['B'])

        body, _ = self.ex.publisher.messages.pop()
        redrive = ExporterRequest.from_json(body)
        self.assertEqual(self.ex.s3.read_lines('override-bucket', redrive.record_id_s3_override), ['A', 'C'])

        task = self.ex.processor.process_records_for_request(redrive)
        self.assertEqual(task.metrics.get_counter('numTotal'), 2)
        self.assertEqual(sorted(self.uploaded_record_ids()), ['A', 'B', 'C'])
        self.assertEqual(self.ex.publisher.messages, [])

    def test_synapse_not_writable(self):
        self.add_record('A')
        self.ex.synapse.writable = False

        with self.assertRaises(SynapseUnavailableError):
            self.ex.processor.process_records_for_request(ExporterRequest(export_date=date(2026, 10, 17)))
        self.assertEqual(self.ex.synapse.calls, [])

    def test_synapse_status_check_fails(self):
        for error in (SynapseServiceError(502, 'Bad Gateway'), httpx.ConnectError('refused')):
            with patch.object(self.ex.synapse, 'is_writable', side_effect=error):
                with self.assertRaises(SynapseUnavailableError):
                    self.ex.processor.process_records_for_request(ExporterRequest(export_date=date(2026, 10, 17)))

    def test_metrics_published_on_failure(self):
        self.add_record('A')
        with patch.object(self.ex.manager, 'end_of_stream', side_effect=RuntimeError('boom')), \
                patch('bridgex.metrics.Metrics.publish') as publish:
            with self.assertRaises(RuntimeError):
                self.ex.processor.process_records_for_request(ExporterRequest(export_date=date(2026, 10, 17)))
        publish.assert_called_once()


if __name__ == '__main__':
    unittest.main()
