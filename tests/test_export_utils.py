import json
import os
import sys
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from bridgex.exceptions import (
    BridgeServiceError,
    NonRetryableError,
    SynapseServiceError,
    TsvError,
    is_retryable,
    is_synapse_down,
)
from bridgex.export_utils import (
    PhoneAppVersionInfo,
    get_schema_key_for_record,
    parse_json_field,
    parse_timestamp,
    sanitize_string,
    should_convert_freeform_text_to_attachment,
)
from bridgex.metrics import Metrics
from bridgex.schema import SchemaKey


class TestSanitizeString(unittest.TestCase):

    def test_strips_html_and_whitespace(self):
        self.assertEqual(sanitize_string('<p>a\tb\r\nc</p>', None, 'rec1'), 'a b c')

    def test_truncates(self):
        with patch('bridgex.export_utils.logger') as mock_logger:
            self.assertEqual(sanitize_string('abcdef', 3, 'rec1'), 'abc')
        mock_logger.error.assert_called_once()

    def test_none(self):
        self.assertIsNone(sanitize_string(None, 3, 'rec1'))


class TestRecordHelpers(unittest.TestCase):

    def test_schema_key(self):
        record = {'studyId': 'S', 'schemaId': 'Q', 'schemaRevision': '3'}
        self.assertEqual(get_schema_key_for_record(record), SchemaKey('S', 'Q', 3))

    def test_parse_json_field(self):
        self.assertEqual(parse_json_field({'data': '{"a": 1}'}, 'data'), {'a': 1})
        self.assertEqual(parse_json_field({'data': {'a': 1}}, 'data'), {'a': 1})
        self.assertIsNone(parse_json_field({'data': ''}, 'data'))
        self.assertIsNone(parse_json_field({}, 'data'))
        with self.assertRaises(json.JSONDecodeError):
            parse_json_field({'data': '{'}, 'data')

    def test_app_version_info(self):
        record = {'id': 'rec1', 'metadata': json.dumps({'appVersion': 'v' * 60, 'phoneInfo': 'iPhone'})}
        info = PhoneAppVersionInfo.from_record(record)
        self.assertEqual(info.app_version, 'v' * 48)
        self.assertEqual(info.phone_info, 'iPhone')

    def test_bad_metadata(self):
        """Unparseable or non-object metadata yields empty info"""
        for metadata in ('{', '[1, 2]', '  ', None):
            info = PhoneAppVersionInfo.from_record({'id': 'rec1', 'metadata': metadata})
            self.assertEqual(info, PhoneAppVersionInfo())

    def test_freeform_fields(self):
        key = SchemaKey('breastcancer', 'BreastCancer-ExerciseSurvey', 1)
        self.assertTrue(should_convert_freeform_text_to_attachment(key, 'exercisesurvey101_data.result'))
        self.assertFalse(should_convert_freeform_text_to_attachment(key, 'other'))
        self.assertFalse(should_convert_freeform_text_to_attachment(SchemaKey('S', 'Q', 1), 'content'))


class TestParseTimestamp(unittest.TestCase):

    def test_iso_with_offset(self):
        self.assertEqual(parse_timestamp('2026-10-17T08:00:00.500+05:30'), (1792204200500, '+0530'))

    def test_iso_compact_offset(self):
        """Offsets without a colon and short fractions are accepted"""
        self.assertEqual(parse_timestamp('2016-01-01T12:00:00.123-0800'), (1451678400123, '-0800'))
        self.assertEqual(parse_timestamp('2016-01-01T12:00:00.12-0800'), (1451678400120, '-0800'))

    def test_iso_utc(self):
        self.assertEqual(parse_timestamp('1970-01-01T00:00:01Z'), (1000, '+0000'))
        self.assertEqual(parse_timestamp('1970-01-01T00:00:01'), (1000, '+0000'))

    def test_epoch_millis(self):
        self.assertEqual(parse_timestamp(1500000000000), (1500000000000, '+0000'))

    def test_unparseable(self):
        for value in (None, True, '', 'yesterday', {'a': 1}):
            self.assertEqual(parse_timestamp(value), (None, None))


class TestErrorClassification(unittest.TestCase):

    def test_synapse_down(self):
        down = SynapseServiceError(503, 'Service Unavailable')
        self.assertTrue(is_synapse_down(down))
        self.assertFalse(is_synapse_down(SynapseServiceError(500)))
        self.assertFalse(is_synapse_down(BridgeServiceError(503)))
        self.assertFalse(is_synapse_down(None))

    def test_synapse_down_in_cause_chain(self):
        try:
            try:
                raise SynapseServiceError(503)
            except SynapseServiceError as e:
                raise TsvError('init failed') from e
        except TsvError as wrapped:
            self.assertTrue(is_synapse_down(wrapped))

    def test_retryable(self):
        self.assertTrue(is_retryable(RuntimeError('boom')))
        self.assertTrue(is_retryable(BridgeServiceError(500)))
        self.assertTrue(is_retryable(SynapseServiceError(400)))
        self.assertFalse(is_retryable(BridgeServiceError(404)))
        self.assertFalse(is_retryable(NonRetryableError('bad schema')))
        self.assertFalse(is_retryable(json.JSONDecodeError('bad', '{', 0)))
        self.assertFalse(is_retryable(None))


class TestMetrics(unittest.TestCase):

    def test_counters_and_sets(self):
        metrics = Metrics()
        self.assertEqual(metrics.increment_counter('a'), 1)
        self.assertEqual(metrics.increment_counter('a'), 2)
        metrics.add_key_value_pair('k', 'v1')
        metrics.add_key_value_pair('k', 'v1')
        metrics.increment_set_counter('s', 'x')
        metrics.increment_set_counter('s', 'x')
        metrics.increment_set_counter('s', 'y')

        self.assertEqual(metrics.get_counter('a'), 2)
        self.assertEqual(metrics.get_counter('missing'), 0)
        self.assertEqual(metrics.get_key_values('k'), {'v1'})
        self.assertEqual(metrics.get_set_counter('s'), 2)

    def test_concurrent_increments(self):
        metrics = Metrics()
        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(lambda _: metrics.increment_counter('n'), range(1000)))
        self.assertEqual(metrics.get_counter('n'), 1000)

    def test_publish_sorted(self):
        metrics = Metrics()
        metrics.increment_counter('b')
        metrics.increment_counter('a')
        metrics.add_key_value_pair('k', 'z')
        metrics.add_key_value_pair('k', 'y')
        with patch('bridgex.metrics.logger') as mock_logger:
            metrics.publish()
        lines = [call.args[0] for call in mock_logger.info.call_args_list]
        self.assertEqual(lines, ['metrics.counter.a=1', 'metrics.counter.b=1', 'metrics.keyValues.k=y, z'])


if __name__ == '__main__':
    unittest.main()
