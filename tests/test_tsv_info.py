import os
import shutil
import sys
import tempfile
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from bridgex.exceptions import TsvError
from bridgex.tsv_info import TsvInfo
from tests.fakes import parse_tsv


class TestTsvInfo(unittest.TestCase):
    """Test cases for TSV accumulation"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.test_dir, 'table.tsv')

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def read_file(self):
        with open(self.path, encoding='utf-8') as f:
            return f.read()

    def test_header_and_rows(self):
        """Rows follow header order; missing and None values are empty cells"""
        tsv_info = TsvInfo.open(['a', 'b', 'c'], self.path)
        tsv_info.write_row({'c': '3', 'a': '1'})
        tsv_info.write_row({'a': None, 'b': 'x', 'extra': 'ignored'})
        tsv_info.add_record_id('rec1')
        tsv_info.flush_and_close_writer()

        self.assertEqual(self.read_file(), '"a"\t"b"\t"c"\n"1"\t""\t"3"\n""\t"x"\t""\n')
        self.assertEqual(tsv_info.line_count, 2)
        self.assertEqual(tsv_info.record_ids, ['rec1'])
        self.assertTrue(tsv_info.is_ready)
        self.assertIsNone(tsv_info.init_error)

    def test_close_twice(self):
        tsv_info = TsvInfo.open(['a'], self.path)
        tsv_info.flush_and_close_writer()
        tsv_info.flush_and_close_writer()
        self.assertEqual(self.read_file(), '"a"\n')

    def test_write_after_close(self):
        tsv_info = TsvInfo.open(['a'], self.path)
        tsv_info.flush_and_close_writer()
        with self.assertRaises(TsvError):
            tsv_info.write_row({'a': '1'})

    def test_failed_raises_everywhere(self):
        """A failed TSV raises TsvError chained to the init error"""
        cause = RuntimeError('no table')
        tsv_info = TsvInfo.failed(cause)

        self.assertFalse(tsv_info.is_ready)
        self.assertIs(tsv_info.init_error, cause)
        for call in (tsv_info.check_init_and_raise, tsv_info.flush_and_close_writer,
                     lambda: tsv_info.write_row({}), lambda: tsv_info.file_path):
            with self.assertRaises(TsvError) as context:
                call()
            self.assertIs(context.exception.__cause__, cause)

    def test_verify_file(self):
        """The closed file reads back with the same header and row count"""
        tsv_info = TsvInfo.open(['a', 'b'], self.path)
        tsv_info.write_row({'a': 'say "hi"', 'b': None})
        tsv_info.write_row({'a': None, 'b': None})
        tsv_info.flush_and_close_writer()
        self.assertEqual(tsv_info.verify_file(), 2)

    def test_quotes_tabs_and_backslashes_survive(self):
        """Cells holding quotes, separators, newlines or backslashes read back unchanged"""
        values = ['"Hi" she said', '"x"', 'a\tb', 'line1\nline2', 'C:\\temp\\"q"']
        tsv_info = TsvInfo.open(['v'], self.path)
        for value in values:
            tsv_info.write_row({'v': value})
        tsv_info.flush_and_close_writer()

        self.assertEqual(tsv_info.verify_file(), len(values))
        with open(self.path, 'rb') as f:
            rows = parse_tsv(f.read())
        self.assertEqual(rows['v'].to_list(), values)

    def test_verify_file_detects_missing_rows(self):
        tsv_info = TsvInfo.open(['a', 'b'], self.path)
        tsv_info.write_row({'a': '1', 'b': '2'})
        tsv_info.flush_and_close_writer()
        with open(self.path, 'w', encoding='utf-8') as f:
            f.write('a\tb\n')
        with self.assertRaises(TsvError):
            tsv_info.verify_file()

    def test_unwritable_path(self):
        tsv_info = TsvInfo.open(['a'], os.path.join(self.test_dir, 'missing', 'table.tsv'))
        self.assertIsInstance(tsv_info.init_error, OSError)


if __name__ == '__main__':
    unittest.main()
