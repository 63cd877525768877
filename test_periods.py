import unittest
from datetime import date
from types import SimpleNamespace

from periods import (
    RecordFilter, parse_fortnight, fortnight_label, fortnight_options, year_options,
    batch_options, filter_records, PERIOD_ALL, PERIOD_LAST_7, PERIOD_CURRENT_MONTH,
)


def rec(d, aviary_id='1', batch_id='L1'):
    return SimpleNamespace(date=d, aviary_id=aviary_id, batch_id=batch_id)


class RecordFilterTestCase(unittest.TestCase):
    def test_from_args(self):
        flt = RecordFilter.from_args({'period': 'last_7', 'aviary': ' 2 ', 'search': 'L1'})
        self.assertEqual(flt.period, PERIOD_LAST_7)
        self.assertEqual(flt.aviary, '2')
        self.assertEqual(flt.to_args(), {'period': 'last_7', 'aviary': '2', 'search': 'L1'})

    def test_unknown_period_falls_back_to_all(self):
        flt = RecordFilter.from_args({'period': 'last_century'})
        self.assertEqual(flt.period, PERIOD_ALL)
        self.assertTrue(flt.is_empty())


class FortnightTestCase(unittest.TestCase):
    def test_parse(self):
        self.assertEqual(parse_fortnight('2024-01-2'), (2024, 1, 2))
        self.assertIsNone(parse_fortnight('2024-13-1'))
        self.assertIsNone(parse_fortnight('2024-01-3'))
        self.assertIsNone(parse_fortnight('garbage'))

    def test_label(self):
        self.assertEqual(fortnight_label(2024, 1, 1), 'Jan/2024 - 1st Fortnight')
        self.assertEqual(fortnight_label(2024, 12, 2), 'Dec/2024 - 2nd Fortnight')

    def test_options_newest_month_first(self):
        records = [rec(date(2024, 1, 3)), rec(date(2024, 2, 20)), rec(date(2024, 2, 1))]

        opts = fortnight_options(records)
        self.assertEqual([o['value'] for o in opts], ['2024-02-1', '2024-02-2', '2024-01-1', '2024-01-2'])

        opts = fortnight_options(records, second_half_first=True)
        self.assertEqual([o['value'] for o in opts][:2], ['2024-02-2', '2024-02-1'])

    def test_year_and_batch_options(self):
        records = [rec(date(2023, 5, 1), batch_id='B'), rec(date(2024, 1, 1), batch_id='-'),
                   rec(date(2024, 2, 1), batch_id='A'), rec(date(2024, 3, 1), batch_id='')]
        self.assertEqual(year_options(records), ['2024', '2023'])
        self.assertEqual(batch_options(records), ['A', 'B'])


class FilterRecordsTestCase(unittest.TestCase):
    def setUp(self):
        self.today = date(2024, 3, 20)
        self.records = [
            rec(date(2024, 3, 13), '1', 'L1'),   # 7 days ago
            rec(date(2024, 3, 12), '2', 'L2'),   # 8 days ago
            rec(date(2024, 3, 23), '1', 'L1'),   # 3 days ahead
            rec(date(2024, 2, 15), '3', 'abc'),
            rec(date(2024, 2, 16), '3', 'abc'),
            rec(date(2023, 1, 10), '4', 'OLD'),
        ]

    def run_filter(self, **kwargs):
        return filter_records(self.records, RecordFilter(**kwargs), today=self.today)

    def test_last_seven_days_uses_absolute_distance(self):
        dates = [r.date for r in self.run_filter(period=PERIOD_LAST_7)]
        self.assertEqual(dates, [date(2024, 3, 23), date(2024, 3, 13)])

    def test_current_month(self):
        self.assertEqual(len(self.run_filter(period=PERIOD_CURRENT_MONTH)), 3)

    def test_fortnight_halves(self):
        first = self.run_filter(fortnight='2024-02-1')
        second = self.run_filter(fortnight='2024-02-2')
        self.assertEqual([r.date.day for r in first], [15])
        self.assertEqual([r.date.day for r in second], [16])

    def test_year_month_aviary_batch(self):
        self.assertEqual(len(self.run_filter(year='2023')), 1)
        self.assertEqual(len(self.run_filter(month='02')), 2)
        self.assertEqual(len(self.run_filter(month='2', aviary='3')), 2)
        self.assertEqual(len(self.run_filter(batch='L1')), 2)

    def test_search_matches_date_or_batch(self):
        self.assertEqual(len(self.run_filter(search='2024-02')), 2)
        self.assertEqual(len(self.run_filter(search='ABC')), 2)
        self.assertEqual(len(self.run_filter(search='zzz')), 0)

    def test_sort_order(self):
        newest = filter_records(self.records, RecordFilter(), today=self.today)
        oldest = filter_records(self.records, RecordFilter(), today=self.today, newest_first=False)
        self.assertEqual(newest[0].date, date(2024, 3, 23))
        self.assertEqual(oldest[0].date, date(2023, 1, 10))

    def test_rows_without_date_are_ignored(self):
        records = self.records + [rec(None)]
        self.assertEqual(len(filter_records(records, RecordFilter(), today=self.today)), 6)


if __name__ == '__main__':
    unittest.main()
