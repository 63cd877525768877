import unittest

from charts import (
    axis_label, smooth_path, monthly_production_chart, aviary_production_chart,
    laying_rate_bars, maturity_chart, quality_donut, AVIARY_COLORS, TOTAL_COLOR,
    DONUT_CIRCUMFERENCE, MIN_BAR_HEIGHT, DEFAULT_MAX_AGE,
)


def empty_totals():
    return {i: {'1': 0, '2': 0, '3': 0, '4': 0, 'total': 0} for i in range(12)}


class HelpersTestCase(unittest.TestCase):
    def test_axis_label(self):
        self.assertEqual(axis_label(0), '0')
        self.assertEqual(axis_label(750), '750')
        self.assertEqual(axis_label(1500), '1.5k')

    def test_smooth_path(self):
        self.assertEqual(smooth_path([]), '')
        self.assertEqual(smooth_path([(0, 0)]), 'M 0,0')
        self.assertEqual(smooth_path([(0, 0), (10, 10)]), 'M 0,0 C 5.0,0 5.0,10 10,10')


class MonthlyChartTestCase(unittest.TestCase):
    def test_total_line_rounds_axis_to_thousands(self):
        totals = empty_totals()
        totals[0].update({'1': 1000, '2': 500, 'total': 1500})

        chart = monthly_production_chart(totals)

        self.assertEqual(chart['color'], TOTAL_COLOR)
        self.assertEqual(chart['grid'][-1]['label'], '2.0k')
        self.assertEqual(len(chart['months']), 12)
        self.assertEqual(chart['months'][0]['y'], 75.0)
        self.assertEqual(chart['months'][1]['y'], 210)
        self.assertTrue(chart['path'].startswith('M 60.0,75.0 C'))

    def test_single_aviary_and_empty_year(self):
        chart = monthly_production_chart(empty_totals(), aviary='3')
        self.assertEqual(chart['color'], AVIARY_COLORS['3'])
        self.assertEqual(chart['grid'][-1]['label'], '1.0k')

    def test_aviary_lines_skip_idle_aviaries(self):
        totals = empty_totals()
        totals[4].update({'2': 300, 'total': 300})

        chart = aviary_production_chart(totals)
        self.assertEqual([l['id'] for l in chart['lines']], ['2'])
        self.assertEqual(len(chart['lines'][0]['markers']), 12)

        self.assertEqual(aviary_production_chart(totals, aviary='1')['lines'], [])


class LayingRateBarsTestCase(unittest.TestCase):
    def test_heights_are_clamped(self):
        stats = [
            {'id': '1', 'laying_rate': 0.0, 'total_eggs': 0},
            {'id': '2', 'laying_rate': 120.0, 'total_eggs': 1200},
            {'id': '3', 'laying_rate': 50.0, 'total_eggs': 500},
            {'id': '4', 'laying_rate': None, 'total_eggs': 0},
        ]
        chart = laying_rate_bars(stats)
        heights = [b['height'] for b in chart['bars']]

        self.assertEqual(heights[0], MIN_BAR_HEIGHT)
        self.assertEqual(heights[1], 170)
        self.assertEqual(heights[2], 85)
        self.assertEqual(heights[3], MIN_BAR_HEIGHT)
        self.assertEqual(chart['bars'][1]['label'], '120.0%')
        for bar in chart['bars']:
            self.assertEqual(bar['y'] + bar['height'], chart['baseline'])


class MaturityChartTestCase(unittest.TestCase):
    def test_default_age_range(self):
        chart = maturity_chart([])
        self.assertEqual(chart['max_age'], DEFAULT_MAX_AGE)
        self.assertEqual(chart['series'], [])
        self.assertEqual([l['label'] for l in chart['x_labels']], [0, 20, 40, 60, 80])

    def test_age_range_grows_with_data(self):
        curves = [
            {'batch_id': 'L1', 'points': [{'age': 20, 'rate': 80.0}, {'age': 95, 'rate': 60.0}]},
            {'batch_id': 'L2', 'points': [{'age': 30, 'rate': 90.0}]},
            {'batch_id': 'L3', 'points': []},
        ]
        chart = maturity_chart(curves)

        self.assertEqual(chart['max_age'], 100)
        self.assertEqual([s['batch_id'] for s in chart['series']], ['L1', 'L2'])
        self.assertTrue(chart['series'][0]['path'].startswith('M '))
        # A single sample is drawn as a dot only
        self.assertEqual(chart['series'][1]['path'], '')
        self.assertEqual(len(chart['series'][1]['points']), 1)


class QualityDonutTestCase(unittest.TestCase):
    def test_segments_follow_each_other(self):
        donut = quality_donut({'clean': 75, 'dirty': 25, 'cracked': 0, 'floor': 0, 'total': 100})
        clean, dirty, cracked, floor = donut['segments']

        self.assertEqual(donut['clean_pct'], 75)
        self.assertEqual(clean['pct'], 75.0)
        self.assertEqual(clean['dashoffset'], 0)
        self.assertAlmostEqual(dirty['dashoffset'], -0.75 * DONUT_CIRCUMFERENCE, places=1)
        self.assertAlmostEqual(cracked['dashoffset'], -DONUT_CIRCUMFERENCE, places=1)
        self.assertTrue(floor['dasharray'].startswith('0.0 '))

    def test_empty_quality(self):
        donut = quality_donut({'clean': 0, 'dirty': 0, 'cracked': 0, 'floor': 0, 'total': 0})
        self.assertEqual(donut['clean_pct'], 0)
        self.assertTrue(all(s['pct'] == 0 for s in donut['segments']))


if __name__ == '__main__':
    unittest.main()
