"""
SVG chart geometry for the dashboards.

Every builder returns plain dicts (coordinates, path strings, labels) that
the templates turn into <svg> markup; nothing here knows about HTML.
"""
import math

from metrics import AVIARY_IDS
from periods import MONTH_NAMES, MONTHS_SHORT

AVIARY_COLORS = {
    '1': '#3b82f6',
    '2': '#10b981',
    '3': '#f59e0b',
    '4': '#a855f7',
}

TOTAL_COLOR = '#2563eb'

SERIES_COLORS = ['#2563eb', '#f59e0b', '#10b981', '#a855f7', '#ef4444']

QUALITY_SEGMENTS = [
    ('clean', 'Clean', '#10b981'),
    ('dirty', 'Dirty', '#f59e0b'),
    ('cracked', 'Cracked', '#ef4444'),
    ('floor', 'Floor', '#a855f7'),
]

# 2 * pi * r for the r=40 quality ring
DONUT_CIRCUMFERENCE = 251.32

MIN_BAR_HEIGHT = 5
DEFAULT_MAX_AGE = 80


def _r(v):
    return round(v, 2)

def axis_label(value):
    if value >= 1000:
        return f"{value / 1000:.1f}k"
    return str(int(round(value)))

def smooth_path(points):
    """
    Cubic Bezier through (x, y) points. Both control points sit on the
    horizontal midpoint between neighbours, which keeps the curve monotone
    between samples.
    """
    if not points:
        return ''
    x0, y0 = points[0]
    d = f"M {_r(x0)},{_r(y0)}"
    for (x1, y1), (x2, y2) in zip(points, points[1:]):
        cx = _r((x1 + x2) / 2)
        d += f" C {cx},{_r(y1)} {cx},{_r(y2)} {_r(x2)},{_r(y2)}"
    return d


def monthly_production_chart(totals, aviary=None):
    """
    Eggs per month as one smooth line: the farm total, or a single aviary.
    totals is the output of metrics.monthly_egg_totals.
    """
    width, height = 800, 250
    pad_left, pad_right, pad_top, pad_bottom = 60, 40, 30, 40
    plot_w = width - pad_left - pad_right
    plot_h = height - pad_bottom - pad_top

    key = aviary if aviary in AVIARY_IDS else 'total'
    color = AVIARY_COLORS.get(key, TOTAL_COLOR)

    values = [totals[i].get(key, 0) for i in range(12)]
    max_val = max(values) or 100
    y_max = math.ceil(max_val / 1000) * 1000 or 1000

    def get_x(i):
        return pad_left + i * plot_w / 11

    def get_y(v):
        return height - pad_bottom - (v / y_max) * plot_h

    points = [(get_x(i), get_y(v)) for i, v in enumerate(values)]

    grid = []
    for p in (0, 0.25, 0.5, 0.75, 1):
        grid.append({'y': _r(height - pad_bottom - p * plot_h), 'label': axis_label(p * y_max)})

    months = []
    for i, v in enumerate(values):
        months.append({
            'x': _r(get_x(i)),
            'y': _r(get_y(v)),
            'label': MONTHS_SHORT[i],
            'title': f"{MONTH_NAMES[i]}: {v:,} eggs",
        })

    return {
        'width': width, 'height': height,
        'left': pad_left, 'right': width - pad_right,
        'color': color,
        'path': smooth_path(points),
        'grid': grid,
        'months': months,
    }

def aviary_production_chart(totals, aviary=None):
    """One polyline per aviary that produced anything in the selection."""
    width, height, pad = 900, 240, 50
    ids = [aviary] if aviary in AVIARY_IDS else AVIARY_IDS

    max_val = 0
    for i in range(12):
        for aviary_id in ids:
            max_val = max(max_val, totals[i].get(aviary_id, 0))
    max_val = max_val or 1000

    def get_x(i):
        return pad + i * (width - pad * 2) / 11

    def get_y(v):
        return height - pad - 10 - (v / max_val) * (height - pad * 2 - 10)

    lines = []
    for aviary_id in ids:
        values = [totals[i].get(aviary_id, 0) for i in range(12)]
        if not any(v > 0 for v in values):
            continue
        lines.append({
            'id': aviary_id,
            'color': AVIARY_COLORS[aviary_id],
            'points': ' '.join(f"{_r(get_x(i))},{_r(get_y(v))}" for i, v in enumerate(values)),
            'markers': [
                {'x': _r(get_x(i)), 'y': _r(get_y(v)),
                 'title': f"Aviary {aviary_id} - {MONTH_NAMES[i]}: {v:,} eggs"}
                for i, v in enumerate(values)
            ],
        })

    grid = [{'y': _r(get_y(p * max_val)), 'label': axis_label(p * max_val)} for p in (0, 0.5, 1)]
    months = [{'x': _r(get_x(i)), 'label': MONTHS_SHORT[i]} for i in range(12)]

    return {
        'width': width, 'height': height,
        'left': pad, 'right': width - pad,
        'lines': lines,
        'grid': grid,
        'months': months,
    }

def laying_rate_bars(aviary_stats):
    """aviary_stats is the output of metrics.summarize_by_aviary."""
    width, height, pad = 900, 280, 60
    chart_w = width - pad * 2
    chart_h = height - pad * 1.5 - 20
    bar_width = 70
    slots = max(len(aviary_stats) - 1, 1)

    bars = []
    for i, av in enumerate(aviary_stats):
        rate = av['laying_rate'] or 0
        x = pad + i * chart_w / slots - bar_width / 2
        bar_h = max(MIN_BAR_HEIGHT, (min(rate, 100) / 100) * chart_h)
        y = height - pad - bar_h
        bars.append({
            'id': av['id'],
            'x': _r(x), 'y': _r(y),
            'width': bar_width, 'height': _r(bar_h),
            'center': _r(x + bar_width / 2),
            'color': AVIARY_COLORS.get(av['id'], TOTAL_COLOR),
            'label': f"{rate:.1f}%",
            'title': f"Aviary {av['id']}: {rate:.1f}% laying, {av['total_eggs']:,} eggs",
        })

    return {
        'width': width, 'height': height,
        'baseline': height - pad,
        'left': pad, 'right': width - pad,
        'bars': bars,
    }

def maturity_chart(curves):
    """
    Laying rate (%) against flock age (weeks), one curve per batch.
    curves is the output of metrics.maturity_curves.
    """
    width, height = 1000, 350
    pad_left, pad_right, pad_top, pad_bottom = 70, 30, 10, 70
    chart_w = width - pad_left - pad_right
    chart_h = height - pad_top - pad_bottom

    ages = sorted({p['age'] for c in curves for p in c['points']})
    max_age = DEFAULT_MAX_AGE
    if ages and ages[-1] > max_age:
        max_age = math.ceil(ages[-1] / 10) * 10

    def get_x(age):
        return pad_left + (age / max_age) * chart_w

    def get_y(rate):
        return height - pad_bottom - (min(100, rate) / 100) * chart_h

    series = []
    for idx, curve in enumerate(curves):
        pts = curve['points']
        if not pts:
            continue
        color = SERIES_COLORS[idx % len(SERIES_COLORS)]
        coords = [(get_x(p['age']), get_y(p['rate'])) for p in pts]
        series.append({
            'batch_id': curve['batch_id'],
            'color': color,
            'path': smooth_path(coords) if len(pts) > 1 else '',
            'points': [
                {'x': _r(x), 'y': _r(y),
                 'title': f"Batch {curve['batch_id']} - {p['age']} weeks: {p['rate']:.1f}%"}
                for (x, y), p in zip(coords, pts)
            ],
        })

    return {
        'width': width, 'height': height,
        'left': pad_left, 'right': width - pad_right,
        'top': pad_top, 'bottom': _r(get_y(0)),
        'max_age': max_age,
        'v_grid': [_r(get_x(a)) for a in range(0, 130, 10) if a <= max_age],
        'h_grid': [{'y': _r(get_y(v)), 'label': f"{v}%"} for v in (0, 25, 50, 75, 100)],
        'x_labels': [{'x': _r(get_x(a)), 'label': a} for a in range(0, 130, 20) if a <= max_age],
        'series': series,
    }

def quality_donut(quality):
    """
    Stroke-dash segments of the r=40 egg quality ring, clockwise from the top
    once the template rotates the <svg> by -90 degrees.
    """
    total = quality.get('total') or 1
    offset = 0.0

    segments = []
    for key, label, color in QUALITY_SEGMENTS:
        value = quality.get(key, 0) or 0
        share = value / total
        dash = share * DONUT_CIRCUMFERENCE
        segments.append({
            'key': key,
            'label': label,
            'color': color,
            'value': value,
            'pct': round(share * 100, 1),
            'dasharray': f"{_r(dash)} {DONUT_CIRCUMFERENCE}",
            'dashoffset': _r(offset),
        })
        offset -= dash

    return {
        'circumference': DONUT_CIRCUMFERENCE,
        'segments': segments,
        'clean_pct': round((quality.get('clean', 0) or 0) / total * 100),
    }
