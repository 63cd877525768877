from datetime import datetime
import logging

logger = logging.getLogger(__name__)

AVIARY_IDS = ['1', '2', '3', '4']

# Only these houses have a litter floor, so only they report floor eggs
FLOOR_EGG_AVIARIES = ('2', '4')

NO_BATCH = '-'

FEATHERING_CHOICES = ['Excelente', 'Bom', 'Regular', 'Ruim']
DEFAULT_FEATHERING = 'Bom'

MAX_FLOCK_AGE_WEEKS = 120

METRICS_REGISTRY = {
    # --- Production ---
    'total_eggs': {'label': 'Total Eggs', 'unit': '', 'type': 'derived'},
    'laying_rate': {'label': 'Laying Rate (%)', 'unit': '%', 'type': 'derived'},
    'live_birds': {'label': 'Live Birds', 'unit': '', 'type': 'raw'},

    # --- Egg Quality ---
    'clean_eggs': {'label': 'Clean Eggs', 'unit': '', 'type': 'raw'},
    'dirty_eggs': {'label': 'Dirty Eggs', 'unit': '', 'type': 'raw'},
    'cracked_eggs': {'label': 'Cracked Eggs', 'unit': '', 'type': 'raw'},
    'floor_eggs': {'label': 'Floor Eggs', 'unit': '', 'type': 'raw'},
    'clean_pct': {'label': 'Clean Eggs (%)', 'unit': '%', 'type': 'derived'},
    'dirty_pct': {'label': 'Dirty Eggs (%)', 'unit': '%', 'type': 'derived'},
    'cracked_pct': {'label': 'Cracked Eggs (%)', 'unit': '%', 'type': 'derived'},
    'floor_pct': {'label': 'Floor Eggs (%)', 'unit': '%', 'type': 'derived'},

    # --- Weights ---
    'egg_weight_avg': {'label': 'Egg Weight (g)', 'unit': 'g', 'type': 'raw'},
    'bird_weight_avg': {'label': 'Bird Weight (g)', 'unit': 'g', 'type': 'raw'},

    # --- Mortality ---
    'mortality': {'label': 'Mortality (Count)', 'unit': '', 'type': 'raw'},
    'mortality_pct': {'label': 'Mortality (%)', 'unit': '%', 'type': 'derived'},

    # --- Batch Characterization ---
    'age_weeks': {'label': 'Flock Age (Weeks)', 'unit': 'wk', 'type': 'raw'},
    'batch_weight': {'label': 'Batch Weight (g)', 'unit': 'g', 'type': 'raw', 'field': 'weight'},
    'uniformity': {'label': 'Uniformity (%)', 'unit': '%', 'type': 'raw'},
}


def round_safe(val, digits=2):
    if val is None: return 0.0
    try:
        return round(float(val), digits)
    except (ValueError, TypeError):
        return 0.0

def safe_div(num, den, multiplier=100.0):
    if den and den > 0:
        return (num / den) * multiplier
    return 0.0

def has_floor_eggs(aviary_id):
    return str(aviary_id) in FLOOR_EGG_AVIARIES

def calculate_production_metrics(clean, dirty, cracked, floor, live_birds, aviary_id):
    """
    Derived metrics for one day of one aviary.
    Floor eggs are ignored for aviaries without a litter floor.
    """
    clean = int(clean or 0)
    dirty = int(dirty or 0)
    cracked = int(cracked or 0)
    floor = int(floor or 0) if has_floor_eggs(aviary_id) else 0
    birds = int(live_birds or 0)

    total = clean + dirty + cracked + floor

    return {
        'total_eggs': total,
        'clean_pct': round(safe_div(clean, total), 1),
        'dirty_pct': round(safe_div(dirty, total), 1),
        'cracked_pct': round(safe_div(cracked, total), 1),
        'floor_pct': round(safe_div(floor, total), 1),
        'laying_rate': round(safe_div(total, birds), 1),
    }

# ---------------------------------------------------------------------------
# Batch linkage
# ---------------------------------------------------------------------------

def _updated_key(record):
    return getattr(record, 'updated_at', None) or datetime.min

def find_active_batch(batches, aviary_id, on_date):
    """
    Latest characterization of the aviary taken on or before on_date.
    When two characterizations share a date, the most recently edited one wins.
    """
    if on_date is None:
        return None

    candidates = [b for b in batches
                  if b.aviary_id == str(aviary_id) and b.date and b.date <= on_date]
    if not candidates:
        return None

    candidates.sort(key=lambda b: (b.date, _updated_key(b)), reverse=True)
    return candidates[0]

def sync_production_with_batches(productions, batches):
    """
    Re-resolve the batch label of every production record.
    Returns the records whose label changed (already updated in place).
    """
    # Group once instead of scanning every batch per production row
    by_aviary = {}
    for b in batches:
        by_aviary.setdefault(b.aviary_id, []).append(b)

    changed = []
    for prod in productions:
        active = find_active_batch(by_aviary.get(prod.aviary_id, []), prod.aviary_id, prod.date)
        new_batch_id = active.batch_id if active else NO_BATCH
        if prod.batch_id != new_batch_id:
            prod.batch_id = new_batch_id
            changed.append(prod)

    if changed:
        logger.info(f"Relabelled {len(changed)} production record(s) after batch changes")
    return changed

def latest_live_birds(productions, aviary_id):
    latest = None
    for p in productions:
        if p.aviary_id != aviary_id:
            continue
        if latest is None or p.date > latest.date:
            latest = p
    return latest.live_birds if latest else 0

# ---------------------------------------------------------------------------
# Dashboard reductions (records are expected pre-filtered)
# ---------------------------------------------------------------------------

def _quality_sums(records):
    return {
        'clean': sum(r.clean_eggs or 0 for r in records),
        'dirty': sum(r.dirty_eggs or 0 for r in records),
        'cracked': sum(r.cracked_eggs or 0 for r in records),
        'floor': sum(r.floor_eggs or 0 for r in records),
    }

def _avg_positive(values):
    values = [v for v in values if v and v > 0]
    return sum(values) / len(values) if values else 0.0

def summarize_production(records):
    """
    Farm-wide KPIs for the general dashboard. None when there is nothing to show.
    """
    if not records:
        return None

    ordered = sorted(records, key=lambda r: r.date)

    total_eggs = sum(r.total_eggs or 0 for r in ordered)

    # Current flock size: the last reading of each aviary
    latest_by_aviary = {}
    for r in ordered:
        latest_by_aviary[r.aviary_id] = r.live_birds or 0
    current_birds = sum(latest_by_aviary.values())

    # Hen-day laying rate over the whole selection
    total_bird_days = sum(r.live_birds or 0 for r in ordered)
    total_mortality = sum(r.mortality or 0 for r in ordered)

    quality = _quality_sums(ordered)
    quality['total'] = total_eggs

    return {
        'total_eggs': total_eggs,
        'avg_laying_rate': safe_div(total_eggs, total_bird_days),
        'current_birds': current_birds,
        'total_mortality': total_mortality,
        'mortality_rate': safe_div(total_mortality, total_mortality + current_birds),
        'avg_egg_weight': _avg_positive(r.egg_weight_avg for r in ordered),
        'avg_bird_weight': _avg_positive(r.bird_weight_avg for r in ordered),
        'quality': quality,
        'days': len(ordered),
    }

def summarize_by_aviary(records):
    stats = []
    for aviary_id in AVIARY_IDS:
        av_recs = sorted((r for r in records if r.aviary_id == aviary_id), key=lambda r: r.date)
        if not av_recs:
            stats.append({
                'id': aviary_id, 'total_eggs': 0, 'live_birds': 0, 'laying_rate': 0.0,
                'quality': {'clean': 0, 'dirty': 0, 'cracked': 0, 'floor': 0},
                'mortality': 0,
            })
            continue

        total_eggs = sum(r.total_eggs or 0 for r in av_recs)
        total_bird_days = sum(r.live_birds or 0 for r in av_recs)
        stats.append({
            'id': aviary_id,
            'total_eggs': total_eggs,
            'live_birds': av_recs[-1].live_birds or 0,
            'laying_rate': safe_div(total_eggs, total_bird_days),
            'quality': _quality_sums(av_recs),
            'mortality': sum(r.mortality or 0 for r in av_recs),
        })
    return stats

def monthly_egg_totals(records):
    """
    Eggs per calendar month (index 0 = January) split by aviary, plus a 'total'.
    Years are folded together; filter by year first for a single season.
    """
    data = {}
    for i in range(12):
        data[i] = {aviary_id: 0 for aviary_id in AVIARY_IDS}
        data[i]['total'] = 0

    for r in records:
        bucket = data[r.date.month - 1]
        eggs = r.total_eggs or 0
        if r.aviary_id in bucket:
            bucket[r.aviary_id] += eggs
        bucket['total'] += eggs
    return data

def _reference_batches(batches):
    # Earliest characterization of every (batch, aviary) pair anchors the age
    refs = {}
    for b in batches:
        key = (b.batch_id, b.aviary_id)
        if key not in refs or b.date < refs[key].date:
            refs[key] = b
    return refs

def flock_age_weeks(reference, on_date):
    return (reference.age_weeks or 0) + (on_date - reference.date).days // 7

def maturity_curves(records, batches):
    """
    Laying rate by flock age (weeks) for every batch present in records.
    Age is counted from the earliest characterization of each (batch, aviary)
    pair; later characterizations of the same pair do not move it.
    Returns [{'batch_id': ..., 'points': [{'age': int, 'rate': float}, ...]}, ...]
    """
    refs = _reference_batches(batches)

    ages_by_batch = {}
    for r in records:
        ref = refs.get((r.batch_id, r.aviary_id))
        if not ref:
            continue
        age = flock_age_weeks(ref, r.date)
        if age < 0 or age > MAX_FLOCK_AGE_WEEKS:
            continue
        bucket = ages_by_batch.setdefault(r.batch_id, {}).setdefault(age, {'sum': 0.0, 'count': 0})
        bucket['sum'] += r.laying_rate or 0
        bucket['count'] += 1

    result = []
    for batch_id, ages in ages_by_batch.items():
        points = [{'age': age, 'rate': v['sum'] / v['count']} for age, v in sorted(ages.items())]
        if points:
            result.append({'batch_id': batch_id, 'points': points})
    return result

def aggregate_monthly_metrics(records):
    """
    Aggregates daily production records into monthly summaries.
    """
    monthly_stats = {}

    for r in sorted(records, key=lambda x: x.date):
        m_key = r.date.strftime('%Y-%m')

        if m_key not in monthly_stats:
            monthly_stats[m_key] = {
                'month': m_key,
                'count': 0,
                'date_start': r.date,
                'date_end': r.date,

                # Sums
                'total_eggs': 0, 'clean_eggs': 0, 'dirty_eggs': 0,
                'cracked_eggs': 0, 'floor_eggs': 0,
                'mortality': 0,
                'bird_days': 0,

                # Averages (Sum then divide)
                'egg_w_sum': 0, 'egg_w_count': 0,
                'bird_w_sum': 0, 'bird_w_count': 0,

                'notes': [],
            }

        ms = monthly_stats[m_key]
        ms['count'] += 1
        ms['date_end'] = r.date
        ms['total_eggs'] += r.total_eggs or 0
        ms['clean_eggs'] += r.clean_eggs or 0
        ms['dirty_eggs'] += r.dirty_eggs or 0
        ms['cracked_eggs'] += r.cracked_eggs or 0
        ms['floor_eggs'] += r.floor_eggs or 0
        ms['mortality'] += r.mortality or 0
        ms['bird_days'] += r.live_birds or 0

        if r.egg_weight_avg and r.egg_weight_avg > 0:
            ms['egg_w_sum'] += r.egg_weight_avg
            ms['egg_w_count'] += 1

        if r.bird_weight_avg and r.bird_weight_avg > 0:
            ms['bird_w_sum'] += r.bird_weight_avg
            ms['bird_w_count'] += 1

        if r.notes:
            ms['notes'].append(r.notes)

    # Finalize Averages
    result = []
    for k in sorted(monthly_stats.keys()):
        ms = monthly_stats[k]

        ms['laying_rate'] = safe_div(ms['total_eggs'], ms['bird_days'])
        ms['clean_pct'] = safe_div(ms['clean_eggs'], ms['total_eggs'])
        ms['dirty_pct'] = safe_div(ms['dirty_eggs'], ms['total_eggs'])
        ms['cracked_pct'] = safe_div(ms['cracked_eggs'], ms['total_eggs'])
        ms['floor_pct'] = safe_div(ms['floor_eggs'], ms['total_eggs'])

        # Average standing flock over the month, for the mortality ratio
        avg_birds = ms['bird_days'] / ms['count'] if ms['count'] else 0
        ms['mortality_pct'] = safe_div(ms['mortality'], avg_birds)

        ms['egg_weight_avg'] = ms['egg_w_sum'] / ms['egg_w_count'] if ms['egg_w_count'] > 0 else 0
        ms['bird_weight_avg'] = ms['bird_w_sum'] / ms['bird_w_count'] if ms['bird_w_count'] > 0 else 0

        result.append(ms)

    return result

def daily_series(records, requested_metrics):
    """
    Column-oriented series for chart data: {'dates': [...], metric: [...]}.
    """
    data = {m: [] for m in requested_metrics}
    data['dates'] = []

    for r in sorted(records, key=lambda x: x.date):
        data['dates'].append(r.date.isoformat())
        for m in requested_metrics:
            field = METRICS_REGISTRY.get(m, {}).get('field', m)
            val = getattr(r, field, None)
            data[m].append(val)

    return data

def monthly_series(records, requested_metrics):
    agg_stats = aggregate_monthly_metrics(records)

    data = {m: [] for m in requested_metrics}
    data['dates'] = []
    data['ranges'] = []

    for a in agg_stats:
        data['dates'].append(a['month'])
        data['ranges'].append({'start': a['date_start'].isoformat(), 'end': a['date_end'].isoformat()})
        for m in requested_metrics:
            val = a.get(m)
            data[m].append(round_safe(val) if val is not None else None)

    return data
