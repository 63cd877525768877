from flask import Flask, render_template, request, redirect, url_for, flash, send_file
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from datetime import datetime, date, timezone
import io
import os
import json
import logging
import uuid
from dotenv import load_dotenv

import cloud_sync
from cloud_sync import (
    SyncError, build_snapshot, merge_snapshot, make_client, generate_sync_key,
    device_label, utc_iso, PushDebouncer,
    STATUS_IDLE, STATUS_SYNCING, STATUS_ERROR, STATUS_SUCCESS,
    SETTING_SYNC_KEY, SETTING_STATUS, SETTING_LAST_SYNC, SETTING_LAST_ERROR,
    MERGE_REPLACE, MERGE_UPDATED_AT,
)
from csv_io import (
    CSVImportError, to_number,
    export_production_csv, export_production_xlsx, export_batch_csv,
    parse_production_csv, parse_batch_csv,
    production_filename, production_xlsx_filename, batch_filename,
)
from metrics import (
    METRICS_REGISTRY, AVIARY_IDS, NO_BATCH, FEATHERING_CHOICES, DEFAULT_FEATHERING,
    calculate_production_metrics, has_floor_eggs, find_active_batch, sync_production_with_batches,
    latest_live_birds, summarize_production, summarize_by_aviary, monthly_egg_totals,
    maturity_curves, aggregate_monthly_metrics, daily_series, monthly_series,
)
from periods import (
    RecordFilter, PERIOD_CHOICES, MONTH_NAMES,
    filter_records, year_options, batch_options, fortnight_options,
)
from charts import (
    monthly_production_chart, aviary_production_chart, laying_rate_bars,
    maturity_chart, quality_donut, AVIARY_COLORS,
)

load_dotenv()


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')

def _env_float(name, default):
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return float(default)


app = Flask(__name__)
basedir = os.path.abspath(os.path.dirname(__file__))
database_url = os.getenv('DATABASE_URL')
if database_url and database_url.startswith("postgres://"):
    database_url = database_url.replace("postgres://", "postgresql://", 1)

app.config['SQLALCHEMY_DATABASE_URI'] = database_url or 'sqlite:///' + os.path.join(basedir, 'instance', 'siglab.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev_key')
app.config['LOG_LEVEL'] = os.getenv('LOG_LEVEL', 'INFO').upper()

# Remote snapshot store
app.config['SYNC_BACKEND'] = os.getenv('SYNC_BACKEND', cloud_sync.BACKEND_KVDB)
app.config['SYNC_BASE_URL'] = os.getenv('SYNC_BASE_URL')
app.config['SYNC_BUCKET'] = os.getenv('SYNC_BUCKET', cloud_sync.DEFAULT_BUCKET)
app.config['SYNC_TIMEOUT'] = _env_float('SYNC_TIMEOUT', 10)
app.config['SYNC_DEBOUNCE_SECONDS'] = _env_float('SYNC_DEBOUNCE_SECONDS', 2)
app.config['SYNC_AUTO_PUSH'] = _env_bool('SYNC_AUTO_PUSH', True)

os.makedirs(os.path.join(basedir, 'instance'), exist_ok=True)

logging.basicConfig(
    level=app.config['LOG_LEVEL'],
    format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
)
app.logger.setLevel(app.config['LOG_LEVEL'])

@app.template_filter('date_fmt')
def date_fmt_filter(value):
    if value is None:
        return ""
    if isinstance(value, str):
        try:
            value = datetime.strptime(value, '%Y-%m-%d')
        except ValueError:
            return value
    if isinstance(value, (datetime, date)):
        return value.strftime('%d/%m/%Y')
    return value

@app.template_filter('num')
def num_filter(value, decimals=0):
    if value is None:
        return '0'
    try:
        return f"{float(value):,.{decimals}f}"
    except (ValueError, TypeError):
        return value

db = SQLAlchemy(app)
migrate = Migrate(app, db)


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)

def new_id():
    return str(uuid.uuid4())

def _parse_iso_date(value):
    try:
        return datetime.strptime(str(value)[:10], '%Y-%m-%d').date()
    except (ValueError, TypeError):
        return None

def _parse_iso_datetime(value):
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt

def _snapshot_aviary(data):
    aviary_id = str(data.get('aviaryId') or '')
    return aviary_id if aviary_id in AVIARY_IDS else AVIARY_IDS[0]

# --- Models ---

class ProductionRecord(db.Model):
    __tablename__ = 'production_record'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    date = db.Column(db.Date, nullable=False, default=date.today, index=True)
    aviary_id = db.Column(db.String(10), nullable=False, index=True)
    batch_id = db.Column(db.String(100), nullable=False, default=NO_BATCH, server_default=NO_BATCH)

    live_birds = db.Column(db.Integer, default=0, nullable=False, server_default='0')

    # Egg quality classes
    clean_eggs = db.Column(db.Integer, default=0, nullable=False, server_default='0')
    dirty_eggs = db.Column(db.Integer, default=0, nullable=False, server_default='0')
    cracked_eggs = db.Column(db.Integer, default=0, nullable=False, server_default='0')
    floor_eggs = db.Column(db.Integer, default=0, nullable=False, server_default='0') # Aviaries 2 and 4 only

    egg_weight_avg = db.Column(db.Float, default=0.0, nullable=False, server_default='0') # g
    bird_weight_avg = db.Column(db.Float, default=0.0, nullable=False, server_default='0') # g
    mortality = db.Column(db.Integer, default=0, nullable=False, server_default='0')
    notes = db.Column(db.Text, nullable=True)

    # Derived, recomputed on every save
    total_eggs = db.Column(db.Integer, default=0, nullable=False, server_default='0')
    clean_pct = db.Column(db.Float, default=0.0, nullable=False, server_default='0')
    dirty_pct = db.Column(db.Float, default=0.0, nullable=False, server_default='0')
    cracked_pct = db.Column(db.Float, default=0.0, nullable=False, server_default='0')
    floor_pct = db.Column(db.Float, default=0.0, nullable=False, server_default='0')
    laying_rate = db.Column(db.Float, default=0.0, nullable=False, server_default='0')

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def apply_metrics(self):
        if not has_floor_eggs(self.aviary_id):
            self.floor_eggs = 0
        m = calculate_production_metrics(
            self.clean_eggs, self.dirty_eggs, self.cracked_eggs, self.floor_eggs,
            self.live_birds, self.aviary_id
        )
        for k, v in m.items():
            setattr(self, k, v)

    def to_dict(self):
        return {
            'id': self.id,
            'date': self.date.isoformat(),
            'aviaryId': self.aviary_id,
            'batchId': self.batch_id,
            'liveBirds': self.live_birds,
            'cleanEggs': self.clean_eggs,
            'dirtyEggs': self.dirty_eggs,
            'crackedEggs': self.cracked_eggs,
            'floorEggs': self.floor_eggs,
            'eggWeightAvg': self.egg_weight_avg,
            'birdWeightAvg': self.bird_weight_avg,
            'mortality': self.mortality,
            'notes': self.notes or '',
            'createdAt': utc_iso(self.created_at) if self.created_at else None,
            'updatedAt': utc_iso(self.updated_at) if self.updated_at else None,
            'metrics': {
                'totalEggs': self.total_eggs,
                'cleanPercentage': self.clean_pct,
                'dirtyPercentage': self.dirty_pct,
                'crackedPercentage': self.cracked_pct,
                'floorPercentage': self.floor_pct,
                'layingRate': self.laying_rate,
            },
        }

    @classmethod
    def from_dict(cls, data):
        """Rebuild from the snapshot shape; None when the date is unusable."""
        rec_date = _parse_iso_date(data.get('date'))
        if not rec_date:
            return None
        rec = cls(
            id=str(data.get('id') or new_id()),
            date=rec_date,
            aviary_id=_snapshot_aviary(data),
            batch_id=data.get('batchId') or NO_BATCH,
            live_birds=to_number(data.get('liveBirds'), int),
            clean_eggs=to_number(data.get('cleanEggs'), int),
            dirty_eggs=to_number(data.get('dirtyEggs'), int),
            cracked_eggs=to_number(data.get('crackedEggs'), int),
            floor_eggs=to_number(data.get('floorEggs'), int),
            egg_weight_avg=to_number(data.get('eggWeightAvg')),
            bird_weight_avg=to_number(data.get('birdWeightAvg')),
            mortality=to_number(data.get('mortality'), int),
            notes=data.get('notes') or '',
            created_at=_parse_iso_datetime(data.get('createdAt')) or utcnow(),
            updated_at=_parse_iso_datetime(data.get('updatedAt')),
        )
        rec.apply_metrics()
        return rec

class BatchRecord(db.Model):
    __tablename__ = 'batch_record'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    date = db.Column(db.Date, nullable=False, default=date.today, index=True)
    aviary_id = db.Column(db.String(10), nullable=False, index=True)
    batch_id = db.Column(db.String(100), nullable=False) # Free text, not unique
    age_weeks = db.Column(db.Integer, default=0, nullable=False, server_default='0')
    current_birds = db.Column(db.Integer, default=0, nullable=False, server_default='0')
    weight = db.Column(db.Float, default=0.0, nullable=False, server_default='0') # g
    uniformity = db.Column(db.Float, default=0.0, nullable=False, server_default='0') # %
    feathering = db.Column(db.String(20), default=DEFAULT_FEATHERING, nullable=False, server_default=DEFAULT_FEATHERING)
    notes = db.Column(db.Text, nullable=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'date': self.date.isoformat(),
            'aviaryId': self.aviary_id,
            'batchId': self.batch_id,
            'ageWeeks': self.age_weeks,
            'currentBirds': self.current_birds,
            'weight': self.weight,
            'uniformity': self.uniformity,
            'feathering': self.feathering,
            'notes': self.notes or '',
            'updatedAt': utc_iso(self.updated_at) if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data):
        rec_date = _parse_iso_date(data.get('date'))
        if not rec_date:
            return None
        feathering = data.get('feathering') or DEFAULT_FEATHERING
        return cls(
            id=str(data.get('id') or new_id()),
            date=rec_date,
            aviary_id=_snapshot_aviary(data),
            batch_id=str(data.get('batchId') or 'S/L'),
            age_weeks=to_number(data.get('ageWeeks'), int),
            current_birds=to_number(data.get('currentBirds'), int),
            weight=to_number(data.get('weight')),
            uniformity=to_number(data.get('uniformity')),
            feathering=feathering if feathering in FEATHERING_CHOICES else DEFAULT_FEATHERING,
            notes=data.get('notes') or '',
            updated_at=_parse_iso_datetime(data.get('updatedAt')),
        )

class AppSetting(db.Model):
    key = db.Column(db.String(100), primary_key=True)
    value = db.Column(db.Text, nullable=True) # JSON encoded
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

# --- Settings ---

def get_setting(key, default=None):
    setting = db.session.get(AppSetting, key)
    if setting is None or setting.value is None:
        return default
    try:
        return json.loads(setting.value)
    except ValueError:
        return setting.value

def set_setting(key, value):
    setting = db.session.get(AppSetting, key)
    if setting is None:
        setting = AppSetting(key=key)
        db.session.add(setting)
    setting.value = json.dumps(value)

def delete_setting(key):
    setting = db.session.get(AppSetting, key)
    if setting is not None:
        db.session.delete(setting)

# --- Batch linkage ---

def relink_batches():
    """Re-resolve every production row's batch label. Caller commits."""
    changed = sync_production_with_batches(ProductionRecord.query.all(), BatchRecord.query.all())
    if changed:
        app.logger.info(f"Batch labels updated on {len(changed)} production record(s)")
    return changed

def active_batch_for(aviary_id, on_date):
    return find_active_batch(BatchRecord.query.filter_by(aviary_id=aviary_id).all(), aviary_id, on_date)

# --- Sync ---

def sync_client():
    return make_client(app.config, get_setting, set_setting)

def current_snapshot(device='Server'):
    records = ProductionRecord.query.order_by(ProductionRecord.date.asc()).all()
    batches = BatchRecord.query.order_by(BatchRecord.date.asc()).all()
    return build_snapshot(records, batches, device)

def set_sync_status(status, error=None):
    set_setting(SETTING_STATUS, status)
    if status == STATUS_SUCCESS:
        set_setting(SETTING_LAST_SYNC, utc_iso())
        delete_setting(SETTING_LAST_ERROR)
    elif error:
        set_setting(SETTING_LAST_ERROR, error)
    db.session.commit()

def push_snapshot(device='Server'):
    """
    Upload everything under the configured key. Returns True on success.
    With the jsonblob backend and no key yet, a new blob is created and its
    id becomes the key.
    """
    client = sync_client()
    key = get_setting(SETTING_SYNC_KEY)
    snapshot = current_snapshot(device)

    set_sync_status(STATUS_SYNCING)

    if not key:
        if not isinstance(client, cloud_sync.JSONBlobClient):
            set_sync_status(STATUS_ERROR, 'No sync key configured')
            return False
        key = client.create(snapshot)
        if not key:
            set_sync_status(STATUS_ERROR, 'Could not create remote storage')
            return False
        set_setting(SETTING_SYNC_KEY, key)
        set_sync_status(STATUS_SUCCESS)
        app.logger.info(f"Created remote snapshot {key}")
        return True

    if client.save(key, snapshot):
        set_sync_status(STATUS_SUCCESS)
        app.logger.info(f"Pushed {len(snapshot['records'])} production and "
                        f"{len(snapshot['batchRecords'])} batch record(s)")
        return True

    set_sync_status(STATUS_ERROR, 'Remote store did not accept the snapshot')
    return False

def replace_all_records(data):
    """Swap the local tables for the given snapshot lists. Caller commits."""
    db.session.expunge_all()
    ProductionRecord.query.delete()
    BatchRecord.query.delete()

    skipped = 0
    for model, items in ((ProductionRecord, data.get('records')), (BatchRecord, data.get('batchRecords'))):
        rows = {}
        for item in items or []:
            row = model.from_dict(item)
            if row is None:
                skipped += 1
                continue
            # Last copy of a duplicated id wins
            rows[row.id] = row
        db.session.add_all(rows.values())

    if skipped:
        app.logger.warning(f"Skipped {skipped} snapshot item(s) without a valid date")
    db.session.flush()

def pull_snapshot(strategy=MERGE_REPLACE):
    """
    Fetch the remote snapshot and merge it into the local tables.
    Returns the merged snapshot, or None when nothing could be fetched.
    """
    client = sync_client()
    key = get_setting(SETTING_SYNC_KEY)
    if not key:
        raise SyncError('No sync key configured')
    if strategy not in (MERGE_REPLACE, MERGE_UPDATED_AT):
        raise SyncError(f"Unknown merge strategy: {strategy}")

    set_sync_status(STATUS_SYNCING)
    try:
        remote = client.fetch(key)
        if remote is None:
            set_sync_status(STATUS_ERROR, 'No remote snapshot found for this key')
            return None

        merged = merge_snapshot(current_snapshot(), remote, strategy)
        replace_all_records(merged)
        relink_batches()
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        set_sync_status(STATUS_ERROR, str(e))
        raise
    set_sync_status(STATUS_SUCCESS)
    app.logger.info(f"Pulled {len(merged['records'])} production and "
                    f"{len(merged['batchRecords'])} batch record(s) ({strategy})")
    return merged

def _background_push():
    with app.app_context():
        try:
            push_snapshot(device='Server')
        except SyncError as e:
            app.logger.warning(f"Auto push skipped: {e}")
            set_sync_status(STATUS_ERROR, str(e))

push_debouncer = PushDebouncer(app.config['SYNC_DEBOUNCE_SECONDS'], _background_push)

def schedule_push():
    """Queue a debounced push after a local change, when auto-sync is on."""
    if not app.config['SYNC_AUTO_PUSH']:
        return
    if not get_setting(SETTING_SYNC_KEY):
        return
    push_debouncer.trigger()

# --- Form helpers ---

def _form_date(name='date'):
    try:
        return datetime.strptime(request.form.get(name, ''), '%Y-%m-%d').date()
    except ValueError:
        return None

def _form_int(name):
    return to_number(request.form.get(name), int)

def _form_float(name):
    return to_number(request.form.get(name))

def _filter_context(all_records, flt, second_half_first):
    return {
        'flt': flt,
        'period_choices': PERIOD_CHOICES,
        'month_names': MONTH_NAMES,
        'year_options': year_options(all_records),
        'fortnight_options': fortnight_options(all_records, second_half_first=second_half_first),
        'batch_options': batch_options(all_records),
        'aviary_ids': AVIARY_IDS,
    }

# --- Dashboards ---

@app.route('/')
def index():
    flt = RecordFilter.from_args(request.args)
    all_records = ProductionRecord.query.all()
    batches = BatchRecord.query.all()

    records = filter_records(all_records, flt, newest_first=False)
    stats = summarize_production(records)
    totals = monthly_egg_totals(records)

    charts = None
    if stats:
        charts = {
            'production': monthly_production_chart(totals, flt.aviary or None),
            'quality': quality_donut(stats['quality']),
            'maturity': maturity_chart(maturity_curves(records, batches)),
        }

    return render_template('dashboard.html',
                           stats=stats,
                           charts=charts,
                           aviary_colors=AVIARY_COLORS,
                           **_filter_context(all_records, flt, second_half_first=True))

@app.route('/aviaries')
def aviary_dashboard():
    flt = RecordFilter.from_args(request.args)
    all_records = ProductionRecord.query.all()

    records = filter_records(all_records, flt, newest_first=False)
    aviary_stats = summarize_by_aviary(records)
    totals = monthly_egg_totals(records)

    return render_template('aviary_dashboard.html',
                           has_data=bool(records),
                           aviary_stats=aviary_stats,
                           production_chart=aviary_production_chart(totals, flt.aviary or None),
                           bars=laying_rate_bars(aviary_stats),
                           aviary_colors=AVIARY_COLORS,
                           **_filter_context(all_records, flt, second_half_first=True))

# --- Production records ---

@app.route('/records')
def daily_records():
    flt = RecordFilter.from_args(request.args)
    all_records = ProductionRecord.query.all()
    records = filter_records(all_records, flt, newest_first=True)

    return render_template('daily_records.html',
                           records=records,
                           monthly=list(reversed(aggregate_monthly_metrics(records))),
                           **_filter_context(all_records, flt, second_half_first=False))

def _production_values(record=None):
    if request.method == 'POST':
        return {k: request.form.get(k, '') for k in (
            'date', 'aviary_id', 'live_birds', 'clean_eggs', 'dirty_eggs', 'cracked_eggs',
            'floor_eggs', 'egg_weight_avg', 'bird_weight_avg', 'mortality', 'notes')}
    if record:
        return {
            'date': record.date.isoformat(),
            'aviary_id': record.aviary_id,
            'live_birds': record.live_birds,
            'clean_eggs': record.clean_eggs,
            'dirty_eggs': record.dirty_eggs,
            'cracked_eggs': record.cracked_eggs,
            'floor_eggs': record.floor_eggs,
            'egg_weight_avg': record.egg_weight_avg,
            'bird_weight_avg': record.bird_weight_avg,
            'mortality': record.mortality,
            'notes': record.notes or '',
        }
    return {'date': date.today().isoformat(), 'aviary_id': request.args.get('aviary', AVIARY_IDS[0])}

def _render_production_form(record, values, status=200):
    form_date = _parse_iso_date(values.get('date'))
    aviary_id = values.get('aviary_id') or AVIARY_IDS[0]
    active = active_batch_for(aviary_id, form_date) if form_date else None
    return render_template('production_form.html',
                           record=record,
                           values=values,
                           active_batch=active,
                           aviary_ids=AVIARY_IDS,
                           floor_aviaries=[a for a in AVIARY_IDS if has_floor_eggs(a)]), status

def _save_production(record):
    """Shared POST handler for new/edit. Returns a response."""
    values = _production_values(record)

    rec_date = _form_date()
    if not rec_date:
        flash('Please enter a valid date.', 'danger')
        return _render_production_form(record, values, 400)

    aviary_id = request.form.get('aviary_id', '')
    if aviary_id not in AVIARY_IDS:
        flash('Please choose a valid aviary.', 'danger')
        return _render_production_form(record, values, 400)

    active = active_batch_for(aviary_id, rec_date)
    if not active:
        flash(f'No batch characterization for Aviary {aviary_id} on or before '
              f'{rec_date.strftime("%d/%m/%Y")}. Register the batch first.', 'danger')
        return _render_production_form(record, values, 400)

    m = calculate_production_metrics(
        _form_int('clean_eggs'), _form_int('dirty_eggs'), _form_int('cracked_eggs'),
        _form_int('floor_eggs'), _form_int('live_birds'), aviary_id
    )
    if m['total_eggs'] == 0 and _form_int('live_birds') == 0:
        flash('Enter the egg counts or the number of live birds before saving.', 'warning')
        return _render_production_form(record, values, 400)

    is_new = record is None
    if is_new:
        record = ProductionRecord(id=new_id())
        db.session.add(record)

    record.date = rec_date
    record.aviary_id = aviary_id
    record.batch_id = active.batch_id
    record.live_birds = _form_int('live_birds')
    record.clean_eggs = _form_int('clean_eggs')
    record.dirty_eggs = _form_int('dirty_eggs')
    record.cracked_eggs = _form_int('cracked_eggs')
    record.floor_eggs = _form_int('floor_eggs')
    record.egg_weight_avg = _form_float('egg_weight_avg')
    record.bird_weight_avg = _form_float('bird_weight_avg')
    record.mortality = _form_int('mortality')
    record.notes = request.form.get('notes', '').strip()
    record.apply_metrics()

    db.session.commit()
    schedule_push()

    app.logger.info(f"Production record {record.id} saved (aviary {aviary_id}, {rec_date})")
    flash('Production record saved.' if is_new else 'Production record updated.', 'success')
    return redirect(url_for('daily_records'))

@app.route('/production/new', methods=['GET', 'POST'])
def new_production():
    if request.method == 'POST':
        return _save_production(None)
    return _render_production_form(None, _production_values())

@app.route('/production/<id>/edit', methods=['GET', 'POST'])
def edit_production(id):
    record = ProductionRecord.query.get_or_404(id)
    if request.method == 'POST':
        return _save_production(record)
    return _render_production_form(record, _production_values(record))

@app.route('/production/<id>/delete', methods=['POST'])
def delete_production(id):
    record = ProductionRecord.query.get_or_404(id)
    db.session.delete(record)
    db.session.commit()
    schedule_push()
    flash('Production record deleted.', 'info')
    return redirect(url_for('daily_records'))

@app.route('/records/delete_all', methods=['POST'])
def delete_all_records():
    count = ProductionRecord.query.delete()
    db.session.commit()
    schedule_push()
    app.logger.info(f"Deleted all {count} production record(s)")
    flash(f'{count} production record(s) deleted.', 'info')
    return redirect(url_for('daily_records'))

@app.route('/records/export.csv')
def export_records_csv():
    flt = RecordFilter.from_args(request.args)
    records = filter_records(ProductionRecord.query.all(), flt, newest_first=True)
    if not records:
        flash('No data to export.', 'warning')
        return redirect(url_for('daily_records', **flt.to_args()))

    return send_file(io.BytesIO(export_production_csv(records)),
                     mimetype='text/csv',
                     as_attachment=True,
                     download_name=production_filename())

@app.route('/records/export.xlsx')
def export_records_xlsx():
    flt = RecordFilter.from_args(request.args)
    records = filter_records(ProductionRecord.query.all(), flt, newest_first=True)
    if not records:
        flash('No data to export.', 'warning')
        return redirect(url_for('daily_records', **flt.to_args()))

    return send_file(export_production_xlsx(records),
                     mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
                     as_attachment=True,
                     download_name=production_xlsx_filename())

def _uploaded_file():
    file = request.files.get('file')
    if not file or file.filename == '':
        flash('No file selected.', 'danger')
        return None
    if not file.filename.lower().endswith(('.csv', '.txt')):
        flash(f"{file.filename}: Invalid type (must be .csv)", 'danger')
        return None
    return file

@app.route('/records/import', methods=['POST'])
def import_records():
    file = _uploaded_file()
    if file is None:
        return redirect(url_for('daily_records'))

    try:
        result = parse_production_csv(file.read(), BatchRecord.query.all())
    except CSVImportError as e:
        app.logger.warning(f"Production import of {file.filename} failed: {e}")
        flash('Could not read the CSV file.', 'danger')
        return redirect(url_for('daily_records'))

    if not result.records:
        flash('No valid production rows found in the file.', 'warning')
        return redirect(url_for('daily_records'))

    for data in result.records:
        db.session.add(ProductionRecord(id=new_id(), **data))
    db.session.commit()
    schedule_push()

    app.logger.info(f"Imported {result.imported} production row(s) from {file.filename}, skipped {result.skipped}")
    flash(f'{result.imported} record(s) imported, {result.skipped} skipped.', 'success')
    return redirect(url_for('daily_records'))

# --- Batch characterizations ---

@app.route('/batches')
def batch_characteristics():
    aviary_filter = request.args.get('aviary', '')
    batches = BatchRecord.query.order_by(BatchRecord.date.desc()).all()
    productions = ProductionRecord.query.all()

    groups = []
    for aviary_id in AVIARY_IDS:
        if aviary_filter and aviary_filter != aviary_id:
            continue
        groups.append({
            'aviary_id': aviary_id,
            'current_birds': latest_live_birds(productions, aviary_id),
            'batches': [b for b in batches if b.aviary_id == aviary_id],
        })

    return render_template('batch_characteristics.html',
                           groups=groups,
                           total=len(batches),
                           aviary_filter=aviary_filter,
                           aviary_ids=AVIARY_IDS,
                           aviary_colors=AVIARY_COLORS)

def _batch_values(batch=None):
    if request.method == 'POST':
        return {k: request.form.get(k, '') for k in (
            'date', 'aviary_id', 'batch_id', 'age_weeks', 'weight', 'uniformity', 'feathering', 'notes')}
    if batch:
        return {
            'date': batch.date.isoformat(),
            'aviary_id': batch.aviary_id,
            'batch_id': batch.batch_id,
            'age_weeks': batch.age_weeks,
            'weight': batch.weight,
            'uniformity': batch.uniformity,
            'feathering': batch.feathering,
            'notes': batch.notes or '',
        }
    return {
        'date': date.today().isoformat(),
        'aviary_id': request.args.get('aviary', AVIARY_IDS[0]),
        'feathering': DEFAULT_FEATHERING,
    }

def _render_batch_form(batch, values, status=200):
    return render_template('batch_form.html',
                           batch=batch,
                           values=values,
                           aviary_ids=AVIARY_IDS,
                           feathering_choices=FEATHERING_CHOICES), status

def _save_batch(batch):
    values = _batch_values(batch)

    batch_date = _form_date()
    if not batch_date:
        flash('Please enter a valid date.', 'danger')
        return _render_batch_form(batch, values, 400)

    aviary_id = request.form.get('aviary_id', '')
    if aviary_id not in AVIARY_IDS:
        flash('Please choose a valid aviary.', 'danger')
        return _render_batch_form(batch, values, 400)

    batch_id = request.form.get('batch_id', '').strip()
    if not batch_id:
        flash('Batch ID is required.', 'danger')
        return _render_batch_form(batch, values, 400)

    feathering = request.form.get('feathering', DEFAULT_FEATHERING)
    if feathering not in FEATHERING_CHOICES:
        feathering = DEFAULT_FEATHERING

    is_new = batch is None
    if is_new:
        batch = BatchRecord(id=new_id())
        db.session.add(batch)

    batch.date = batch_date
    batch.aviary_id = aviary_id
    batch.batch_id = batch_id
    batch.age_weeks = _form_int('age_weeks')
    batch.weight = _form_float('weight')
    batch.uniformity = _form_float('uniformity')
    batch.feathering = feathering
    batch.notes = request.form.get('notes', '').strip()
    # Linkage tie-break reads updated_at before the flush sets it
    batch.updated_at = utcnow()

    db.session.flush()
    relink_batches()
    db.session.commit()
    schedule_push()

    flash('Batch characterization saved.' if is_new else 'Batch characterization updated.', 'success')
    return redirect(url_for('batch_characteristics'))

@app.route('/batches/new', methods=['GET', 'POST'])
def new_batch():
    if request.method == 'POST':
        return _save_batch(None)
    return _render_batch_form(None, _batch_values())

@app.route('/batches/<id>/edit', methods=['GET', 'POST'])
def edit_batch(id):
    batch = BatchRecord.query.get_or_404(id)
    if request.method == 'POST':
        return _save_batch(batch)
    return _render_batch_form(batch, _batch_values(batch))

@app.route('/batches/<id>/delete', methods=['POST'])
def delete_batch(id):
    batch = BatchRecord.query.get_or_404(id)
    label = batch.batch_id
    db.session.delete(batch)
    db.session.flush()
    relink_batches()
    db.session.commit()
    schedule_push()
    flash(f'Batch characterization {label} deleted.', 'info')
    return redirect(url_for('batch_characteristics'))

@app.route('/batches/delete_all', methods=['POST'])
def delete_all_batches():
    count = BatchRecord.query.delete()
    db.session.flush()
    relink_batches()
    db.session.commit()
    schedule_push()
    flash(f'{count} batch characterization(s) deleted.', 'info')
    return redirect(url_for('batch_characteristics'))

@app.route('/batches/export.csv')
def export_batches_csv():
    batches = BatchRecord.query.order_by(BatchRecord.date.desc()).all()
    if not batches:
        flash('No data to export.', 'warning')
        return redirect(url_for('batch_characteristics'))

    return send_file(io.BytesIO(export_batch_csv(batches)),
                     mimetype='text/csv',
                     as_attachment=True,
                     download_name=batch_filename())

@app.route('/batches/import', methods=['POST'])
def import_batches():
    file = _uploaded_file()
    if file is None:
        return redirect(url_for('batch_characteristics'))

    try:
        result = parse_batch_csv(file.read())
    except CSVImportError as e:
        app.logger.warning(f"Batch import of {file.filename} failed: {e}")
        flash('Could not read the file. Make sure it is a valid CSV.', 'danger')
        return redirect(url_for('batch_characteristics'))

    if not result.records:
        flash('No valid batch rows found. Dates must be DD/MM/YYYY or YYYY-MM-DD.', 'warning')
        return redirect(url_for('batch_characteristics'))

    for data in result.records:
        db.session.add(BatchRecord(id=new_id(), **data))
    db.session.flush()
    relink_batches()
    db.session.commit()
    schedule_push()

    flash(f'{result.imported} batch record(s) imported, {result.skipped} skipped.', 'success')
    return redirect(url_for('batch_characteristics'))

# --- Sync ---

@app.route('/sync', methods=['GET', 'POST'])
def sync_settings():
    if request.method == 'POST':
        action = request.form.get('action', 'save')

        if action == 'generate':
            key = generate_sync_key()
            set_setting(SETTING_SYNC_KEY, key)
            set_setting(SETTING_STATUS, STATUS_IDLE)
            db.session.commit()
            flash(f'New sync key generated: {key}', 'success')
        elif action == 'clear':
            delete_setting(SETTING_SYNC_KEY)
            set_setting(SETTING_STATUS, STATUS_IDLE)
            db.session.commit()
            flash('Sync disconnected.', 'info')
        else:
            try:
                key = sync_client().normalize_key(request.form.get('sync_key', ''))
            except SyncError as e:
                flash(str(e), 'danger')
                return redirect(url_for('sync_settings'))
            set_setting(SETTING_SYNC_KEY, key)
            set_setting(SETTING_STATUS, STATUS_IDLE)
            db.session.commit()
            flash(f'Connected with key {key}.', 'success')

        return redirect(url_for('sync_settings'))

    return render_template('sync.html',
                           sync_key=get_setting(SETTING_SYNC_KEY, ''),
                           status=get_setting(SETTING_STATUS, STATUS_IDLE),
                           last_sync=get_setting(SETTING_LAST_SYNC),
                           last_error=get_setting(SETTING_LAST_ERROR),
                           backend=app.config['SYNC_BACKEND'],
                           auto_push=app.config['SYNC_AUTO_PUSH'],
                           merge_choices=[MERGE_REPLACE, MERGE_UPDATED_AT])

@app.route('/sync/push', methods=['POST'])
def sync_push():
    try:
        ok = push_snapshot(device=device_label(request.user_agent.string))
    except SyncError as e:
        flash(str(e), 'danger')
        return redirect(url_for('sync_settings'))

    if ok:
        flash('Data sent to the cloud.', 'success')
    else:
        flash('Could not send data to the cloud. Check the key and your connection.', 'danger')
    return redirect(url_for('sync_settings'))

@app.route('/sync/pull', methods=['POST'])
def sync_pull():
    strategy = request.form.get('strategy', MERGE_REPLACE)
    try:
        merged = pull_snapshot(strategy)
    except SyncError as e:
        db.session.rollback()
        set_sync_status(STATUS_ERROR, str(e))
        flash(str(e), 'danger')
        return redirect(url_for('sync_settings'))

    if merged is None:
        flash('No data found in the cloud for this key.', 'warning')
    else:
        flash(f"Loaded {len(merged['records'])} production and "
              f"{len(merged['batchRecords'])} batch record(s) from the cloud.", 'success')
    return redirect(url_for('sync_settings'))

# --- API ---

@app.route('/api/active_batch')
def api_active_batch():
    aviary_id = request.args.get('aviary', '')
    on_date = _parse_iso_date(request.args.get('date'))

    active = active_batch_for(aviary_id, on_date) if aviary_id in AVIARY_IDS and on_date else None
    if not active:
        return json.dumps({'found': False, 'batch_id': None, 'label': 'N/D'})
    return json.dumps({
        'found': True,
        'batch_id': active.batch_id,
        'label': active.batch_id,
        'date': active.date.isoformat(),
        'age_weeks': active.age_weeks,
    })

@app.route('/api/snapshot')
def api_snapshot():
    return json.dumps(current_snapshot(device=device_label(request.user_agent.string)))

@app.route('/api/chart_data')
def get_chart_data():
    flt = RecordFilter.from_args(request.args)
    mode = request.args.get('mode', 'daily') # 'daily', 'monthly'
    requested = [m for m in request.args.get('metrics', 'total_eggs,laying_rate').split(',') if m in METRICS_REGISTRY]

    records = filter_records(ProductionRecord.query.all(), flt, newest_first=False)
    if mode == 'monthly':
        data = monthly_series(records, requested)
    else:
        data = daily_series(records, requested)

    data['mode'] = mode
    return json.dumps(data)

@app.route('/api/metrics')
def get_metrics_list():
    return json.dumps(METRICS_REGISTRY)


if __name__ == '__main__':
    with app.app_context():
        db.create_all()
    app.run(debug=True, host='0.0.0.0', port=5000)
